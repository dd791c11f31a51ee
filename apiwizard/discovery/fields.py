from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rapidfuzz.distance import Levenshtein

from apiwizard.errors import PathSyntaxError
from apiwizard.paths.resolver import WILDCARD, get_value, parse_path

logger = logging.getLogger(__name__)

# Authoring defaults for the field explorer.
EXPLORE_MAX_DEPTH = 10
EXPLORE_MAX_INDICES = 3

SUGGESTION_THRESHOLD = 0.7


@dataclass
class FieldInfo:
    path: str
    inferred_type: str
    sample: Any = None


@dataclass
class DiscoveryResult:
    fields: List[FieldInfo] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def paths(self) -> List[str]:
        return [f.path for f in self.fields]


def infer_type(value: Any) -> str:
    # bool is a subclass of int; check it first.
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def _preview(value: Any) -> Any:
    if isinstance(value, list):
        return f"[{len(value)} items]"
    if isinstance(value, dict):
        return f"{{{len(value)} keys}}"
    return value


class _Collector:
    """Insertion-ordered, path-deduplicated FieldInfo accumulator."""

    def __init__(self) -> None:
        self._fields: Dict[str, FieldInfo] = {}

    def add(self, path: str, value: Any) -> None:
        if path not in self._fields:
            self._fields[path] = FieldInfo(path, infer_type(value), _preview(value))

    def result(self) -> List[FieldInfo]:
        return list(self._fields.values())


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def discover(sample: Any, data_path: Optional[str] = None) -> DiscoveryResult:
    """
    List the field paths available in a sampled payload.

    `data_path` (no wildcards) selects where the records live. Arrays are
    enumerated from their first element only, so fields that appear only in
    later, heterogeneous elements are not reported. Objects contribute their
    own keys plus one level of nested-object keys; arrays are reported as
    'array' and not expanded.

    Raises:
        PathSyntaxError: if data_path is malformed or contains [*].
    """
    result = DiscoveryResult()
    target = sample
    if data_path:
        if any(t.kind == WILDCARD for t in parse_path(data_path)):
            raise PathSyntaxError(data_path, "data path cannot contain wildcards")
        target = get_value(sample, data_path)
        if target is None:
            result.warnings.append(f"DATA_PATH_NOT_FOUND:{data_path}")
            logger.warning("Data path %s not found in sample", data_path)
            return result

    if isinstance(target, list):
        if not target:
            result.warnings.append(f"EMPTY_ARRAY:{data_path or '$'}")
            return result
        target = target[0]

    if not isinstance(target, dict):
        result.warnings.append(
            f"NO_OBJECT_FIELDS:{data_path or '$'} ({infer_type(target)})"
        )
        return result

    collector = _Collector()
    for key, value in target.items():
        collector.add(key, value)
        if isinstance(value, dict):
            for child_key, child_value in value.items():
                collector.add(f"{key}.{child_key}", child_value)

    result.fields = collector.result()
    return result


def explore(
    sample: Any,
    max_depth: int = EXPLORE_MAX_DEPTH,
    max_indices: int = EXPLORE_MAX_INDICES,
) -> List[FieldInfo]:
    """
    Full-depth field explorer for the mapping canvas.

    Every array yields its own path, a '[*]' iterator path whose children
    are taken from the first object element, and up to `max_indices`
    fixed-index '[n]' paths.
    """
    collector = _Collector()

    def _visit(value: Any, path: str, depth: int) -> None:
        if depth >= max_depth:
            return
        if isinstance(value, dict):
            for key, child in value.items():
                child_path = f"{path}.{key}" if path else key
                collector.add(child_path, child)
                _visit(child, child_path, depth + 1)
        elif isinstance(value, list) and value:
            wildcard = f"{path}[*]"
            if isinstance(value[0], dict):
                _visit(value[0], wildcard, depth + 1)
            else:
                collector.add(wildcard, value[0])
            for index, element in enumerate(value[:max_indices]):
                indexed = f"{path}[{index}]"
                collector.add(indexed, element)
                _visit(element, indexed, depth + 1)

    _visit(sample, "", 0)
    return collector.result()


# ----------------------------------------------------------------------
# Mapping suggestions
# ----------------------------------------------------------------------

def levenshtein(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """Case-insensitive normalized Levenshtein similarity in [0, 1]."""
    return Levenshtein.normalized_similarity(a.lower(), b.lower())


def suggest_mappings(
    source_paths: List[str],
    target_paths: List[str],
    threshold: float = SUGGESTION_THRESHOLD,
) -> Dict[str, str]:
    """
    Pair each target path with its most similar source path.

    Only pairs scoring strictly above `threshold` are returned; ties keep the
    earlier source path. Suggestions are plain data: callers turn them into
    FieldMappings and validate them like any hand-written mapping.
    """
    suggestions: Dict[str, str] = {}
    for target in target_paths:
        best_path, best_score = None, threshold
        for source in source_paths:
            score = similarity(source, target)
            if score > best_score:
                best_path, best_score = source, score
        if best_path is not None:
            suggestions[target] = best_path
    return suggestions
