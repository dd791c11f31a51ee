from __future__ import annotations
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from apiwizard.config.models import FieldMapping, OutputSchema
from apiwizard.errors import (
    CardinalityMismatchError,
    DanglingSourceReferenceError,
    DuplicateTargetPathError,
    PathSyntaxError,
)
from apiwizard.mapping.conditions import first_match
from apiwizard.paths.resolver import KEY, WILDCARD, Resolved, parse_path, resolve, set_value
from apiwizard.transforms.pipeline import apply_value

logger = logging.getLogger(__name__)


@dataclass
class MappingResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _add_warning(warnings: List[str], warning: str) -> None:
    if warning not in warnings:
        warnings.append(warning)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def validate_mappings(mappings: List[FieldMapping]) -> None:
    """
    Structural checks that must pass before any payload is touched.

    Raises:
        DuplicateTargetPathError: two mappings write the same target_field.
        PathSyntaxError: a target path is malformed, wildcarded, or does not
            start with a key; or a source path is malformed.
    """
    by_target: Dict[str, List[str]] = defaultdict(list)
    for mapping in mappings:
        by_target[mapping.target_field].append(mapping.id)

        tokens = parse_path(mapping.target_field)
        if not tokens or tokens[0].kind != KEY:
            raise PathSyntaxError(mapping.target_field, "target path must start with a key")
        if any(t.kind == WILDCARD for t in tokens):
            raise PathSyntaxError(mapping.target_field, "wildcards are not allowed in target paths")
        for condition in mapping.conditions:
            parse_path(condition.field)
        parse_path(mapping.source_field)

    for target, ids in by_target.items():
        if len(ids) > 1:
            raise DuplicateTargetPathError(target, ids)


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

def _at(resolved: Resolved, row: int) -> Any:
    if not resolved.is_sequence:
        return resolved.value
    return resolved.values[row] if row < len(resolved.values) else None


def _resolve_source(
    mapping: FieldMapping,
    payloads: Dict[str, Any],
    path: str,
) -> Resolved:
    if mapping.source_id not in payloads:
        raise DanglingSourceReferenceError(
            mapping.source_id, f"mapping '{mapping.id}'", path=path
        )
    payload = payloads[mapping.source_id]
    if payload is None:
        # Failed fetch: every path misses, fallback applies.
        return Resolved.scalar(None)
    return resolve(payload, path)


def build_records(
    mappings: List[FieldMapping],
    payloads: Dict[str, Any],
    schema: Optional[OutputSchema] = None,
) -> MappingResult:
    """
    Resolve every mapping against `payloads` (source id -> payload) and
    assemble output records.

    Mappings whose source path contains [*] drive the row count; all such
    mappings must agree on their length. Scalar mappings are broadcast to
    every row. With no wildcard mapping exactly one record is produced.

    Per row the value is chosen as: first matching condition result, else
    the (optionally transformed) source value, else fallback_value when the
    value is None.

    Raises:
        DuplicateTargetPathError, PathSyntaxError: from validate_mappings().
        DanglingSourceReferenceError: a mapping names a source id that is
            not present in `payloads`.
        CardinalityMismatchError: wildcard mappings resolve to sequences of
            different lengths.
    """
    validate_mappings(mappings)
    result = MappingResult()

    active: List[FieldMapping] = []
    for mapping in mappings:
        if not mapping.is_complete:
            _add_warning(result.warnings, f"INCOMPLETE_MAPPING:{mapping.id} ({mapping.target_field})")
            continue
        active.append(mapping)

    values: Dict[str, Resolved] = {}
    condition_subjects: Dict[str, List[Optional[Resolved]]] = {}
    for mapping in active:
        if mapping.is_static:
            values[mapping.id] = Resolved.scalar(mapping.fallback_value)
            condition_subjects[mapping.id] = [None for _ in mapping.conditions]
            continue

        resolved = _resolve_source(mapping, payloads, mapping.source_field)
        values[mapping.id] = resolved
        missed = resolved.value is None if not resolved.is_sequence else (
            bool(resolved.values) and all(v is None for v in resolved.values)
        )
        if missed and payloads.get(mapping.source_id) is not None:
            _add_warning(
                result.warnings,
                f"PATH_NOT_FOUND:{mapping.source_id}:{mapping.source_field} ({mapping.id})",
            )
        condition_subjects[mapping.id] = [
            _resolve_source(mapping, payloads, c.field) if c.field else None
            for c in mapping.conditions
        ]

    lengths: Dict[str, int] = {}
    paths: Dict[str, str] = {}
    for mapping in active:
        if values[mapping.id].is_sequence:
            lengths[mapping.id] = len(values[mapping.id].values)
            paths[mapping.id] = mapping.source_field
        # Wildcard condition fields are read per row too, so they must align.
        for condition, subject in zip(mapping.conditions, condition_subjects[mapping.id]):
            if subject is not None and subject.is_sequence:
                key = f"{mapping.id}:{condition.field}"
                lengths[key] = len(subject.values)
                paths[key] = condition.field
    if len(set(lengths.values())) > 1:
        raise CardinalityMismatchError(lengths, paths)
    row_count = next(iter(lengths.values())) if lengths else 1

    for row in range(row_count):
        record: Dict[str, Any] = {}
        for mapping in active:
            raw = _at(values[mapping.id], row)
            value = _value_for_row(mapping, raw, condition_subjects[mapping.id], row, record, result.warnings)
            set_value(record, mapping.target_field, value)
        if schema is not None:
            _fill_schema_leaves(record, schema, {m.target_field for m in active})
        result.records.append(record)

    for warning in result.warnings:
        logger.warning("Mapping warning: %s", warning)
    return result


def _value_for_row(
    mapping: FieldMapping,
    raw: Any,
    subjects: List[Optional[Resolved]],
    row: int,
    record: Dict[str, Any],
    warnings: List[str],
) -> Any:
    if mapping.conditions:
        row_subjects = [raw if s is None else _at(s, row) for s in subjects]
        matched, outcome = first_match(mapping.conditions, row_subjects)
        if matched:
            return outcome

    value = raw
    if mapping.transform_type and value is not None:
        value, warning = apply_value(mapping.transform_type, value, mapping.transform_config, record)
        if warning:
            _add_warning(warnings, f"{warning} [{mapping.id}]")

    if value is None:
        value = mapping.fallback_value
    return value


def _fill_schema_leaves(record: Dict[str, Any], schema: OutputSchema, mapped: set) -> None:
    # Unmapped leaves get their schema default so every record has the full shape.
    for leaf, node in schema.leaf_nodes().items():
        covered = any(
            leaf == target
            or leaf.startswith((target + ".", target + "["))
            or target.startswith((leaf + ".", leaf + "["))
            for target in mapped
        )
        if not covered:
            set_value(record, leaf, copy.deepcopy(node.default_value))
