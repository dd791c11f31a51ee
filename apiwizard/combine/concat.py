from __future__ import annotations
import logging
from dataclasses import dataclass, field
from itertools import zip_longest
from typing import Any, Dict, List

from apiwizard.config.models import DataConcatenation
from apiwizard.paths.resolver import get_value

logger = logging.getLogger(__name__)

_EXHAUSTED = object()


@dataclass
class CombineResult:
    records: List[Any] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def interleave(streams: List[List[Any]]) -> List[Any]:
    """Round-robin one item from each stream until all are exhausted."""
    return [
        item
        for row in zip_longest(*streams, fillvalue=_EXHAUSTED)
        for item in row
        if item is not _EXHAUSTED
    ]


def deduplicate(records: List[Any], key_path: str) -> List[Any]:
    """Keep the first record per key; records without the key are always kept."""
    seen = set()
    kept: List[Any] = []
    for record in records:
        key = get_value(record, key_path) if isinstance(record, dict) else None
        if key is None:
            kept.append(record)
            continue
        marker = repr(key) if isinstance(key, (dict, list)) else key
        if marker in seen:
            continue
        seen.add(marker)
        kept.append(record)
    return kept


def _field_names(records: List[Any]) -> set:
    # Underscore-prefixed keys are record metadata (e.g. _source), not schema.
    names = set()
    for record in records:
        if isinstance(record, dict):
            names.update(k for k in record if not str(k).startswith("_"))
    return names


def concatenate_sources(
    streams: Dict[str, List[Any]],
    concatenation: DataConcatenation,
) -> CombineResult:
    """
    Merge the record streams of `concatenation.sources` into one.

    concatenate: listed order, one source after another.
    union:       same order, then first-occurrence dedupe on
                 deduplicate_field when `deduplicate` is set.
    interleave:  round-robin across sources.

    Sources that share no field names still merge; the mismatch is reported
    as an INCOMPATIBLE_CONCATENATION_SCHEMA warning.

    Raises:
        InvalidConcatenationError: fewer than two distinct sources, or
            deduplicate without deduplicate_field.
    """
    concatenation.check()
    result = CombineResult()
    ordered = [streams.get(sid, []) for sid in concatenation.sources]

    populated = [_field_names(records) for records in ordered if records]
    if len(populated) > 1 and not set.intersection(*populated):
        result.warnings.append(
            f"INCOMPATIBLE_CONCATENATION_SCHEMA:{concatenation.id} "
            f"(sources {', '.join(concatenation.sources)} share no fields)"
        )
        logger.warning("Concatenation %s merges sources with no common fields", concatenation.id)

    if concatenation.merge_strategy == "interleave":
        merged = interleave(ordered)
    else:
        merged = [record for records in ordered for record in records]

    if concatenation.deduplicate and concatenation.merge_strategy != "concatenate":
        merged = deduplicate(merged, concatenation.deduplicate_field)

    result.records = merged
    return result
