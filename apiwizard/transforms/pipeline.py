from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from apiwizard.config.models import Transformation
from apiwizard.paths.resolver import get_value, set_value
from apiwizard.transforms.functions import get_transform

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    record: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)


def apply_value(transform_type: str, value: Any, config: Dict[str, Any], record: Dict[str, Any]) -> Tuple[Any, str]:
    """
    Run one transform over a single value.

    Returns (new_value, warning). On an unknown type or a failing transform
    the input value is returned unchanged together with a warning code.
    """
    fn = get_transform(transform_type)
    if fn is None:
        logger.warning("Unsupported transform type: %s", transform_type)
        return value, f"UNSUPPORTED_TRANSFORM:{transform_type}"
    try:
        return fn(value, config or {}, record), ""
    except (ValueError, TypeError, ArithmeticError, LookupError) as exc:
        logger.warning("Transform %s failed on %r: %s", transform_type, value, exc)
        return value, f"TRANSFORM_FAILED:{transform_type} ({exc})"


def apply(record: Dict[str, Any], transformations: List[Transformation]) -> PipelineResult:
    """
    Apply `transformations` in list order to a deep copy of `record`.

    Each step reads `source_field` from the record as it stands after the
    previous steps and writes to `target_field` (defaulting to source_field).
    A failing step degrades only its own field; later steps still run.
    """
    current = copy.deepcopy(record)
    result = PipelineResult(record=current)

    for step in transformations:
        source = step.source_field
        target = step.target_field or source
        value = get_value(current, source) if source else None
        new_value, warning = apply_value(step.type, value, step.config, current)
        if warning:
            result.warnings.append(f"{warning} [{step.id}]")
            continue
        if target:
            set_value(current, target, new_value)

    return result
