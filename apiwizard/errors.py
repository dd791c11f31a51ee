from __future__ import annotations
from typing import Any, Dict, List, Optional


class ConfigurationError(ValueError):
    """
    Base class for structural configuration errors.

    These abort a whole resolution. str(exc) renders as 'CODE:detail' so
    callers can branch on the prefix the same way they do for the
    connector-level RuntimeError codes (RATE_LIMIT_EXHAUSTED, SOURCE_TIMEOUT).
    `context` carries the ids/paths the caller needs to fix the config.
    """

    code = "CONFIGURATION_ERROR"

    def __init__(self, detail: str, **context: Any) -> None:
        self.detail = detail
        self.context: Dict[str, Any] = context
        super().__init__(f"{self.code}:{detail}")

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.detail, **self.context}


class PathSyntaxError(ConfigurationError):
    code = "PATH_SYNTAX"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path!r}: {reason}", path=path)


class DuplicateTargetPathError(ConfigurationError):
    code = "DUPLICATE_TARGET_PATH"

    def __init__(self, target_field: str, mapping_ids: List[str]) -> None:
        super().__init__(
            f"{target_field} (mappings: {', '.join(mapping_ids)})",
            target_field=target_field,
            mapping_ids=mapping_ids,
        )


class DanglingSourceReferenceError(ConfigurationError):
    code = "DANGLING_SOURCE_REFERENCE"

    def __init__(
        self,
        source_id: str,
        referenced_by: str,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"{referenced_by} references unknown source '{source_id}'",
            source_id=source_id,
            referenced_by=referenced_by,
            path=path,
        )


class CardinalityMismatchError(ConfigurationError):
    code = "CARDINALITY_MISMATCH"

    def __init__(self, lengths: Dict[str, int], paths: Dict[str, str]) -> None:
        summary = ", ".join(f"{mid}={n}" for mid, n in lengths.items())
        super().__init__(summary, lengths=lengths, paths=paths)


class InvalidRelationshipError(ConfigurationError):
    code = "INVALID_RELATIONSHIP"


class InvalidConcatenationError(ConfigurationError):
    code = "INVALID_CONCATENATION"


class JoinCycleError(ConfigurationError):
    code = "JOIN_CYCLE"


class MissingParameterError(ConfigurationError):
    code = "MISSING_PARAMETER"

    def __init__(self, source_id: str, query_param: str) -> None:
        super().__init__(
            f"required query parameter '{query_param}' has no value for source '{source_id}'",
            source_id=source_id,
            query_param=query_param,
        )


class InvalidSourceQueryError(ConfigurationError):
    code = "INVALID_SOURCE_QUERY"

    def __init__(self, source_id: str, reason: str) -> None:
        super().__init__(f"{source_id}: {reason}", source_id=source_id)
