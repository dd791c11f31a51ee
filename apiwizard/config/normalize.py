from __future__ import annotations
import logging
from typing import Any, Dict, List

from apiwizard.config.models import EndpointConfig

logger = logging.getLogger(__name__)

# Channel-level RSS settings the authoring UI keeps beside sourceMappings.
_RSS_METADATA_KEYS = (
    "channelTitle", "channelDescription", "channelLink", "sourceMappings",
    "mergeStrategy", "maxItemsPerSource", "maxTotalItems",
)


def _dig(raw: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(raw, dict):
            return None
        raw = raw.get(key)
    return raw


def _first(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _template_fields_to_schema(fields: List[Dict[str, Any]]) -> Dict[str, Any]:
    """outputTemplate.fields ({path, type, required, defaultValue}) -> OutputSchema data."""
    root = []
    for f in fields or []:
        if not isinstance(f, dict) or not (f.get("path") or f.get("name")):
            continue
        root.append({
            "name": f.get("path") or f.get("name"),
            "type": f.get("type", "string"),
            "required": bool(f.get("required", False)),
            "defaultValue": f.get("defaultValue"),
            "children": f.get("children") or [],
        })
    return {"root": root}


def normalize_endpoint(raw: Dict[str, Any]) -> EndpointConfig:
    """
    Build a fully-initialized EndpointConfig from persisted endpoint data.

    Accepts the flat layout used by the YAML registry as well as the nested
    layout the authoring UI stores:

        schema_config.schema.metadata.jsonMappingConfig.{sourceSelection,
            fieldMappings, outputTemplate, outputWrapper, transformations}
        schema_config.schema.metadata.{sourceMappings, channelTitle, ...}
        relationship_config.{relationships, concatenations}
        transform_config.transformations
        cache_config / auth_config / rate_limit_config
        data_sources, user_id, active

    Flat keys win over their nested counterparts. Missing sections get their
    model defaults, so downstream code never null-checks optional nesting.

    Raises:
        pydantic.ValidationError: if the merged data does not validate.
    """
    raw = dict(raw or {})
    metadata = _dig(raw, "schema_config", "schema", "metadata") or {}
    json_mapping = metadata.get("jsonMappingConfig") or {}

    rss_legacy = {k: metadata[k] for k in _RSS_METADATA_KEYS if k in metadata}

    legacy_transforms = _first(
        _dig(raw, "transform_config", "transformations"),
        json_mapping.get("transformations"),
    )

    schema = raw.get("output_schema")
    if schema is None and _dig(json_mapping, "outputTemplate", "fields"):
        schema = _template_fields_to_schema(json_mapping["outputTemplate"]["fields"])

    status = raw.get("status")
    if status is None and "active" in raw:
        status = "active" if raw.get("active") else "draft"

    merged: Dict[str, Any] = {
        "slug": raw.get("slug"),
        "owner": _first(raw.get("owner"), raw.get("user_id"), "default"),
        "name": raw.get("name") or raw.get("slug") or "",
        "description": raw.get("description") or "",
        "status": status or "draft",
        "output_format": raw.get("output_format") or "json",
        "sources": _first(raw.get("sources"), raw.get("data_sources"), []),
        "source_selection": _first(raw.get("source_selection"), json_mapping.get("sourceSelection"), {}),
        "field_mappings": _first(raw.get("field_mappings"), json_mapping.get("fieldMappings"), []),
        "relationships": _first(
            raw.get("relationships"), _dig(raw, "relationship_config", "relationships"), []
        ),
        "concatenations": _first(
            raw.get("concatenations"), _dig(raw, "relationship_config", "concatenations"), []
        ),
        "rss": _first(raw.get("rss"), rss_legacy or None, {}),
        "transformations": _first(raw.get("transformations"), legacy_transforms, []),
        "output_schema": schema or {},
        "output_wrapper": _first(raw.get("output_wrapper"), json_mapping.get("outputWrapper"), {}),
        "cache": _first(raw.get("cache"), raw.get("cache_config"), {}),
        "rate_limit": _first(raw.get("rate_limit"), raw.get("rate_limit_config"), {}),
        "auth": _first(raw.get("auth"), raw.get("auth_config"), {}),
    }

    # The legacy selection carried one primaryPath for every source.
    selection = merged["source_selection"]
    if isinstance(selection, dict) and selection.get("primaryPath"):
        shared = selection["primaryPath"]
        selection = dict(selection)
        selection["sources"] = [
            {**s, "primaryPath": s.get("primaryPath") or shared} if isinstance(s, dict) else s
            for s in selection.get("sources") or []
        ]
        merged["source_selection"] = selection

    config = EndpointConfig.model_validate(merged)
    logger.debug(
        "Normalized endpoint %s/%s: %d source(s), %d mapping(s)",
        config.owner, config.slug, len(config.sources), len(config.field_mappings),
    )
    return config
