from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from apiwizard.combine.concat import concatenate_sources
from apiwizard.combine.joins import apply_relationships
from apiwizard.combine.rss import merge_rss, render_rss
from apiwizard.config.models import EndpointConfig
from apiwizard.mapping.builder import build_records
from apiwizard.paths.resolver import get_value
from apiwizard.planner.resolution_planner import ResolutionPlanner, referenced_sources
from apiwizard.transforms.pipeline import apply

logger = logging.getLogger(__name__)

# Key under which stream items carry their origin; read via '_source.<field>' paths.
SOURCE_META_KEY = "_source"


@dataclass
class Resolution:
    records: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)


def _add_warnings(target: List[str], warnings: List[str]) -> None:
    for warning in warnings:
        if warning not in target:
            target.append(warning)


class Resolver:
    """
    Deterministic, synchronous resolution of one endpoint over a payload map.

    Works on a deep-copied snapshot of the configuration and payloads, so
    neither is mutated and concurrent resolutions cannot interfere.

    Modes:
      rss     output_format == 'rss' with source mappings: merge_rss().
      stream  source selection, relationships or concatenations configured:
              per-source item streams are joined and concatenated, then each
              stream item is mapped on its own.
      direct  otherwise: mappings resolve against the full payloads.

    Every mode ends with the endpoint's transformation pipeline per record.
    """

    def __init__(self, config: EndpointConfig) -> None:
        self._cfg = config.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, payloads: Dict[str, Any]) -> Resolution:
        """
        Raises:
            ConfigurationError (any subclass): the configuration is
                structurally invalid; nothing is resolved.
        """
        ResolutionPlanner(self._cfg).check_structure()
        payloads = copy.deepcopy(payloads)
        resolution = Resolution(sources=referenced_sources(self._cfg))

        for source_id in resolution.sources:
            if payloads.get(source_id) is None:
                resolution.warnings.append(f"SOURCE_UNAVAILABLE:{source_id}")

        if self._cfg.output_format == "rss" and self._cfg.rss.source_mappings:
            records = self._resolve_rss(payloads, resolution)
        elif self._is_stream_mode():
            records = self._resolve_stream(payloads, resolution)
        else:
            result = build_records(self._cfg.field_mappings, payloads, self._cfg.output_schema)
            _add_warnings(resolution.warnings, result.warnings)
            records = result.records

        for record in records:
            transformed = apply(record, self._cfg.transformations)
            _add_warnings(resolution.warnings, transformed.warnings)
            resolution.records.append(transformed.record)

        logger.info(
            "Resolved %s/%s: %d record(s), %d warning(s)",
            self._cfg.owner, self._cfg.slug, len(resolution.records), len(resolution.warnings),
        )
        return resolution

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _is_stream_mode(self) -> bool:
        return bool(
            self._cfg.source_selection.sources
            or self._cfg.relationships
            or self._cfg.concatenations
        )

    def _resolve_rss(self, payloads: Dict[str, Any], resolution: Resolution) -> List[Dict[str, Any]]:
        names = {s.id: s.name or s.id for s in self._cfg.sources}
        merged = merge_rss(payloads, self._cfg.rss, names)
        _add_warnings(resolution.warnings, merged.warnings)
        return merged.records

    def _source_items(self, source_id: str, payload: Any) -> List[Any]:
        primary = {e.id: e.primary_path for e in self._cfg.source_selection.sources}
        data = get_value(payload, primary[source_id]) if primary.get(source_id) else payload
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    def _tag(self, source_id: str, items: List[Any]) -> List[Any]:
        source = self._cfg.source_map()[source_id]
        meta = {"id": source.id, "name": source.name, "type": source.type, "category": source.category}
        return [{**item, SOURCE_META_KEY: dict(meta)} if isinstance(item, dict) else item for item in items]

    def _streams(self, payloads: Dict[str, Any], resolution: Resolution) -> List[Tuple[List[str], List[Any]]]:
        """
        Build the ordered record streams as (bound source ids, items) pairs.

        Relationship children are folded into their parents; each
        concatenation group becomes one stream bound to all its members.
        """
        stream_ids = [
            sid for sid in referenced_sources(self._cfg)
            if sid in {e.id for e in self._cfg.source_selection.sources}
            or any(sid in (r.parent_source, r.child_source) for r in self._cfg.relationships)
            or any(sid in g.sources for g in self._cfg.concatenations)
        ]
        per_source = {sid: self._source_items(sid, payloads.get(sid)) for sid in stream_ids}
        joined = apply_relationships(per_source, self._cfg.relationships)
        tagged = {sid: self._tag(sid, items) for sid, items in joined.items()}

        streams: List[Tuple[List[str], List[Any]]] = []
        grouped = set()
        for group in self._cfg.concatenations:
            combined = concatenate_sources(tagged, group)
            _add_warnings(resolution.warnings, combined.warnings)
            members = [sid for sid in group.sources if sid in tagged]
            streams.append((members, combined.records))
            grouped.update(group.sources)
        for sid in stream_ids:
            if sid in tagged and sid not in grouped:
                streams.append(([sid], tagged[sid]))

        if self._cfg.source_selection.merge_mode == "single" and len(streams) > 1:
            selected = [e.id for e in self._cfg.source_selection.sources]
            first = selected[0] if selected else None
            chosen = next((s for s in streams if first in s[0]), streams[0])
            return [chosen]
        return streams

    def _resolve_stream(self, payloads: Dict[str, Any], resolution: Resolution) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        for bound_ids, items in self._streams(payloads, resolution):
            for item in items:
                bound = dict(payloads)
                for sid in bound_ids:
                    bound[sid] = item
                result = build_records(self._cfg.field_mappings, bound, self._cfg.output_schema)
                _add_warnings(resolution.warnings, result.warnings)
                records.extend(result.records)
        return records


# ----------------------------------------------------------------------
# Output shaping
# ----------------------------------------------------------------------

def wrap_output(
    config: EndpointConfig,
    resolution: Resolution,
    now: Optional[datetime] = None,
) -> Any:
    """
    Apply the endpoint's output wrapper to resolved records.

    Disabled wrapper without metadata: the bare record list. Otherwise
    {wrapper_key: records} plus an optional 'metadata' block (timestamp,
    sources, count, custom metadata) selected by metadata_fields.
    """
    wrapper = config.output_wrapper
    if not wrapper.enabled and not wrapper.include_metadata:
        return resolution.records

    body: Dict[str, Any] = {wrapper.wrapper_key or "data": resolution.records}
    if wrapper.include_metadata:
        metadata: Dict[str, Any] = {}
        if wrapper.metadata_fields.get("timestamp", True):
            metadata["timestamp"] = (now or datetime.now(timezone.utc)).isoformat()
        if wrapper.metadata_fields.get("source", True):
            names = {s.id: s.name for s in config.sources}
            metadata["sources"] = [{"id": sid, "name": names.get(sid, "")} for sid in resolution.sources]
        if wrapper.metadata_fields.get("count", True):
            metadata["count"] = len(resolution.records)
        metadata.update(wrapper.custom_metadata)
        body["metadata"] = metadata
    return body


def render(config: EndpointConfig, resolution: Resolution, now: Optional[datetime] = None) -> Any:
    """Final response body: RSS XML for rss endpoints, wrapped JSON otherwise."""
    if config.output_format == "rss":
        return render_rss(config.rss, resolution.records, build_date=now)
    return wrap_output(config, resolution, now=now)
