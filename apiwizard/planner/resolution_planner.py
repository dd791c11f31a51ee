from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from apiwizard.combine.joins import join_order
from apiwizard.config.models import EndpointConfig
from apiwizard.errors import ConfigurationError, DanglingSourceReferenceError
from apiwizard.mapping.builder import validate_mappings
from apiwizard.paths.resolver import check_path, get_value
from apiwizard.planner.models import ExecutionDAG, FetchNode, ResolutionPlan

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


def referenced_sources(config: EndpointConfig) -> List[str]:
    """Every source id the endpoint reads from, in first-reference order."""
    ids: List[str] = []

    def _add(source_id: Optional[str]) -> None:
        if source_id and source_id not in ids:
            ids.append(source_id)

    for entry in config.source_selection.sources:
        _add(entry.id)
    for mapping in config.field_mappings:
        _add(mapping.source_id)
    for rel in config.relationships:
        _add(rel.parent_source)
        _add(rel.child_source)
    for group in config.concatenations:
        for source_id in group.sources:
            _add(source_id)
    if config.output_format == "rss":
        for rss_mapping in config.rss.source_mappings:
            if rss_mapping.enabled:
                _add(rss_mapping.source_id)
    return ids


class ResolutionPlanner:
    """
    Validates an EndpointConfig's structure and produces a ResolutionPlan.

    All structural checks run before any source is fetched: a plan either
    comes back complete or a ConfigurationError explains what to fix.
    """

    def __init__(self, config: EndpointConfig) -> None:
        self._cfg = config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, params: Optional[Dict[str, str]] = None) -> ResolutionPlan:
        """
        Raises:
            DuplicateTargetPathError, PathSyntaxError: invalid mappings.
            DanglingSourceReferenceError: an id that names no DataSource.
            InvalidRelationshipError, JoinCycleError: invalid relationships.
            InvalidConcatenationError: invalid concatenation groups.
        """
        self.check_structure()

        dag = ExecutionDAG()
        for source_id in referenced_sources(self._cfg):
            dag.add_node(FetchNode(id=f"fetch_{source_id}", source_id=source_id, params=dict(params or {})))

        plan = ResolutionPlan(
            endpoint_key=f"{self._cfg.owner}/{self._cfg.slug}",
            fetch_dag=dag,
            join_order=[rel.id for rel in join_order(self._cfg.relationships)],
            params=dict(params or {}),
        )
        logger.debug(
            "Planned %s: %d fetch node(s), joins=%s",
            plan.endpoint_key, len(dag.nodes), plan.join_order,
        )
        return plan

    def check_structure(self) -> None:
        for check in self.checks():
            check()

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def checks(self):
        return [
            self._check_mappings,
            self._check_references,
            self._check_relationships,
            self._check_concatenations,
        ]

    def _check_mappings(self) -> None:
        validate_mappings(self._cfg.field_mappings)

    def _check_references(self) -> None:
        known = set(self._cfg.source_map())

        def _require(source_id: Optional[str], referenced_by: str) -> None:
            if source_id and source_id not in known:
                raise DanglingSourceReferenceError(source_id, referenced_by)

        for entry in self._cfg.source_selection.sources:
            _require(entry.id, "source selection")
        for mapping in self._cfg.field_mappings:
            _require(mapping.source_id, f"mapping '{mapping.id}'")
        for rel in self._cfg.relationships:
            _require(rel.parent_source, f"relationship '{rel.id}'")
            _require(rel.child_source, f"relationship '{rel.id}'")
        for group in self._cfg.concatenations:
            for source_id in group.sources:
                _require(source_id, f"concatenation '{group.id}'")
        if self._cfg.output_format != "rss":
            return
        for rss_mapping in self._cfg.rss.source_mappings:
            _require(rss_mapping.source_id, "rss source mapping")

    def _check_relationships(self) -> None:
        join_order(self._cfg.relationships)

    def _check_concatenations(self) -> None:
        for group in self._cfg.concatenations:
            group.check()


# ----------------------------------------------------------------------
# Authoring-time validation report
# ----------------------------------------------------------------------

def _mapping_sample(config: EndpointConfig, source_id: str) -> Any:
    """Sample a mapping path is evaluated against: one stream item in stream mode."""
    source = config.source_map().get(source_id)
    if source is None or source.sample_data is None:
        return None
    sample = source.sample_data
    primary = {e.id: e.primary_path for e in config.source_selection.sources}
    if source_id in primary:
        if primary[source_id]:
            sample = get_value(sample, primary[source_id])
        if isinstance(sample, list):
            sample = sample[0] if sample else None
    return sample


def validate_endpoint(config: EndpointConfig) -> ValidationReport:
    """
    Full authoring report: every structural check is run independently so
    all errors show up at once, plus advisory warnings:

      REQUIRED_FIELD_UNMAPPED    required schema field with no mapping/default (error)
      INCOMPLETE_MAPPING         mapping with neither source nor fallback
      UNUSED_TRANSFORMATION      transformation reading a field nothing produces
      IMPLICIT_ARRAY_TRAVERSAL / WILDCARD_ON_NON_ARRAY
                                 path shape problems against cached sample_data
    """
    report = ValidationReport()
    planner = ResolutionPlanner(config)

    for check in planner.checks():
        try:
            check()
        except ConfigurationError as exc:
            report.errors.append(str(exc))

    if not config.sources:
        report.errors.append("NO_SOURCES:endpoint has no data sources")
    if config.output_format == "rss":
        if not any(m.enabled for m in config.rss.source_mappings) and not config.field_mappings:
            report.errors.append("NO_RSS_SOURCES:no enabled RSS source mapping")
    elif not config.field_mappings:
        report.errors.append("NO_FIELD_MAPPINGS:endpoint has no field mappings")

    mapped_targets = {m.target_field for m in config.field_mappings}
    for path, node in config.output_schema.required_nodes().items():
        if path not in mapped_targets and node.default_value is None:
            report.errors.append(
                f"REQUIRED_FIELD_UNMAPPED:{path} has no mapping and no default value"
            )

    for mapping in config.field_mappings:
        if not mapping.is_complete:
            report.warnings.append(f"INCOMPLETE_MAPPING:{mapping.id} ({mapping.target_field})")

    produced = mapped_targets | set(config.output_schema.leaf_paths())
    for step in config.transformations:
        root = step.source_field.split(".")[0].split("[")[0]
        if step.source_field and not any(
            p == step.source_field or p.split(".")[0].split("[")[0] == root for p in produced
        ):
            report.warnings.append(
                f"UNUSED_TRANSFORMATION:{step.id} reads '{step.source_field}' which no mapping produces"
            )

    known = config.source_map()
    for mapping in config.field_mappings:
        if mapping.is_static or mapping.source_id not in known:
            continue
        sample = _mapping_sample(config, mapping.source_id)
        if sample is None or not mapping.source_field:
            continue
        try:
            report.warnings.extend(check_path(sample, mapping.source_field))
        except ConfigurationError:
            # Already reported by _check_mappings.
            continue

    report.valid = not report.errors
    return report
