"""Tests for ExecutionDAG, ResolutionPlanner and validate_endpoint()."""
import pytest

from apiwizard.config.models import (
    DataConcatenation, DataRelationship, EndpointConfig, OutputSchema,
    RSSOptions, RSSSourceMapping, SourceSelection, Transformation,
)
from apiwizard.errors import (
    DanglingSourceReferenceError, DuplicateTargetPathError, InvalidConcatenationError, JoinCycleError,
)
from apiwizard.planner.models import ExecutionDAG, FetchNode
from apiwizard.planner.resolution_planner import ResolutionPlanner, referenced_sources, validate_endpoint
from apiwizard.tests.factories import SCOREBOARD, mapping, mock_source


def _endpoint(**extra) -> EndpointConfig:
    fields = dict(
        slug="e",
        sources=[mock_source("s1", SCOREBOARD), mock_source("s2", [{"id": 1}])],
        field_mappings=[mapping("m1", "score", "s1", "events[*].competitions[0].competitors[0].score")],
    )
    fields.update(extra)
    return EndpointConfig(**fields)


# ---------------------------------------------------------------------------
# ExecutionDAG
# ---------------------------------------------------------------------------

class TestExecutionDAG:
    def test_parallel_nodes(self):
        dag = ExecutionDAG()
        dag.add_node(FetchNode(id="n1", source_id="a"))
        dag.add_node(FetchNode(id="n2", source_id="b"))
        levels = dag.get_levels()
        assert len(levels) == 1
        assert [n.id for n in levels[0]] == ["n1", "n2"]

    def test_diamond_dependency(self):
        """A → B, A → C, B → D, C → D"""
        dag = ExecutionDAG()
        dag.add_node(FetchNode(id="A", source_id="a"))
        dag.add_node(FetchNode(id="B", source_id="b", depends_on=["A"]))
        dag.add_node(FetchNode(id="C", source_id="c", depends_on=["A"]))
        dag.add_node(FetchNode(id="D", source_id="d", depends_on=["B", "C"]))
        levels = dag.get_levels()
        assert [[n.id for n in wave] for wave in levels] == [["A"], ["B", "C"], ["D"]]

    def test_cycle_detection(self):
        dag = ExecutionDAG()
        dag.add_node(FetchNode(id="A", source_id="a", depends_on=["B"]))
        dag.add_node(FetchNode(id="B", source_id="b", depends_on=["A"]))
        with pytest.raises(ValueError, match="cycle"):
            dag.get_levels()

    def test_add_dependency_unknown_node(self):
        with pytest.raises(ValueError):
            ExecutionDAG().add_dependency("x", "y")

    def test_empty(self):
        assert ExecutionDAG().get_levels() == []


# ---------------------------------------------------------------------------
# ResolutionPlanner
# ---------------------------------------------------------------------------

class TestResolutionPlanner:
    def test_plan_fetches_referenced_sources_only(self):
        plan = ResolutionPlanner(_endpoint()).plan({"week": "3"})
        assert [n.source_id for n in plan.fetch_dag.nodes] == ["s1"]
        assert plan.fetch_dag.nodes[0].id == "fetch_s1"
        assert plan.params == {"week": "3"}
        assert plan.endpoint_key == "default/e"

    def test_referenced_sources_order(self):
        cfg = _endpoint(
            source_selection=SourceSelection(sources=[{"id": "s2"}]),
            relationships=[DataRelationship(
                id="r", parent_source="s2", parent_key="id", child_source="s1", foreign_key="id",
            )],
        )
        assert referenced_sources(cfg) == ["s2", "s1"]

    def test_rss_sources_only_for_rss_output(self):
        rss = RSSOptions(source_mappings=[RSSSourceMapping(source_id="s2")])
        assert "s2" not in referenced_sources(_endpoint(rss=rss))
        assert "s2" in referenced_sources(_endpoint(rss=rss, output_format="rss"))

    def test_dangling_reference(self):
        cfg = _endpoint(field_mappings=[mapping("m1", "x", "ghost", "a")])
        with pytest.raises(DanglingSourceReferenceError) as exc_info:
            ResolutionPlanner(cfg).plan()
        assert exc_info.value.context["source_id"] == "ghost"

    def test_duplicate_targets(self):
        cfg = _endpoint(field_mappings=[mapping("a", "x", "s1", "p"), mapping("b", "x", "s2", "p")])
        with pytest.raises(DuplicateTargetPathError):
            ResolutionPlanner(cfg).plan()

    def test_join_cycle(self):
        rels = [
            DataRelationship(id="a", parent_source="s1", parent_key="id", child_source="s2", foreign_key="id"),
            DataRelationship(id="b", parent_source="s2", parent_key="id", child_source="s1", foreign_key="id"),
        ]
        with pytest.raises(JoinCycleError):
            ResolutionPlanner(_endpoint(relationships=rels)).plan()

    def test_invalid_concatenation(self):
        cfg = _endpoint(concatenations=[DataConcatenation(id="c", sources=["s1"])])
        with pytest.raises(InvalidConcatenationError):
            ResolutionPlanner(cfg).plan()

    def test_join_order_in_plan(self):
        rels = [DataRelationship(id="r", parent_source="s2", parent_key="id", child_source="s1", foreign_key="id")]
        assert ResolutionPlanner(_endpoint(relationships=rels)).plan().join_order == ["r"]


# ---------------------------------------------------------------------------
# validate_endpoint()
# ---------------------------------------------------------------------------

class TestValidateEndpoint:
    def test_valid(self):
        report = validate_endpoint(_endpoint())
        assert report.valid is True
        assert report.to_dict() == {"valid": True, "errors": [], "warnings": []}

    def test_collects_every_error(self):
        cfg = _endpoint(
            field_mappings=[mapping("a", "x", "ghost", "p"), mapping("b", "x", "s1", "p")],
            concatenations=[DataConcatenation(id="c", sources=["s1"])],
        )
        report = validate_endpoint(cfg)
        codes = [e.split(":", 1)[0] for e in report.errors]
        assert report.valid is False
        assert codes == ["DUPLICATE_TARGET_PATH", "DANGLING_SOURCE_REFERENCE", "INVALID_CONCATENATION"]

    def test_no_sources_and_no_mappings(self):
        report = validate_endpoint(EndpointConfig(slug="empty"))
        assert "NO_SOURCES:endpoint has no data sources" in report.errors
        assert "NO_FIELD_MAPPINGS:endpoint has no field mappings" in report.errors

    def test_required_schema_field_without_mapping(self):
        schema = OutputSchema.model_validate({"root": [
            {"name": "score", "type": "number"},
            {"name": "title", "required": True},
            {"name": "league", "required": True, "defaultValue": "NFL"},
        ]})
        report = validate_endpoint(_endpoint(output_schema=schema))
        assert report.errors == ["REQUIRED_FIELD_UNMAPPED:title has no mapping and no default value"]

    def test_advisory_warnings(self):
        cfg = _endpoint(
            field_mappings=[
                mapping("m1", "score", "s1", "events.competitions"),
                mapping("m2", "pending", "s1"),
            ],
            transformations=[Transformation(id="t1", type="uppercase", source_field="headline")],
        )
        report = validate_endpoint(cfg)
        assert report.valid is True
        codes = [w.split(":", 1)[0] for w in report.warnings]
        assert codes == ["INCOMPLETE_MAPPING", "UNUSED_TRANSFORMATION", "IMPLICIT_ARRAY_TRAVERSAL"]

    def test_path_checks_use_primary_path_item(self):
        cfg = _endpoint(
            source_selection=SourceSelection(sources=[{"id": "s1", "primary_path": "events"}]),
            field_mappings=[mapping("m1", "c", "s1", "competitions[0].competitors[*].score")],
        )
        assert validate_endpoint(cfg).warnings == []
