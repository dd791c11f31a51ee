"""Tests for field discovery, the field explorer and mapping suggestions."""
import pytest

from apiwizard.discovery.fields import (
    discover, explore, infer_type, levenshtein, similarity, suggest_mappings,
)
from apiwizard.errors import PathSyntaxError


# ---------------------------------------------------------------------------
# discover()
# ---------------------------------------------------------------------------

class TestDiscover:
    def test_object_keys_and_one_nested_level(self):
        sample = {"id": 1, "team": {"name": "Bears", "venue": {"city": "Chicago"}}, "tags": ["a"]}
        result = discover(sample)
        assert result.paths() == ["id", "team", "team.name", "team.venue", "tags"]
        # Two levels down is not expanded.
        assert "team.venue.city" not in result.paths()

    def test_types_inferred(self):
        result = discover({"n": 1.5, "b": True, "s": "x", "z": None, "l": [], "o": {}})
        types = {f.path: f.inferred_type for f in result.fields}
        assert types == {
            "n": "number", "b": "boolean", "s": "string",
            "z": "null", "l": "array", "o": "object",
        }

    def test_first_array_element_only(self):
        sample = {"items": [{"a": 1}, {"a": 2, "late": True}]}
        result = discover(sample, data_path="items")
        assert result.paths() == ["a"]

    def test_data_path_not_found(self):
        result = discover({"x": 1}, data_path="data.items")
        assert result.fields == []
        assert result.warnings == ["DATA_PATH_NOT_FOUND:data.items"]

    def test_empty_array(self):
        result = discover({"items": []}, data_path="items")
        assert result.fields == []
        assert result.warnings[0].startswith("EMPTY_ARRAY:")

    def test_scalar_target(self):
        result = discover({"count": 3}, data_path="count")
        assert result.warnings[0].startswith("NO_OBJECT_FIELDS:")

    def test_wildcard_data_path_rejected(self):
        with pytest.raises(PathSyntaxError):
            discover({"items": []}, data_path="items[*]")

    def test_sample_previews(self):
        result = discover({"list": [1, 2, 3], "obj": {"a": 1, "b": 2}})
        previews = {f.path: f.sample for f in result.fields}
        assert previews["list"] == "[3 items]"
        assert previews["obj"] == "{2 keys}"


class TestInferType:
    def test_bool_is_not_number(self):
        assert infer_type(False) == "boolean"
        assert infer_type(0) == "number"


# ---------------------------------------------------------------------------
# explore()
# ---------------------------------------------------------------------------

class TestExplore:
    def test_wildcard_and_index_paths(self):
        sample = {"events": [{"id": 1}, {"id": 2}, {"id": 3}, {"id": 4}]}
        paths = [f.path for f in explore(sample)]
        assert "events[*]" not in paths
        assert "events[*].id" in paths
        assert "events[0].id" in paths
        assert "events[2]" in paths
        # max_indices defaults to 3.
        assert "events[3]" not in paths

    def test_scalar_arrays(self):
        paths = [f.path for f in explore({"tags": ["a", "b"]})]
        assert "tags[*]" in paths
        assert "tags[1]" in paths

    def test_depth_limit(self):
        deep = {"a": {"b": {"c": {"d": 1}}}}
        paths = [f.path for f in explore(deep, max_depth=2)]
        assert "a.b" in paths
        assert "a.b.c" not in paths


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

class TestSuggestions:
    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3

    def test_similarity_is_case_insensitive(self):
        assert similarity("Title", "title") == 1.0

    def test_similarity_normalizes_by_longer_name(self):
        assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)
        assert similarity("", "") == 1.0

    def test_suggests_close_names_only(self):
        suggestions = suggest_mappings(
            ["title", "pub_date", "author_name"],
            ["title", "pubDate", "summary"],
        )
        assert suggestions["title"] == "title"
        assert "summary" not in suggestions

    def test_threshold_is_exclusive(self):
        # similarity("abc", "abd") == 1 - 1/3 ≈ 0.667
        assert suggest_mappings(["abc"], ["abd"], threshold=0.6) == {"abd": "abc"}
        assert suggest_mappings(["abcde"], ["abcdx"], threshold=0.8) == {}
