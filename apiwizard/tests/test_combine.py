"""Tests for relationship joins, concatenation and RSS merging."""
import xml.etree.ElementTree as ET
from datetime import datetime, timezone

import pytest

from apiwizard.combine.concat import concatenate_sources, deduplicate, interleave
from apiwizard.combine.joins import apply_relationships, join, join_order
from apiwizard.combine.rss import map_item, merge_rss, render_rss, sort_chronological
from apiwizard.config.models import (
    DataConcatenation, DataRelationship, RSSOptions, RSSSourceMapping,
)
from apiwizard.errors import InvalidConcatenationError, InvalidRelationshipError, JoinCycleError


def _rel(rid="r1", parent="teams", child="players", **extra):
    fields = dict(parent_key="id", foreign_key="team_id", embed_as="players")
    fields.update(extra)
    return DataRelationship(id=rid, parent_source=parent, child_source=child, **fields)


TEAMS = [{"id": 1, "name": "Bears"}, {"id": 2, "name": "Lions"}, {"id": 3, "name": "Vikings"}]
PLAYERS = [
    {"name": "a", "team_id": 1},
    {"name": "b", "team_id": 1},
    {"name": "c", "team_id": 2},
]


# ---------------------------------------------------------------------------
# Joins
# ---------------------------------------------------------------------------

class TestJoin:
    def test_one_to_many_drops_orphans(self):
        joined = join(TEAMS, PLAYERS, _rel())
        assert [t["name"] for t in joined] == ["Bears", "Lions"]
        assert [p["name"] for p in joined[0]["players"]] == ["a", "b"]

    def test_include_orphans(self):
        joined = join(TEAMS, PLAYERS, _rel(include_orphans=True))
        assert joined[2]["name"] == "Vikings"
        assert joined[2]["players"] == []

    def test_one_to_one_embeds_first_match(self):
        joined = join(TEAMS, PLAYERS, _rel(type="one-to-one", embed_as="captain"))
        assert joined[0]["captain"] == {"name": "a", "team_id": 1}

    def test_many_to_many_matches_list_keys(self):
        tags = [{"id": "x"}, {"id": "y"}]
        posts = [{"title": "p1", "tag_ids": ["x", "y"]}, {"title": "p2", "tag_ids": ["y"]}]
        rel = DataRelationship(
            id="r", parent_source="tags", child_source="posts", parent_key="id",
            foreign_key="tag_ids", type="many-to-many", embed_as="posts",
        )
        joined = join(tags, posts, rel)
        assert [p["title"] for p in joined[0]["posts"]] == ["p1"]
        assert [p["title"] for p in joined[1]["posts"]] == ["p1", "p2"]

    def test_null_keys_never_match(self):
        joined = join([{"id": None}], [{"team_id": None}], _rel(include_orphans=True))
        assert joined == [{"id": None, "players": []}]

    def test_inputs_not_mutated(self):
        teams = [{"id": 1}]
        join(teams, PLAYERS, _rel())
        assert teams == [{"id": 1}]

    def test_self_join_rejected(self):
        with pytest.raises(InvalidRelationshipError):
            join(TEAMS, TEAMS, _rel(child="teams"))


class TestJoinOrder:
    def test_child_relationships_run_first(self):
        leagues_teams = _rel(rid="lt", parent="leagues", child="teams")
        teams_players = _rel(rid="tp", parent="teams", child="players")
        assert [r.id for r in join_order([leagues_teams, teams_players])] == ["tp", "lt"]

    def test_cycle_rejected(self):
        with pytest.raises(JoinCycleError):
            join_order([_rel(rid="a", parent="x", child="y"), _rel(rid="b", parent="y", child="x")])

    def test_nested_streams(self):
        streams = {
            "leagues": [{"id": "nfl"}],
            "teams": [{"id": 1, "league": "nfl"}],
            "players": [{"team_id": 1, "name": "a"}],
        }
        rels = [
            _rel(rid="lt", parent="leagues", child="teams", foreign_key="league", embed_as="teams"),
            _rel(rid="tp", parent="teams", child="players"),
        ]
        result = apply_relationships(streams, rels)
        assert list(result) == ["leagues"]
        assert result["leagues"][0]["teams"][0]["players"][0]["name"] == "a"


# ---------------------------------------------------------------------------
# Concatenation
# ---------------------------------------------------------------------------

class TestConcatenation:
    def test_union_dedupe_first_wins(self):
        group = DataConcatenation(
            id="c", sources=["s1", "s2"], merge_strategy="union",
            deduplicate=True, deduplicate_field="id",
        )
        streams = {"s1": [{"id": 1, "a": 1}, {"id": 1, "a": 2}], "s2": [{"id": 2, "a": 3}]}
        result = concatenate_sources(streams, group)
        assert result.records == [{"id": 1, "a": 1}, {"id": 2, "a": 3}]
        assert result.warnings == []

    def test_interleave(self):
        assert interleave([["A1", "A2", "A3"], ["B1", "B2"]]) == ["A1", "B1", "A2", "B2", "A3"]

    def test_interleave_strategy(self):
        group = DataConcatenation(id="c", sources=["a", "b"], merge_strategy="interleave")
        streams = {"a": [{"v": "A1"}, {"v": "A2"}, {"v": "A3"}], "b": [{"v": "B1"}, {"v": "B2"}]}
        merged = concatenate_sources(streams, group).records
        assert [r["v"] for r in merged] == ["A1", "B1", "A2", "B2", "A3"]

    def test_interleave_keeps_none_items(self):
        assert interleave([[None, 1], [2]]) == [None, 2, 1]

    def test_concatenate_keeps_duplicates(self):
        group = DataConcatenation(
            id="c", sources=["s1", "s2"], merge_strategy="concatenate",
            deduplicate=True, deduplicate_field="id",
        )
        result = concatenate_sources({"s1": [{"id": 1}], "s2": [{"id": 1}]}, group)
        assert result.records == [{"id": 1}, {"id": 1}]

    def test_disjoint_schemas_warn_but_merge(self):
        group = DataConcatenation(id="c", sources=["s1", "s2"])
        result = concatenate_sources({"s1": [{"a": 1}], "s2": [{"b": 2}]}, group)
        assert result.records == [{"a": 1}, {"b": 2}]
        assert result.warnings[0].startswith("INCOMPATIBLE_CONCATENATION_SCHEMA:c")

    def test_metadata_keys_do_not_count_as_shared_fields(self):
        group = DataConcatenation(id="c", sources=["s1", "s2"])
        streams = {"s1": [{"a": 1, "_source": {"id": "s1"}}], "s2": [{"b": 2, "_source": {"id": "s2"}}]}
        assert concatenate_sources(streams, group).warnings

    def test_needs_two_sources(self):
        with pytest.raises(InvalidConcatenationError):
            concatenate_sources({}, DataConcatenation(id="c", sources=["s1", "s1"]))

    def test_dedupe_needs_field(self):
        with pytest.raises(InvalidConcatenationError):
            concatenate_sources({}, DataConcatenation(id="c", sources=["a", "b"], deduplicate=True))

    def test_deduplicate_keeps_keyless_records(self):
        assert deduplicate([{"x": 1}, {"x": 2}, {"id": 1}], "id") == [{"x": 1}, {"x": 2}, {"id": 1}]


# ---------------------------------------------------------------------------
# RSS
# ---------------------------------------------------------------------------

class TestRss:
    def test_chronological_undated_last_in_order(self):
        items = [
            {"title": "u1", "pubDate": None},
            {"title": "old", "pubDate": "Sun, 05 Oct 2026 10:00:00 GMT"},
            {"title": "u2", "pubDate": "garbage"},
            {"title": "new", "pubDate": "Wed, 07 Oct 2026 10:00:00 GMT"},
        ]
        assert [i["title"] for i in sort_chronological(items)] == ["new", "old", "u1", "u2"]

    def test_map_item_fallbacks(self):
        mapping = RSSSourceMapping(source_id="s1")
        item = map_item({"title": "T", "link": "L", "created_at": "2026-10-07T10:00:00Z", "id": 7}, mapping, "Src")
        assert item["pubDate"] == "Wed, 07 Oct 2026 10:00:00 GMT"
        assert item["guid"] == "7"
        assert item["_sourceId"] == "s1"
        assert item["_sourceName"] == "Src"

    def test_guid_hash_is_stable(self):
        mapping = RSSSourceMapping(source_id="s1")
        first = map_item({"title": "T"}, mapping)["guid"]
        assert first == map_item({"title": "T"}, mapping)["guid"]
        assert len(first) == 40

    def test_merge_caps_and_warnings(self):
        options = RSSOptions(
            source_mappings=[
                RSSSourceMapping(source_id="a", items_path="items"),
                RSSSourceMapping(source_id="b"),
                RSSSourceMapping(source_id="c", items_path="missing"),
                RSSSourceMapping(source_id="d", enabled=False),
            ],
            max_items_per_source=2,
            max_total_items=3,
        )
        payloads = {
            "a": {"items": [{"title": "a1"}, {"title": "a2"}, {"title": "a3"}]},
            "b": None,
            "c": {"items": []},
            "d": [{"title": "d1"}],
        }
        result = merge_rss(payloads, options)
        assert [i["title"] for i in result.records] == ["a1", "a2"]
        assert "SOURCE_UNAVAILABLE:b" in result.warnings
        assert any(w.startswith("PATH_NOT_FOUND:c:missing") for w in result.warnings)

    def test_interleaved_merge(self):
        options = RSSOptions(
            source_mappings=[RSSSourceMapping(source_id="a"), RSSSourceMapping(source_id="b")],
            merge_strategy="interleaved",
        )
        payloads = {"a": [{"title": "a1"}, {"title": "a2"}], "b": [{"title": "b1"}]}
        assert [i["title"] for i in merge_rss(payloads, options).records] == ["a1", "b1", "a2"]

    @pytest.mark.parametrize("strategy", ["sequential", "priority"])
    def test_listed_order_strategies_ignore_dates(self, strategy):
        options = RSSOptions(
            source_mappings=[RSSSourceMapping(source_id="low"), RSSSourceMapping(source_id="high")],
            merge_strategy=strategy,
        )
        payloads = {
            "low": [{"title": "low1", "pubDate": "2026-10-01T00:00:00Z"}],
            "high": [{"title": "high1", "pubDate": "2026-10-09T00:00:00Z"}],
        }
        # The first listed source takes precedence even though it is older.
        assert [i["title"] for i in merge_rss(payloads, options).records] == ["low1", "high1"]

    def test_total_cap_applies_after_merge(self):
        options = RSSOptions(
            source_mappings=[RSSSourceMapping(source_id="a"), RSSSourceMapping(source_id="b")],
            merge_strategy="interleaved",
            max_total_items=3,
        )
        payloads = {"a": [{"title": "a1"}, {"title": "a2"}], "b": [{"title": "b1"}, {"title": "b2"}]}
        assert [i["title"] for i in merge_rss(payloads, options).records] == ["a1", "b1", "a2"]

    def test_out_of_range_epoch_sorts_as_undated(self):
        options = RSSOptions(
            source_mappings=[RSSSourceMapping(source_id="s1", field_mappings={"pubDate": "ts"})],
            merge_strategy="chronological",
        )
        payloads = {"s1": [{"title": "x", "ts": 1e30}, {"title": "y", "ts": 1700000000}]}
        records = merge_rss(payloads, options).records
        assert [i["title"] for i in records] == ["y", "x"]
        assert records[1]["pubDate"] is None

    def test_render_rss(self):
        options = RSSOptions(channel_title="News", channel_link="https://example.com")
        items = [{"title": "T", "description": "D", "link": "L", "guid": "g1", "pubDate": None, "_sourceName": "S"}]
        xml = render_rss(options, items, build_date=datetime(2026, 10, 18, tzinfo=timezone.utc))
        root = ET.fromstring(xml.split("\n", 1)[1])
        channel = root.find("channel")
        assert channel.findtext("title") == "News"
        assert channel.findtext("lastBuildDate") == "Sun, 18 Oct 2026 00:00:00 GMT"
        item = channel.find("item")
        assert item.findtext("guid") == "g1"
        assert item.find("pubDate") is None
        assert item.findtext("source") == "S"
