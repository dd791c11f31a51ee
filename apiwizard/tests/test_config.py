"""Tests for endpoint models, normalization and the EndpointRegistry."""
import os

import pytest
import yaml
from pydantic import ValidationError

from apiwizard.config.models import DataSource, EndpointConfig, OutputSchema
from apiwizard.config.normalize import normalize_endpoint
from apiwizard.config.registry import EndpointRegistry

CONFIG_DIR = os.path.join(os.path.dirname(__file__), "..", "..", "configs", "endpoints")


def _legacy_endpoint():
    """Endpoint in the nested shape the authoring UI persists."""
    return {
        "slug": "legacy",
        "user_id": "u42",
        "active": True,
        "data_sources": [
            {"id": "s1", "type": "api", "api_config": {"url": "mock"}, "sample_data": {"items": []}},
            {"id": "s2", "type": "api", "api_config": {"url": "mock"}, "sample_data": {"items": []}},
        ],
        "schema_config": {"schema": {"metadata": {
            "jsonMappingConfig": {
                "sourceSelection": {"sources": [{"id": "s1"}, {"id": "s2"}], "primaryPath": "items", "mergeMode": "combined"},
                "fieldMappings": [{"id": "m1", "targetPath": "title", "sourceId": "s1", "sourcePath": "name"}],
                "outputTemplate": {"fields": [{"path": "title", "type": "string", "required": True}]},
                "outputWrapper": {"enabled": True, "wrapperKey": "items"},
            },
            "channelTitle": "Legacy feed",
            "sourceMappings": [{"sourceId": "s1", "itemsPath": "items"}],
        }}},
        "relationship_config": {
            "concatenations": [{"id": "c1", "sources": ["s1", "s2"], "merge_strategy": "union"}],
        },
        "transform_config": {"transformations": [{"id": "t1", "type": "uppercase", "source_field": "title"}]},
        "cache_config": {"enabled": True, "ttl": 60},
    }


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class TestModels:
    def test_defaults(self):
        cfg = EndpointConfig(slug="x")
        assert cfg.owner == "default"
        assert cfg.status == "draft"
        assert cfg.source_selection.merge_mode == "single"
        assert cfg.key == ("default", "x")

    def test_source_needs_config_or_sample(self):
        with pytest.raises(ValidationError):
            DataSource(id="s1", type="api")
        assert DataSource(id="s1", type="database", sample_data=[]).database_config is None

    def test_camel_case_aliases(self):
        cfg = EndpointConfig.model_validate({
            "slug": "x",
            "field_mappings": [{"id": "m1", "targetPath": "a", "sourceId": "s1", "sourcePath": "b", "fallbackValue": 0}],
        })
        m = cfg.field_mappings[0]
        assert (m.target_field, m.source_id, m.source_field, m.fallback_value) == ("a", "s1", "b", 0)

    def test_schema_paths(self):
        schema = OutputSchema.model_validate({"root": [
            {"name": "team", "type": "object", "children": [{"name": "name", "required": True}]},
            {"name": "players", "type": "array", "children": [{"name": "id", "type": "number"}]},
        ]})
        assert schema.leaf_paths() == ["team.name", "players[0].id"]
        assert list(schema.required_nodes()) == ["team.name"]

    @pytest.mark.parametrize("field,value", [
        ("slug", "../../escaped"),
        ("slug", "a/b"),
        ("slug", ""),
        ("owner", ".."),
        ("owner", "x y"),
    ])
    def test_owner_and_slug_are_file_name_safe(self, field, value):
        with pytest.raises(ValidationError):
            EndpointConfig(**{"slug": "ok", field: value})


# ---------------------------------------------------------------------------
# normalize_endpoint()
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_legacy_shape(self):
        cfg = normalize_endpoint(_legacy_endpoint())
        assert cfg.owner == "u42"
        assert cfg.status == "active"
        assert [s.id for s in cfg.sources] == ["s1", "s2"]
        assert cfg.source_selection.merge_mode == "combined"
        assert [e.primary_path for e in cfg.source_selection.sources] == ["items", "items"]
        assert cfg.field_mappings[0].source_field == "name"
        assert cfg.output_schema.leaf_paths() == ["title"]
        assert cfg.output_wrapper.wrapper_key == "items"
        assert cfg.rss.channel_title == "Legacy feed"
        assert cfg.rss.source_mappings[0].items_path == "items"
        assert cfg.concatenations[0].merge_strategy == "union"
        assert cfg.transformations[0].id == "t1"
        assert cfg.cache.ttl == 60

    def test_flat_keys_win(self):
        raw = _legacy_endpoint()
        raw["field_mappings"] = [{"id": "flat", "target_field": "x", "fallback_value": 1}]
        raw["owner"] = "team"
        cfg = normalize_endpoint(raw)
        assert [m.id for m in cfg.field_mappings] == ["flat"]
        assert cfg.owner == "team"

    def test_missing_sections_get_defaults(self):
        cfg = normalize_endpoint({"slug": "bare"})
        assert cfg.field_mappings == []
        assert cfg.rss.source_mappings == []
        assert cfg.output_wrapper.enabled is False
        assert cfg.name == "bare"

    def test_invalid_data_raises(self):
        with pytest.raises(ValidationError):
            normalize_endpoint({"slug": "x", "output_format": "pdf"})


# ---------------------------------------------------------------------------
# EndpointRegistry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_load_bundled_configs(self):
        reg = EndpointRegistry(config_dir=CONFIG_DIR)
        reg.load_all()
        assert ("default", "scores") in reg.all_keys()
        assert reg.get("default", "news").output_format == "rss"
        assert reg.count() >= 3

    def test_missing_dir_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            EndpointRegistry(config_dir=str(tmp_path / "nope")).load_all()

    def test_invalid_yaml_raises(self, tmp_path):
        (tmp_path / "bad__x.yaml").write_text("slug: x\noutput_format: pdf\n")
        with pytest.raises(ValidationError):
            EndpointRegistry(config_dir=str(tmp_path)).load_all()

    def test_upsert_is_idempotent(self, tmp_path):
        reg = EndpointRegistry(config_dir=str(tmp_path))
        cfg = EndpointConfig(slug="draft", owner="u1", name="first")
        reg.upsert(cfg)
        reg.upsert(cfg.model_copy(update={"name": "second"}))
        assert reg.count() == 1
        assert reg.get("u1", "draft").name == "second"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["u1__draft.yaml"]

    def test_upsert_persists_reloadable_yaml(self, tmp_path):
        reg = EndpointRegistry(config_dir=str(tmp_path))
        reg.upsert(normalize_endpoint(_legacy_endpoint()))
        on_disk = yaml.safe_load((tmp_path / "u42__legacy.yaml").read_text())
        assert on_disk["slug"] == "legacy"

        fresh = EndpointRegistry(config_dir=str(tmp_path))
        fresh.load_all()
        reloaded = fresh.get("u42", "legacy")
        assert reloaded.field_mappings[0].target_field == "title"
        assert reloaded.source_selection.sources[1].primary_path == "items"

    def test_finalize(self, tmp_path):
        reg = EndpointRegistry(config_dir=str(tmp_path))
        reg.upsert(EndpointConfig(slug="e", owner="u1"))
        finalized = reg.finalize("u1", "e")
        assert finalized.status == "active"
        # Second finalize is a no-op.
        assert reg.finalize("u1", "e").status == "active"
        assert reg.finalize("u1", "unknown") is None

    def test_delete_and_find(self, tmp_path):
        reg = EndpointRegistry(config_dir=str(tmp_path))
        reg.upsert(EndpointConfig(slug="e", owner="a"))
        reg.upsert(EndpointConfig(slug="e", owner="b"))
        assert [c.owner for c in reg.find("e")] == ["a", "b"]
        assert reg.delete("a", "e") is True
        assert reg.delete("a", "e") is False
        assert not (tmp_path / "a__e.yaml").exists()
        assert reg.all_keys() == [("b", "e")]

    def test_unsafe_key_never_reaches_the_filesystem(self, tmp_path):
        config_dir = tmp_path / "endpoints"
        reg = EndpointRegistry(config_dir=str(config_dir))
        # model_copy skips validation, so the registry checks the key itself.
        unsafe = EndpointConfig(slug="ok", owner="x").model_copy(update={"slug": "../../escaped"})
        with pytest.raises(ValueError):
            reg.upsert(unsafe)
        assert reg.count() == 0
        assert list(tmp_path.iterdir()) == []
