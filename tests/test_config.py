"""
Tests for configuration loading — settings, catalogs and selection configs.
"""

import json
import textwrap
from pathlib import Path

import pytest

from tweakguard.core import context
from tweakguard.core.config.loader import (
    ConfigError,
    load_apps,
    load_features,
    load_fixes,
    load_legacy_panels,
    load_selection_config,
    load_settings,
    load_tweaks,
    resolve_selection_path,
    save_settings,
)
from tweakguard.core.data import load_builtin_tweaks
from tweakguard.core.models.operation import RiskTier
from tweakguard.core.models.state import AppSettings


def _write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# ── Settings ─────────────────────────────────────────────────────────


class TestLoadSettings:
    def test_defaults_when_missing(self):
        settings = load_settings()
        assert settings == AppSettings()
        assert settings.enforce_script_safety_guards
        assert not settings.enable_destructive_operations

    def test_flat_mapping(self, runtime_root: Path):
        path = context.data_dir() / "settings.yml"
        path.parent.mkdir(parents=True)
        path.write_text("enable_destructive_operations: true\n", encoding="utf-8")
        assert load_settings().enable_destructive_operations

    def test_nested_mapping(self, tmp_path: Path):
        path = tmp_path / "s.yml"
        path.write_text(textwrap.dedent("""\
            settings:
              enforce_script_safety_guards: false
              create_restore_point_before_dangerous_operations: false
        """), encoding="utf-8")
        settings = load_settings(path)
        assert not settings.enforce_script_safety_guards
        assert not settings.create_restore_point_before_dangerous_operations

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "s.yml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path) == AppSettings()

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "s.yml"
        path.write_text("settings: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_settings(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "s.yml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_settings(path)

    def test_invalid_value(self, tmp_path: Path):
        path = tmp_path / "s.yml"
        path.write_text("enable_destructive_operations: sometimes\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings(path)

    def test_save_round_trip(self, tmp_path: Path):
        path = save_settings(AppSettings(enable_destructive_operations=True), tmp_path / "out" / "s.yml")
        assert load_settings(path).enable_destructive_operations


# ── Catalogs ─────────────────────────────────────────────────────────


class TestCatalogs:
    def test_missing_files_are_empty(self):
        assert load_fixes() == []
        assert load_features() == []
        assert load_apps() == []
        assert load_legacy_panels() == []

    def test_builtins_appended(self):
        tweaks = load_tweaks()
        assert [t.id for t in tweaks] == [t.id for t in load_builtin_tweaks()]

    def test_disk_tweak_shadows_builtin(self):
        builtin = load_builtin_tweaks()[0]
        _write_json(context.catalog_dir() / "tweaks.json", [
            {"id": builtin.id.upper(), "name": "Mine", "apply_script": "Get-Date"},
            {"id": "extra", "name": "Extra", "risk_tier": "Dangerous"},
        ])
        tweaks = load_tweaks()
        assert tweaks[0].name == "Mine"
        assert tweaks[1].risk_tier == RiskTier.DANGEROUS
        assert sum(1 for t in tweaks if t.id.lower() == builtin.id.lower()) == 1

    def test_apps(self):
        _write_json(context.catalog_dir() / "catalog.apps.json", [
            {"display_name": "Firefox", "winget_id": "Mozilla.Firefox", "tags": ["browser"]},
        ])
        [app] = load_apps()
        assert app.winget_id == "Mozilla.Firefox"
        assert app.tags == ["browser"]

    def test_not_an_array(self):
        _write_json(context.catalog_dir() / "fixes.json", {"id": "x"})
        with pytest.raises(ConfigError, match="Expected a JSON array"):
            load_fixes()

    def test_invalid_json(self):
        path = context.catalog_dir() / "features.json"
        path.parent.mkdir(parents=True)
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid catalog file"):
            load_features()

    def test_invalid_entry(self):
        _write_json(context.catalog_dir() / "features.json", [{"id": "wsl"}])
        with pytest.raises(ConfigError, match="Invalid entry"):
            load_features()


# ── Selection configs ────────────────────────────────────────────────


class TestResolveSelectionPath:
    def test_relative_under_runtime(self, runtime_root: Path):
        path = resolve_selection_path("profiles/gaming.json")
        assert path == (runtime_root / "runtime" / "profiles" / "gaming.json").resolve()

    def test_quotes_stripped(self, runtime_root: Path):
        assert resolve_selection_path('  "a.json"  ').name == "a.json"

    def test_absolute_taken_as_is(self, tmp_path: Path):
        target = tmp_path / "elsewhere" / "x.json"
        assert resolve_selection_path(str(target)) == target.resolve()

    @pytest.mark.parametrize("raw,message", [
        ("", "required"),
        ("   ", "required"),
        ("a\0.json", "null characters"),
        ("\\\\server\\share\\a.json", "UNC paths are blocked"),
        ("//server/share/a.json", "UNC paths are blocked"),
        ("config.yml", "must point to a .json file"),
        ("../escape.json", "Path traversal detected"),
        ("a/../../escape.json", "Path traversal detected"),
    ])
    def test_rejected(self, raw, message):
        with pytest.raises(ConfigError, match=message):
            resolve_selection_path(raw)


class TestLoadSelectionConfig:
    def test_valid(self, tmp_path: Path):
        path = _write_json(tmp_path / "sel.json", {
            "confirm_dangerous": True,
            "tweaks": ["dark-theme"],
            "store_selections": ["Firefox"],
            "update_mode": "Security",
        })
        config = load_selection_config(path)
        assert config.confirm_dangerous
        assert config.tweaks == ["dark-theme"]
        assert config.fixes == []
        assert config.update_mode == "Security"

    def test_missing(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_selection_config(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path: Path):
        path = tmp_path / "sel.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_selection_config(path)

    def test_not_an_object(self, tmp_path: Path):
        path = _write_json(tmp_path / "sel.json", ["tweak"])
        with pytest.raises(ConfigError, match="Expected a JSON object"):
            load_selection_config(path)

    def test_wrong_types(self, tmp_path: Path):
        path = _write_json(tmp_path / "sel.json", {"tweaks": "dark-theme"})
        with pytest.raises(ConfigError, match="Invalid selection config"):
            load_selection_config(path)
