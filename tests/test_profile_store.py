"""
Tests for config persistence and the schema it validates against.
"""

import json

import pytest

from manifest_schema import AppConfig, ModIdentifier, Profile
from mod_errors import StorageError
from profile_store import default_config_path, load_config, save_config
from tests.conftest import make_entry


def test_missing_config_is_empty(tmp_path):
    config = load_config(tmp_path / "nope.json")
    assert config.profiles == []
    assert config.active() is None


def test_save_then_load_keeps_profiles(tmp_path, game_root):
    path = tmp_path / "cfg" / "config.json"
    profile = Profile(name="main", game_root=game_root, game_version="3.10")
    profile.mods.append(make_entry("Foo", files={"BepInEx\\plugins\\Foo.dll"}, installed_version_tag="v1"))
    save_config(AppConfig(profiles=[profile]), path)

    loaded = load_config(path)

    mod = loaded.active().mods[0]
    assert mod.identifier == ModIdentifier.parse("ACME/foo")
    assert mod.installed_files == {"BepInEx/plugins/Foo.dll"}
    assert loaded.active().filters == [{"kind": "game_version_minor", "versions": ["3.10"]}]
    assert [p.name for p in path.parent.iterdir()] == ["config.json"]


def test_manifest_paths_are_sorted_on_disk(tmp_path, game_root):
    path = tmp_path / "config.json"
    profile = Profile(name="main", game_root=game_root, game_version="3.10")
    profile.mods.append(make_entry("Foo", files={"b.dll", "a.dll"}))
    save_config(AppConfig(profiles=[profile]), path)
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["profiles"][0]["mods"][0]["installed_files"] == ["a.dll", "b.dll"]


@pytest.mark.parametrize("content", ["{not json", '{"schema_version": "2.0"}'])
def test_invalid_config_raises_storage_error(tmp_path, content):
    path = tmp_path / "config.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(StorageError):
        load_config(path)


def test_duplicate_identifiers_are_rejected(game_root):
    with pytest.raises(ValueError):
        Profile(
            name="main",
            game_root=game_root,
            game_version="3.10",
            mods=[make_entry("Foo"), make_entry("foo")],
        )


def test_unsafe_manifest_paths_are_rejected():
    with pytest.raises(ValueError):
        make_entry("Foo", files={"../outside.dll"})


def test_config_path_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("GHR_MODS_CONFIG", str(tmp_path / "custom.json"))
    assert default_config_path() == tmp_path / "custom.json"
