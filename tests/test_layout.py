"""
Tests for wrapper collapsing and destination mapping.
"""

import json

import pytest

from layout import collapse_wrapper, map_destinations, normalize_layout, read_package_infos
from mod_errors import ExtractionFailure


def build(root, files):
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data if isinstance(data, bytes) else data.encode())
    return root


def dests(plan):
    return sorted(p.dest for p in plan)


# ── collapse ─────────────────────────────────────────────────────────────────

def test_single_matching_wrapper_collapses_one_level(tmp_path):
    staging = build(tmp_path / "s", {"Foo/Foo/plugin.dll": "x"})
    assert collapse_wrapper(staging, "foo")
    assert (staging / "Foo" / "plugin.dll").exists()
    assert [p.name for p in staging.iterdir()] == ["Foo"]


def test_wrapper_matching_mod_name_collapses(tmp_path):
    staging = build(tmp_path / "s", {"BetterLoot/BepInEx/plugins/bl.dll": "x"})
    assert collapse_wrapper(staging, "BetterLoot-v1.2.0", "betterloot")
    assert (staging / "BepInEx" / "plugins" / "bl.dll").exists()


def test_two_top_level_dirs_never_collapse(tmp_path):
    staging = build(tmp_path / "s", {
        "BepInEx/plugins/a.dll": "x",
        "user/mods/a/package.json": "{}",
    })
    assert not collapse_wrapper(staging, "BepInEx", "user")
    assert sorted(p.name for p in staging.iterdir()) == ["BepInEx", "user"]


def test_non_matching_wrapper_is_kept(tmp_path):
    staging = build(tmp_path / "s", {"Other/plugin.dll": "x"})
    assert not collapse_wrapper(staging, "Foo", "Foo")
    assert (staging / "Other" / "plugin.dll").exists()


# ── mapping ──────────────────────────────────────────────────────────────────

def test_destination_mapping_rules(tmp_path):
    staging = build(tmp_path / "s", {
        "BepInEx/config/foo.cfg": "cfg",
        "user/mods/Srv/package.json": "{}",
        "Top.dll": "dll",
        "ServerMod/package.json": "{}",
        "ServerMod/src/mod.js": "js",
        "ClientMod/lib/Client.dll": "dll",
        "README.md": "docs",
        "random.bin": "??",
        "Assets/readme.txt": "??",
    })
    assert dests(map_destinations(staging)) == [
        "BepInEx/config/foo.cfg",
        "BepInEx/plugins/ClientMod/lib/Client.dll",
        "BepInEx/plugins/Top.dll",
        "user/mods/ServerMod/package.json",
        "user/mods/ServerMod/src/mod.js",
        "user/mods/Srv/package.json",
    ]


def test_normalize_layout_collapses_then_maps(tmp_path):
    staging = build(tmp_path / "s", {"Foo-1.0/BepInEx/plugins/Foo.dll": "x"})
    plan = normalize_layout(staging, "Foo-1.0.zip", "Foo")
    assert dests(plan) == ["BepInEx/plugins/Foo.dll"]


def test_nothing_installable_raises(tmp_path):
    staging = build(tmp_path / "s", {"README.md": "docs"})
    with pytest.raises(ExtractionFailure, match="no installable content"):
        normalize_layout(staging, "Foo.zip", "Foo")


def test_two_files_mapping_to_one_destination_raise(tmp_path):
    staging = build(tmp_path / "s", {
        "Foo.dll": "loose",
        "BepInEx/plugins/foo.DLL": "packaged",
    })
    with pytest.raises(ExtractionFailure, match="same path"):
        normalize_layout(staging, "Foo-1.0.zip", "Foo")


def test_package_info_is_parsed_and_bad_json_tolerated(tmp_path):
    staging = build(tmp_path / "s", {
        "user/mods/Good/package.json": json.dumps(
            {"name": "Good", "version": "1.0.0", "sptVersion": "~3.10", "main": "x.js"}
        ),
        "user/mods/Bad/package.json": "{not json",
    })
    infos = read_package_infos(map_destinations(staging))
    assert [(i.name, i.version, i.spt_version) for i in infos] == [("Good", "1.0.0", "~3.10")]
