"""
Tests for enable / disable transitions and the quarantine tree.
"""

import random

import pytest

from mod_errors import Conflict, PartialMoveFailure
from mod_state import ModStateManager
from tests.conftest import make_entry

FILES = {
    "BepInEx/plugins/Foo/Foo.dll": b"\x00\x01binary",
    "BepInEx/plugins/Foo/lang/en.json": b'{"hello": "world"}',
    "BepInEx/config/foo.cfg": b"[General]\nEnabled = true\n",
    "user/mods/FooServer/package.json": b'{"name": "FooServer"}',
}


def install(game_root, files=FILES):
    for rel, data in files.items():
        path = game_root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def snapshot(game_root, rels):
    return {rel: (game_root / rel).read_bytes() for rel in rels if (game_root / rel).exists()}


def test_disable_enable_round_trip_is_byte_identical(game_root):
    install(game_root)
    entry = make_entry("Foo", files=FILES)
    state = ModStateManager(game_root)
    before = snapshot(game_root, FILES)

    result = state.disable(entry)
    assert not entry.enabled
    assert result.warning is None
    assert sorted(result.moved) == sorted(FILES)
    assert snapshot(game_root, FILES) == {}
    quarantine = game_root / "disabled-mods" / "Foo"
    assert (quarantine / "BepInEx/plugins/Foo/Foo.dll").read_bytes() == FILES["BepInEx/plugins/Foo/Foo.dll"]
    assert (game_root / "BepInEx" / "plugins").is_dir()
    assert not (game_root / "BepInEx" / "plugins" / "Foo").exists()

    result = state.enable(entry, [entry])
    assert entry.enabled
    assert snapshot(game_root, FILES) == before
    assert entry.installed_files == set(FILES)
    assert not quarantine.exists()


def test_round_trip_independent_of_manifest_order(game_root):
    install(game_root)
    before = snapshot(game_root, FILES)
    state = ModStateManager(game_root)
    rels = list(FILES)
    for seed in range(3):
        random.Random(seed).shuffle(rels)
        entry = make_entry("Foo", files=rels)
        state.disable(entry)
        state.enable(entry, [entry])
        assert snapshot(game_root, FILES) == before


def test_missing_file_is_a_warning(game_root):
    install(game_root)
    (game_root / "BepInEx/config/foo.cfg").unlink()
    entry = make_entry("Foo", files=FILES)

    result = ModStateManager(game_root).disable(entry)

    assert not entry.enabled
    assert isinstance(result.warning, PartialMoveFailure)
    assert result.warning.missing == ["BepInEx/config/foo.cfg"]
    assert len(result.moved) == len(FILES) - 1
    assert "BepInEx/config/foo.cfg" in entry.installed_files


def test_enable_conflict_moves_nothing(game_root):
    install(game_root)
    foo = make_entry("Foo", files=FILES)
    state = ModStateManager(game_root)
    state.disable(foo)
    other = make_entry("Other", files={"BepInEx/config/foo.cfg"})

    with pytest.raises(Conflict) as exc_info:
        state.enable(foo, [foo, other])

    assert exc_info.value.owner == "Other"
    assert exc_info.value.path == "BepInEx/config/foo.cfg"
    assert not foo.enabled
    assert (game_root / "disabled-mods" / "Foo" / "BepInEx/plugins/Foo/Foo.dll").exists()


def test_repeated_transitions_are_no_ops(game_root):
    install(game_root)
    entry = make_entry("Foo", files=FILES)
    state = ModStateManager(game_root)
    assert not state.enable(entry, [entry]).changed
    state.disable(entry)
    assert not state.disable(entry).changed


def test_quarantine_listing_and_purge(game_root):
    install(game_root)
    entry = make_entry("Foo: Bar", files=FILES)
    state = ModStateManager(game_root)
    state.disable(entry)
    assert state.list_quarantined() == ["Foo_ Bar"]
    state.purge(entry)
    assert state.list_quarantined() == []
