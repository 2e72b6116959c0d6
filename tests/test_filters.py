"""
Tests for the candidate filter pipeline and the version group resolver.
"""

import asyncio
import itertools

import pytest
import requests

from filters import (
    Channel,
    Description,
    Filename,
    GameVersionMinor,
    GameVersionStrict,
    LoaderPrefer,
    MinorFallback,
    ReleaseChannel,
    Title,
    apply_filters,
    evaluate,
    filter_from_dict,
    filter_to_dict,
)
from mod_errors import FilterEmpty, IntersectFailure, InvalidFilter
from releases import Candidate
from version_groups import GameVersionTag, VersionGroupResolver, build_groups, static_tag_source


# ── helpers ──────────────────────────────────────────────────────────────────

def cand(versions, idx=0, loader=None, filename="mod.zip", prerelease=False, title="", body=""):
    return Candidate(
        game_versions=frozenset(versions),
        loader_hint=loader,
        release_index=0,
        asset_index=idx,
        filename=filename,
        title=title,
        description=body,
        is_prerelease=prerelease,
    )


TAGS = [
    GameVersionTag("1.20.4"),
    GameVersionTag("1.20.3"),
    GameVersionTag("24w10a", version_type="snapshot"),
    GameVersionTag("1.20", major=True),
    GameVersionTag("1.19.4"),
    GameVersionTag("1.19", major=True),
]


def loaded_resolver(tags=TAGS):
    resolver = VersionGroupResolver(static_tag_source(tags))
    asyncio.run(resolver.ensure_loaded())
    return resolver


# ── strict ───────────────────────────────────────────────────────────────────

def test_strict_exact_match_only():
    candidates = [cand({"1.20", "1.20.1"})]
    assert evaluate(GameVersionStrict(("1.20",)), candidates) == {0}
    assert evaluate(GameVersionStrict(("1.20.2",)), candidates) == set()


def test_strict_is_case_and_whitespace_sensitive():
    candidates = [cand({"3.10"}), cand({"V3.10"})]
    assert evaluate(GameVersionStrict(("3.10 ",)), candidates) == set()
    assert evaluate(GameVersionStrict(("v3.10",)), candidates) == set()
    assert evaluate(GameVersionStrict(("3.10",)), candidates) == {0}


def test_version_filters_are_position_independent():
    resolver = loaded_resolver()
    base = [cand({"1.20.3"}), cand({"1.19"}), cand({"1.18.2"}), cand(set())]
    filters = [GameVersionStrict(("1.19", "1.20.3")), GameVersionMinor(("1.20",))]

    for f in filters:
        expected = {id(base[i]) for i in evaluate(f, base, resolver)}
        for perm in itertools.permutations(base):
            perm = list(perm)
            got = {id(perm[i]) for i in evaluate(f, perm, resolver)}
            assert got == expected


# ── minor ────────────────────────────────────────────────────────────────────

def test_build_groups_splits_on_major_and_skips_snapshots():
    assert build_groups(TAGS) == [["1.20.4", "1.20.3", "1.20"], ["1.19.4", "1.19"]]


def test_minor_expands_through_group():
    resolver = loaded_resolver()
    candidates = [cand({"1.20.4"}), cand({"1.19.4"}), cand({"1.20"})]
    assert evaluate(GameVersionMinor(("1.20.3",)), candidates, resolver) == {0, 2}


def test_minor_unknown_version_fallback_policies():
    resolver = loaded_resolver()
    candidates = [cand({"3.10"})]
    minor = GameVersionMinor(("3.10",))
    assert evaluate(minor, candidates, resolver, MinorFallback.STRICT) == {0}
    assert evaluate(minor, candidates, resolver, MinorFallback.NO_MATCH) == set()


def test_resolver_source_failure_yields_empty_groups():
    async def broken():
        raise requests.ConnectionError("offline")

    resolver = VersionGroupResolver(broken)
    asyncio.run(resolver.ensure_loaded())
    assert resolver.loaded
    assert resolver.group_for("1.20") == frozenset()


def test_resolver_initialises_once_under_concurrency():
    calls = []

    async def source():
        calls.append(1)
        await asyncio.sleep(0)
        return TAGS

    resolver = VersionGroupResolver(source)

    async def main():
        await asyncio.gather(*(resolver.ensure_loaded() for _ in range(5)))

    asyncio.run(main())
    assert len(calls) == 1
    assert resolver.expand(["1.19"]) == frozenset({"1.19", "1.19.4"})


def test_resolver_used_before_load_raises():
    with pytest.raises(RuntimeError):
        VersionGroupResolver().group_for("1.20")


# ── other filters ────────────────────────────────────────────────────────────

def test_loader_prefer_is_never_intersected():
    candidates = [cand({"3.10"}, loader="server")]
    result = asyncio.run(
        apply_filters(candidates, [GameVersionStrict(("3.10",)), LoaderPrefer("client")])
    )
    assert result == {0}


def test_release_channel():
    candidates = [cand(set()), cand(set(), prerelease=True)]
    assert evaluate(ReleaseChannel(Channel.RELEASE), candidates) == {0}
    assert evaluate(ReleaseChannel(Channel.BETA), candidates) == {0, 1}


def test_regex_filters():
    candidates = [
        cand(set(), filename="Foo-server.zip", title="Foo 1.0", body="for 3.10"),
        cand(set(), filename="Foo-client.7z", title="Foo 1.0 beta", body=""),
    ]
    assert evaluate(Filename(r"server"), candidates) == {0}
    assert evaluate(Title(r"beta$"), candidates) == {1}
    assert evaluate(Description(r"3\.10"), candidates) == {0}


def test_invalid_regex_raises():
    with pytest.raises(InvalidFilter):
        evaluate(Filename("("), [cand(set())])


# ── combination ──────────────────────────────────────────────────────────────

def test_filter_empty_names_every_empty_filter():
    candidates = [cand({"3.10"}, filename="a.zip")]
    filters = [
        GameVersionStrict(("3.9",)),
        Filename(r"\.zip$"),
        Title(r"nothing"),
    ]
    with pytest.raises(FilterEmpty) as exc_info:
        asyncio.run(apply_filters(candidates, filters))
    assert exc_info.value.filter_names == [
        "Game Version (3.9)",
        "Title (nothing)",
    ]
    assert exc_info.value.filter_name == "Game Version (3.9)"


def test_intersect_failure_when_each_filter_matches_something():
    candidates = [cand({"3.10"}, filename="a.7z"), cand({"3.9"}, filename="b.zip")]
    filters = [GameVersionStrict(("3.10",)), Filename(r"\.zip$")]
    with pytest.raises(IntersectFailure):
        asyncio.run(apply_filters(candidates, filters))


def test_no_candidates_is_intersect_failure():
    with pytest.raises(IntersectFailure):
        asyncio.run(apply_filters([], [GameVersionStrict(("3.10",))]))


def test_minor_filter_loads_resolver_lazily():
    resolver = VersionGroupResolver(static_tag_source(TAGS))
    candidates = [cand({"1.20.4"})]
    result = asyncio.run(apply_filters(candidates, [GameVersionMinor(("1.20",))], resolver))
    assert result == {0}
    assert resolver.loaded


# ── persistence ──────────────────────────────────────────────────────────────

def test_filter_dict_round_trip():
    filters = [
        GameVersionMinor(("3.10", "3.11")),
        LoaderPrefer("bepinex"),
        ReleaseChannel(Channel.RELEASE),
        Filename(r"\.zip$"),
    ]
    assert [filter_from_dict(filter_to_dict(f)) for f in filters] == filters
    assert filter_to_dict(filters[0]) == {
        "kind": "game_version_minor",
        "versions": ["3.10", "3.11"],
    }


def test_unknown_filter_kind():
    with pytest.raises(InvalidFilter):
        filter_from_dict({"kind": "bogus"})
