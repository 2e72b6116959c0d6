"""
Candidate filters.

A filter is a pure predicate over an ordered candidate list that returns the
set of matching positions.  The variants form a closed set; ``evaluate`` is
the single dispatch point and must handle every one of them.

Hard filters can eliminate every candidate.  ``LoaderPrefer`` is soft: it is
never intersected, the selector only uses it to break ties.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Union

from mod_errors import FilterEmpty, IntersectFailure, InvalidFilter
from releases import Candidate
from version_groups import VersionGroupResolver

_log = logging.getLogger(__name__)


class MinorFallback(enum.Enum):
    """What ``GameVersionMinor`` does for a version with no known group."""

    STRICT = "strict"  # the version still matches itself
    NO_MATCH = "no_match"  # contributes nothing


class Channel(str, enum.Enum):
    RELEASE = "release"
    BETA = "beta"
    ALPHA = "alpha"


@dataclass(frozen=True)
class GameVersionStrict:
    versions: tuple[str, ...]

    @property
    def name(self) -> str:
        return f"Game Version ({', '.join(self.versions)})"


@dataclass(frozen=True)
class GameVersionMinor:
    versions: tuple[str, ...]

    @property
    def name(self) -> str:
        return f"Game Version Minor ({', '.join(self.versions)})"


@dataclass(frozen=True)
class LoaderPrefer:
    loader: str

    @property
    def name(self) -> str:
        return f"Loader Prefer ({self.loader})"


@dataclass(frozen=True)
class ReleaseChannel:
    channel: Channel

    @property
    def name(self) -> str:
        return f"Release Channel ({self.channel.value})"


@dataclass(frozen=True)
class Filename:
    pattern: str

    @property
    def name(self) -> str:
        return f"Filename ({self.pattern})"


@dataclass(frozen=True)
class Title:
    pattern: str

    @property
    def name(self) -> str:
        return f"Title ({self.pattern})"


@dataclass(frozen=True)
class Description:
    pattern: str

    @property
    def name(self) -> str:
        return f"Description ({self.pattern})"


Filter = Union[
    GameVersionStrict,
    GameVersionMinor,
    LoaderPrefer,
    ReleaseChannel,
    Filename,
    Title,
    Description,
]

_KINDS: dict[str, type] = {
    "game_version_strict": GameVersionStrict,
    "game_version_minor": GameVersionMinor,
    "loader_prefer": LoaderPrefer,
    "release_channel": ReleaseChannel,
    "filename": Filename,
    "title": Title,
    "description": Description,
}


def is_soft(filter_: Filter) -> bool:
    return isinstance(filter_, LoaderPrefer)


# ── Evaluation ────────────────────────────────────────────────────────


def _version_hits(candidates: list[Candidate], wanted: frozenset[str]) -> set[int]:
    return {i for i, c in enumerate(candidates) if c.game_versions & wanted}


def _regex_hits(candidates: list[Candidate], pattern: str, attr: str) -> set[int]:
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise InvalidFilter(f"Invalid regular expression {pattern!r}: {exc}") from exc
    return {i for i, c in enumerate(candidates) if regex.search(getattr(c, attr))}


def evaluate(
    filter_: Filter,
    candidates: list[Candidate],
    resolver: VersionGroupResolver | None = None,
    fallback: MinorFallback = MinorFallback.STRICT,
) -> set[int]:
    """Return the positions in ``candidates`` that ``filter_`` accepts.

    ``GameVersionMinor`` needs a loaded ``resolver``.
    """
    if isinstance(filter_, GameVersionStrict):
        return _version_hits(candidates, frozenset(filter_.versions))

    if isinstance(filter_, GameVersionMinor):
        wanted: set[str] = set()
        for version in filter_.versions:
            group = resolver.group_for(version) if resolver is not None else frozenset()
            if group:
                wanted |= group
            elif fallback is MinorFallback.STRICT:
                wanted.add(version)
        _log.debug("%s expanded to %s", filter_.name, sorted(wanted))
        return _version_hits(candidates, frozenset(wanted))

    if isinstance(filter_, LoaderPrefer):
        loader = filter_.loader.lower()
        return {i for i, c in enumerate(candidates) if c.loader_hint == loader}

    if isinstance(filter_, ReleaseChannel):
        if filter_.channel is Channel.RELEASE:
            return {i for i, c in enumerate(candidates) if not c.is_prerelease}
        return set(range(len(candidates)))

    if isinstance(filter_, Filename):
        return _regex_hits(candidates, filter_.pattern, "filename")

    if isinstance(filter_, Title):
        return _regex_hits(candidates, filter_.pattern, "title")

    if isinstance(filter_, Description):
        return _regex_hits(candidates, filter_.pattern, "description")

    raise InvalidFilter(f"Unknown filter variant: {filter_!r}")


async def apply_filters(
    candidates: list[Candidate],
    filters: list[Filter],
    resolver: VersionGroupResolver | None = None,
    fallback: MinorFallback = MinorFallback.STRICT,
) -> set[int]:
    """Intersect every hard filter and return the surviving positions.

    Raises ``FilterEmpty`` naming every hard filter that matched nothing, or
    ``IntersectFailure`` when each matched something but nothing matched all.
    """
    if not candidates:
        raise IntersectFailure("No installable assets were found in any release")

    if resolver is not None and any(isinstance(f, GameVersionMinor) for f in filters):
        await resolver.ensure_loaded()

    surviving = set(range(len(candidates)))
    empty: list[str] = []
    for filter_ in filters:
        if is_soft(filter_):
            continue
        hits = evaluate(filter_, candidates, resolver, fallback)
        _log.info("filter %s matched %d/%d candidate(s)", filter_.name, len(hits), len(candidates))
        if not hits:
            empty.append(filter_.name)
        surviving &= hits

    if empty:
        _log.warning("filter(s) matched nothing: %s", empty)
        raise FilterEmpty(empty)
    if not surviving:
        _log.warning("no candidate satisfies all %d filter(s)", len(filters))
        raise IntersectFailure()
    return surviving


# ── Persistence ───────────────────────────────────────────────────────


def filter_from_dict(data: dict[str, Any]) -> Filter:
    kind = data.get("kind")
    cls = _KINDS.get(kind)  # type: ignore[arg-type]
    if cls is None:
        raise InvalidFilter(f"Unknown filter kind {kind!r}")
    if cls in (GameVersionStrict, GameVersionMinor):
        return cls(tuple(str(v) for v in data.get("versions", [])))
    if cls is LoaderPrefer:
        return LoaderPrefer(str(data["loader"]))
    if cls is ReleaseChannel:
        try:
            return ReleaseChannel(Channel(data["channel"]))
        except ValueError as exc:
            raise InvalidFilter(f"Unknown release channel {data['channel']!r}") from exc
    return cls(str(data["pattern"]))


def filter_to_dict(filter_: Filter) -> dict[str, Any]:
    kind = next(k for k, cls in _KINDS.items() if isinstance(filter_, cls))
    if isinstance(filter_, (GameVersionStrict, GameVersionMinor)):
        return {"kind": kind, "versions": list(filter_.versions)}
    if isinstance(filter_, LoaderPrefer):
        return {"kind": kind, "loader": filter_.loader}
    if isinstance(filter_, ReleaseChannel):
        return {"kind": kind, "channel": filter_.channel.value}
    return {"kind": kind, "pattern": filter_.pattern}
