"""
Minor-version equivalence classes built from an external game-version tag list.

The tag list is ordered newest first (as Modrinth's ``/v2/tag/game_version``
returns it).  Walking from oldest to newest, a tag flagged ``major`` opens a
new bucket and every later tag joins it until the next ``major`` tag; all
versions in a bucket are considered minor-compatible with each other.

The groups are built lazily, at most once per resolver, and never change
afterwards.  Consumers receive the resolver as an explicit handle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import requests

DEFAULT_TAG_URL = "https://api.modrinth.com/v2/tag/game_version"

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GameVersionTag:
    version: str
    version_type: str = "release"
    major: bool = False


TagSource = Callable[[], Awaitable[list[GameVersionTag]]]


def http_tag_source(url: str = DEFAULT_TAG_URL, timeout: float = 15.0) -> TagSource:
    """Return a tag source reading a Modrinth-style JSON tag list."""

    def _get() -> list[GameVersionTag]:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return [
            GameVersionTag(
                version=item["version"],
                version_type=item.get("version_type", "release"),
                major=bool(item.get("major", False)),
            )
            for item in response.json()
        ]

    async def _source() -> list[GameVersionTag]:
        return await asyncio.to_thread(_get)

    return _source


def static_tag_source(tags: list[GameVersionTag]) -> TagSource:
    async def _source() -> list[GameVersionTag]:
        return list(tags)

    return _source


def build_groups(tags: list[GameVersionTag]) -> list[list[str]]:
    """Group release tags (newest first) into minor-compatible buckets."""
    groups: list[list[str]] = [[]]
    for tag in tags:
        if tag.version_type != "release":
            continue
        groups[-1].append(tag.version)
        # Newest-first: a major tag is the oldest member of its bucket.
        if tag.major:
            groups.append([])
    return [g for g in groups if g]


class VersionGroupResolver:
    """Lazily initialised, read-only map of version -> equivalent versions."""

    def __init__(self, source: TagSource | None = None):
        self._source = source
        self._lock = asyncio.Lock()
        self._groups: tuple[frozenset[str], ...] | None = None

    @property
    def loaded(self) -> bool:
        return self._groups is not None

    async def ensure_loaded(self) -> None:
        if self._groups is not None:
            _log.debug("version groups cache hit (%d groups)", len(self._groups))
            return
        async with self._lock:
            if self._groups is not None:
                return
            groups: list[list[str]] = []
            if self._source is None:
                _log.warning("No game version tag source configured; minor groups are empty")
            else:
                try:
                    groups = build_groups(await self._source())
                except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
                    _log.warning("Game version tag source unavailable: %s", exc)
                    groups = []
            self._groups = tuple(frozenset(g) for g in groups)
            _log.info("version groups initialised (%d groups)", len(self._groups))

    def group_for(self, version: str) -> frozenset[str]:
        """Versions minor-compatible with ``version``; empty when unknown.

        ``ensure_loaded`` must have completed first.
        """
        if self._groups is None:
            raise RuntimeError("VersionGroupResolver used before ensure_loaded()")
        for group in self._groups:
            if version in group:
                return group
        return frozenset()

    def known_versions(self) -> frozenset[str]:
        """Every version in every group (empty before loading or without data)."""
        if self._groups is None:
            return frozenset()
        return frozenset().union(*self._groups)

    def expand(self, versions: list[str] | tuple[str, ...]) -> frozenset[str]:
        out: set[str] = set()
        for version in versions:
            out |= self.group_for(version)
        return frozenset(out)
