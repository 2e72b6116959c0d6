"""
Deterministic choice of one asset among the candidates that survived filtering.

Ordering, most significant first:

1. newest ``published_at``
2. non-prerelease before prerelease
3. matching a ``LoaderPrefer`` filter
4. earliest position in the original candidate list
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from filters import Filter, LoaderPrefer, MinorFallback, apply_filters, evaluate
from releases import Asset, Candidate, Release
from version_groups import VersionGroupResolver

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    candidate: Candidate
    asset: Asset
    release_tag: str


def choose_index(
    candidates: list[Candidate],
    surviving: set[int],
    filters: list[Filter],
) -> int:
    preferred: set[int] = set()
    for filter_ in filters:
        if isinstance(filter_, LoaderPrefer):
            preferred |= evaluate(filter_, candidates)

    def sort_key(i: int):
        c = candidates[i]
        return (
            -c.published_at.timestamp(),
            c.is_prerelease,
            i not in preferred,
            i,
        )

    return min(surviving, key=sort_key)


async def select(
    releases: list[Release],
    candidates: list[Candidate],
    filters: list[Filter],
    resolver: VersionGroupResolver | None = None,
    fallback: MinorFallback = MinorFallback.STRICT,
) -> Selection:
    """Filter ``candidates`` and pick exactly one.

    Propagates ``FilterEmpty`` / ``IntersectFailure`` from the pipeline.
    """
    surviving = await apply_filters(candidates, filters, resolver, fallback)
    index = choose_index(candidates, surviving, filters)
    chosen = candidates[index]
    release = releases[chosen.release_index]
    asset = release.assets[chosen.asset_index]
    _log.info(
        "selected %s from release %s (%d survivor(s))",
        asset.filename, release.tag, len(surviving),
    )
    return Selection(candidate=chosen, asset=asset, release_tag=release.tag)
