"""
GitHub release records and their flattening into filterable candidates.

A release carries several assets; every installable asset becomes one
``Candidate`` holding the attributes the filters look at (game versions,
loader hint, title, ...) plus its position in the release/asset lists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

INSTALLABLE_SUFFIXES = (".zip", ".7z", ".rar", ".dll")
DEFAULT_LOADERS = ("bepinex", "server", "client")
GAME_MARKERS = ("spt",)

VERSION_RE = re.compile(
    r"""
    \b
    v?                                  # optional leading v
    (?P<major>\d+)
    \.(?P<minor>\d+|[xX*])              # minor or wildcard
    (?:\.(?P<patch>\d+|[xX*]))?         # optional patch or wildcard
    \b
    """,
    re.VERBOSE | re.IGNORECASE,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Asset:
    filename: str
    download_url: str
    size_bytes: int = 0

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Asset:
        return cls(
            filename=data["name"],
            download_url=data.get("browser_download_url", ""),
            size_bytes=int(data.get("size") or 0),
        )


@dataclass
class Release:
    tag: str
    display_name: str
    published_at: datetime
    is_prerelease: bool = False
    body: str = ""
    assets: list[Asset] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Release:
        return cls(
            tag=data["tag_name"],
            display_name=data.get("name") or data["tag_name"],
            published_at=parse_timestamp(data.get("published_at") or data.get("created_at")),
            is_prerelease=bool(data.get("prerelease", False)),
            body=data.get("body") or "",
            assets=[Asset.from_api(a) for a in data.get("assets", [])],
        )


@dataclass(frozen=True)
class Candidate:
    """A release + asset pair flattened into filterable attributes."""

    game_versions: frozenset[str]
    loader_hint: str | None
    release_index: int
    asset_index: int
    filename: str = ""
    title: str = ""
    description: str = ""
    published_at: datetime = _EPOCH
    is_prerelease: bool = False


def parse_timestamp(value: str | None) -> datetime:
    if not value:
        return _EPOCH
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def extract_versions(text: str) -> list[str]:
    """Pull game version strings out of a release or asset name.

    Each hit yields ``major.minor`` and, when a concrete patch is present,
    ``major.minor.patch`` as well.  Wildcard minors are ignored.
    """
    found: list[str] = []
    for match in VERSION_RE.finditer(text):
        minor = match.group("minor")
        if not minor.isdigit():
            continue
        base = f"{match.group('major')}.{minor}"
        if base not in found:
            found.append(base)
        patch = match.group("patch")
        if patch and patch.isdigit():
            full = f"{base}.{patch}"
            if full not in found:
                found.append(full)
    return found


def marked_versions(text: str, markers: Iterable[str] = GAME_MARKERS) -> list[str]:
    """Versions written right after a game marker, e.g. ``spt3.11`` or ``SPT-3.10.2``.

    Such a token names the game version outright, so callers prefer it over
    bare numbers that may just be the mod's own version.
    """
    found: list[str] = []
    for marker in markers:
        pattern = re.compile(
            rf"(?<![a-z]){re.escape(marker)}[-_ ]?v?(\d+\.\d+(?:\.\d+)?)",
            re.IGNORECASE,
        )
        for match in pattern.finditer(text):
            for version in extract_versions(match.group(1)):
                if version not in found:
                    found.append(version)
    return found


def version_lines(versions: Iterable[str]) -> set[str]:
    """``major.minor`` of every version in ``versions`` (``3.10.2`` -> ``3.10``)."""
    lines = set()
    for version in versions:
        parts = version.split(".")
        if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
            lines.add(f"{parts[0]}.{parts[1]}")
    return lines


def detect_loader(filename: str, loaders: Iterable[str] = DEFAULT_LOADERS) -> str | None:
    tokens = {t for t in re.split(r"[^a-z0-9]+", filename.lower()) if t}
    for loader in loaders:
        if loader.lower() in tokens:
            return loader.lower()
    return None


def is_installable(filename: str) -> bool:
    return filename.lower().endswith(INSTALLABLE_SUFFIXES)


def build_candidates(
    releases: list[Release],
    version_prefixes: Iterable[str] | None = None,
    loaders: Iterable[str] = DEFAULT_LOADERS,
    markers: Iterable[str] = GAME_MARKERS,
) -> list[Candidate]:
    """Flatten ``releases`` into candidates, one per installable asset.

    A version following a game marker (``spt3.11``) in the asset or release
    name is taken as the game version and nothing else is.  Without one,
    every version-looking token counts, restricted by ``version_prefixes``
    to known game versions (e.g. ``("3.9", "3.10", "3.11")``) so mod version
    numbers in file names are not mistaken for game versions.  ``None``
    keeps everything.
    """
    prefixes = tuple(version_prefixes) if version_prefixes is not None else None
    loaders = tuple(loaders)
    markers = tuple(markers)
    candidates: list[Candidate] = []
    for r_idx, release in enumerate(releases):
        release_versions = extract_versions(release.display_name)
        release_marked = marked_versions(release.display_name, markers)
        for a_idx, asset in enumerate(release.assets):
            if not is_installable(asset.filename):
                continue
            marked = marked_versions(asset.filename, markers) or release_marked
            if marked:
                versions = set(marked)
            else:
                versions = set(release_versions) | set(extract_versions(asset.filename))
                if prefixes is not None:
                    versions = {
                        v for v in versions
                        if any(v == p or v.startswith(p + ".") for p in prefixes)
                    }
            candidates.append(
                Candidate(
                    game_versions=frozenset(versions),
                    loader_hint=detect_loader(asset.filename, loaders),
                    release_index=r_idx,
                    asset_index=a_idx,
                    filename=asset.filename,
                    title=release.display_name,
                    description=release.body,
                    published_at=release.published_at,
                    is_prerelease=release.is_prerelease,
                )
            )
    return candidates
