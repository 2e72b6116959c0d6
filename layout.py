"""
Layout normalisation: turn a staged archive into a list of planned writes.

Two steps:

1. ``collapse_wrapper`` removes one redundant top-level directory.  It only
   fires when the staging root holds exactly one entry, that entry is a
   directory, and its name matches (case-insensitively) the archive stem or
   the mod's name.  Archives shipping e.g. both ``BepInEx/`` and ``user/``
   are never touched.

2. ``map_destinations`` assigns every staged file a path relative to the
   game root:

   ==========================================  ===============================
   staged path                                 destination
   ==========================================  ===============================
   ``BepInEx/...``                             unchanged
   ``user/...``                                unchanged
   ``Foo.dll``                                 ``BepInEx/plugins/Foo.dll``
   ``<dir>/`` containing ``package.json``      ``user/mods/<dir>/...``
   ``<dir>/`` containing any ``.dll``          ``BepInEx/plugins/<dir>/...``
   top-level readme / licence / changelog      skipped
   anything else                               skipped with a warning
   ==========================================  ===============================
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from manifest_schema import PACKAGE_INFO_FILENAME, ModPackageInfo, parse_package_info
from mod_errors import ExtractionFailure

PLUGIN_ROOT = "BepInEx"
PLUGINS_DIR = "BepInEx/plugins"
USER_ROOT = "user"
USER_MODS_DIR = "user/mods"

DOC_PREFIXES = ("readme", "license", "licence", "changelog")
DOC_SUFFIXES = (".md", ".txt", ".pdf")

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedFile:
    """One staged file and its game-root-relative destination (POSIX)."""

    source: Path
    dest: str


# ── Wrapper collapse ──────────────────────────────────────────────────


def collapse_wrapper(staging: Path, archive_stem: str, mod_name: str = "") -> bool:
    """Remove one redundant wrapper directory in place.  Returns True if it did."""
    entries = list(staging.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return False
    wrapper = entries[0]
    names = {archive_stem.lower()}
    if mod_name:
        names.add(mod_name.lower())
    if wrapper.name.lower() not in names:
        _log.debug("single top-level dir %r does not match %s; kept", wrapper.name, names)
        return False

    # The wrapper may contain a child with its own name.
    holding = staging / (wrapper.name + ".collapse")
    wrapper.rename(holding)
    for child in list(holding.iterdir()):
        child.rename(staging / child.name)
    holding.rmdir()
    _log.info("collapsed wrapper directory %r", wrapper.name)
    return True


# ── Destination mapping ───────────────────────────────────────────────


def _is_doc(name: str) -> bool:
    lower = name.lower()
    return lower.startswith(DOC_PREFIXES) or lower.endswith(DOC_SUFFIXES)


def _files_under(root: Path) -> list[Path]:
    out = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            out.append(Path(dirpath) / name)
    return sorted(out)


def _map_tree(root: Path, prefix: str) -> list[PlannedFile]:
    return [
        PlannedFile(f, f"{prefix}/{f.relative_to(root).as_posix()}")
        for f in _files_under(root)
    ]


def map_destinations(root: Path) -> list[PlannedFile]:
    plan: list[PlannedFile] = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name.lower()):
        lower = entry.name.lower()

        if entry.is_dir():
            if lower == PLUGIN_ROOT.lower():
                plan.extend(_map_tree(entry, PLUGIN_ROOT))
            elif lower == USER_ROOT:
                plan.extend(_map_tree(entry, USER_ROOT))
            elif (entry / PACKAGE_INFO_FILENAME).is_file():
                plan.extend(_map_tree(entry, f"{USER_MODS_DIR}/{entry.name}"))
            elif any(f.suffix.lower() == ".dll" for f in _files_under(entry)):
                plan.extend(_map_tree(entry, f"{PLUGINS_DIR}/{entry.name}"))
            else:
                _log.warning("skipping unrecognised directory %r", entry.name)
            continue

        if entry.suffix.lower() == ".dll":
            plan.append(PlannedFile(entry, f"{PLUGINS_DIR}/{entry.name}"))
        elif _is_doc(entry.name):
            _log.debug("skipping documentation file %r", entry.name)
        else:
            _log.warning("skipping unrecognised file %r", entry.name)
    return plan


def read_package_infos(plan: list[PlannedFile]) -> list[ModPackageInfo]:
    """Parse every ``user/mods/<mod>/package.json`` in ``plan``.

    A malformed file is logged and skipped.
    """
    infos = []
    for planned in plan:
        parts = planned.dest.split("/")
        if len(parts) != 4 or parts[:2] != ["user", "mods"] or parts[3] != PACKAGE_INFO_FILENAME:
            continue
        try:
            info = parse_package_info(planned.source.read_bytes())
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            _log.warning("invalid %s: %s", planned.dest, exc)
            continue
        _log.info(
            "server mod %s %s (game version %s)",
            info.name, info.version or "?", info.spt_version or "any",
        )
        infos.append(info)
    return infos


def normalize_layout(
    staging: Path, archive_name: str, mod_name: str = ""
) -> list[PlannedFile]:
    """Collapse a wrapper directory if present and plan every write.

    Raises ``ExtractionFailure`` when nothing installable is left or two
    staged files map to the same destination.
    """
    stem = archive_name
    for suffix in (".zip", ".7z", ".rar", ".dll"):
        if stem.lower().endswith(suffix):
            stem = stem[: -len(suffix)]
            break
    collapse_wrapper(staging, stem, mod_name)
    plan = map_destinations(staging)
    if not plan:
        raise ExtractionFailure(archive_name, "no installable content")
    seen: dict[str, PlannedFile] = {}
    for planned in plan:
        key = planned.dest.lower()
        if key in seen:
            raise ExtractionFailure(
                archive_name,
                f"{seen[key].dest} and {planned.dest} would be installed to the same path",
            )
        seen[key] = planned
    read_package_infos(plan)
    return plan
