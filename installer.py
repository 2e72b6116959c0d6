"""
Conflict-safe installation of planned files into the game root.

Ownership
---------
Every enabled mod's ``installed_files`` is its ownership manifest.  Before
anything is written the incoming plan is checked against the manifests of the
*other enabled* mods; what happens on overlap is decided by ``ConflictPolicy``.

Writes
------
Each file is copied to a sibling temp file and moved into place with
``os.replace``.  Whatever previously sat at a destination, and every file the
previous version shipped but this one does not, is first moved into a backup
directory.  The backups outlive ``install_files``: the caller stores the
archive and commits the manifest, then calls ``finish_install`` to drop them,
or ``rollback_install`` to put the previous version back if any of those
steps failed.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from file_ops import (
    clear_attributes,
    move_file,
    prune_empty_dirs,
    remove_path,
    remove_tree,
    sanitize_name,
)
from layout import PlannedFile
from manifest_schema import ModEntry
from mod_errors import Conflict, StorageError

ARCHIVE_DIR = "MODS"
STAGING_DIR = ".extract_tmp"

_log = logging.getLogger(__name__)


class ConflictPolicy(enum.Enum):
    FAIL = "fail"  # raise Conflict before any write
    OVERWRITE = "overwrite"  # take the path, drop it from the loser's manifest
    KEEP_EXISTING = "keep_existing"  # leave the path with its current owner


@dataclass
class InstallResult:
    written: set[str] = field(default_factory=set)
    transferred: dict[str, ModEntry] = field(default_factory=dict)  # path -> previous owner
    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    backup_root: Path | None = None
    backups: dict[str, Path] = field(default_factory=dict)  # dest -> backed-up copy


# ── Ownership ─────────────────────────────────────────────────────────


def ownership_index(entries: list[ModEntry], exclude: ModEntry | None = None) -> dict[str, ModEntry]:
    """Map each path owned by an enabled mod (other than ``exclude``) to its owner."""
    index: dict[str, ModEntry] = {}
    for other in entries:
        if not other.enabled:
            continue
        if exclude is not None and other.identifier == exclude.identifier:
            continue
        for path in other.installed_files:
            index[path] = other
    return index


def find_conflicts(
    dests: list[str], entry: ModEntry, entries: list[ModEntry]
) -> list[tuple[ModEntry, str]]:
    """``(owner, path)`` for every destination already owned elsewhere."""
    index = ownership_index(entries, exclude=entry)
    return [(index[d], d) for d in dests if d in index]


# ── Archive storage ───────────────────────────────────────────────────


def archive_dir(game_root: Path) -> Path:
    return Path(game_root) / ARCHIVE_DIR


def mod_archive_dir(game_root: Path, entry: ModEntry) -> Path:
    """``MODS/<mod name>/``; repositories may publish identically named assets."""
    return archive_dir(game_root) / sanitize_name(entry.name)


def stored_archive(game_root: Path, entry: ModEntry, asset_name: str) -> Path:
    return mod_archive_dir(game_root, entry) / asset_name


def store_archive(game_root: Path, entry: ModEntry, archive: Path) -> Path:
    """Move a processed archive into ``MODS/<mod name>/`` and return its new path."""
    target_dir = mod_archive_dir(game_root, entry)
    target = target_dir / archive.name
    if archive.resolve() == target.resolve():
        return target
    try:
        move_file(archive, target)
    except OSError as exc:
        raise StorageError(f"Cannot move {archive} into {target_dir}: {exc}") from exc
    _log.info("stored archive %s", target)
    return target


def is_up_to_date(game_root: Path, entry: ModEntry, asset_name: str) -> bool:
    """Whether ``asset_name`` is already installed, stored and fully present."""
    if entry.installed_asset != asset_name or not entry.enabled:
        return False
    if not stored_archive(game_root, entry, asset_name).is_file():
        return False
    return all((Path(game_root) / p).exists() for p in entry.installed_files)


# ── Install ───────────────────────────────────────────────────────────


def _rollback(game_root: Path, written: list[str], backups: dict[str, Path]) -> None:
    for dest in reversed(written):
        try:
            remove_path(game_root / dest)
        except OSError as exc:
            _log.error("rollback: could not remove %s: %s", dest, exc)
    for dest, backup in backups.items():
        try:
            (game_root / dest).parent.mkdir(parents=True, exist_ok=True)
            os.replace(backup, game_root / dest)
        except OSError as exc:
            _log.error("rollback: could not restore %s: %s", dest, exc)


def _backup(game_root: Path, dest: str, backup_root: Path, backups: dict[str, Path]) -> None:
    src = game_root / dest
    clear_attributes(src)
    backup = backup_root / dest
    backup.parent.mkdir(parents=True, exist_ok=True)
    os.replace(src, backup)
    backups[dest] = backup


def install_files(
    game_root: Path,
    plan: list[PlannedFile],
    entry: ModEntry,
    entries: list[ModEntry],
    policy: ConflictPolicy = ConflictPolicy.FAIL,
) -> InstallResult:
    """Write ``plan`` for ``entry`` and return what was written.

    Raises ``Conflict`` (policy FAIL) before touching the filesystem, and
    ``StorageError`` after rolling back when a write fails.  On success the
    replaced and stale files are still held in ``result.backups``; the
    caller must follow up with ``finish_install`` or ``rollback_install``.
    """
    game_root = Path(game_root)
    result = InstallResult()

    conflicts = find_conflicts([p.dest for p in plan], entry, entries)
    if conflicts:
        for owner, path in conflicts:
            _log.warning("conflict on %s: owned by %s, wanted by %s", path, owner.name, entry.name)
        if policy is ConflictPolicy.FAIL:
            owner, path = conflicts[0]
            raise Conflict(owner.name, entry.name, path)
        if policy is ConflictPolicy.KEEP_EXISTING:
            kept = {path for _owner, path in conflicts}
            plan = [p for p in plan if p.dest not in kept]
            result.kept = sorted(kept)
        else:
            result.transferred = {path: owner for owner, path in conflicts}

    backup_root = game_root / STAGING_DIR / f".backup-{sanitize_name(entry.name)}"
    if backup_root.exists():
        remove_tree(backup_root)
    result.backup_root = backup_root
    backups = result.backups
    written: list[str] = []
    current = ""

    try:
        for planned in plan:
            current = planned.dest
            dst = game_root / planned.dest
            if dst.exists() or dst.is_symlink():
                if planned.dest not in entry.installed_files and planned.dest not in result.transferred:
                    _log.info("overwriting untracked file %s", planned.dest)
                _backup(game_root, planned.dest, backup_root, backups)

            dst.parent.mkdir(parents=True, exist_ok=True)
            tmp = dst.with_name(f".{dst.name}.tmp")
            shutil.copy2(planned.source, tmp)
            os.replace(tmp, dst)
            written.append(planned.dest)
            _log.debug("wrote %s", planned.dest)

        # Files the previous version shipped but this one does not
        for stale in sorted(entry.installed_files - set(written)):
            current = stale
            path = game_root / stale
            if path.exists() or path.is_symlink():
                _backup(game_root, stale, backup_root, backups)
                prune_empty_dirs(path.parent, game_root)
            result.removed.append(stale)
    except OSError as exc:
        _log.error("install of %s failed, rolling back %d file(s): %s", entry.name, len(written), exc)
        _rollback(game_root, written, backups)
        if not any(b.exists() for b in backups.values()):
            remove_tree(backup_root)
        raise StorageError(f"{entry.name}: could not write {current}: {exc}") from exc

    result.written = set(written)
    if result.removed:
        _log.info("%s: %d file(s) no longer shipped", entry.name, len(result.removed))
    return result


def rollback_install(game_root: Path, result: InstallResult) -> None:
    """Undo a successful ``install_files``: remove its writes, restore the backups."""
    game_root = Path(game_root)
    _log.warning("rolling back %d written file(s)", len(result.written))
    _rollback(game_root, sorted(result.written), result.backups)
    if result.backup_root is not None and not any(b.exists() for b in result.backups.values()):
        remove_tree(result.backup_root)


def finish_install(result: InstallResult) -> None:
    """Drop the backups once the install has been committed."""
    if result.backup_root is not None:
        remove_tree(result.backup_root)
    result.backups.clear()


def commit_manifest(entry: ModEntry, result: InstallResult) -> None:
    """Record ``result`` in the manifests once the install has succeeded."""
    for path, loser in result.transferred.items():
        loser.installed_files.discard(path)
        _log.info("ownership of %s moved from %s to %s", path, loser.name, entry.name)
    entry.installed_files = set(result.written)


def revert_manifest(entry: ModEntry, result: InstallResult, previous_files: set[str]) -> None:
    """Undo ``commit_manifest``."""
    for path, loser in result.transferred.items():
        loser.installed_files.add(path)
    entry.installed_files = set(previous_files)
