"""
Enable / disable state transitions driven by the ownership manifest.

A disabled mod's files live under ``<game_root>/disabled-mods/<mod name>/``
with the same relative layout they have under the game root.  Moves are purely
path-driven: whatever ``installed_files`` lists is relocated, nothing else.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from file_ops import move_file, prune_empty_dirs, remove_tree, sanitize_name
from installer import find_conflicts
from manifest_schema import ModEntry
from mod_errors import Conflict, PartialMoveFailure, StorageError

QUARANTINE_DIR = "disabled-mods"

# Empty directories are pruned up to, never including, these.
_KEEP_DIRS = ("BepInEx/plugins", "user/mods")

_log = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    moved: list[str] = field(default_factory=list)
    warning: PartialMoveFailure | None = None
    changed: bool = True


class ModStateManager:
    """Moves mods between the game root and the quarantine tree."""

    def __init__(self, game_root: Path):
        self.game_root = Path(game_root)
        self.quarantine_root = self.game_root / QUARANTINE_DIR

    def mod_quarantine(self, entry: ModEntry) -> Path:
        return self.quarantine_root / sanitize_name(entry.name)

    def prune_stop(self, rel: str) -> Path:
        for keep in _KEEP_DIRS:
            if rel.startswith(keep + "/"):
                return self.game_root / keep
        return self.game_root

    def _relocate(
        self, entry: ModEntry, src_root: Path, dst_root: Path, stop_for
    ) -> tuple[list[str], list[str]]:
        moved: list[str] = []
        missing: list[str] = []
        try:
            for rel in sorted(entry.installed_files):
                src = src_root / rel
                if not src.exists():
                    _log.warning("%s: %s missing, not moved", entry.name, src)
                    missing.append(rel)
                    continue
                move_file(src, dst_root / rel)
                moved.append(rel)
                prune_empty_dirs(src.parent, stop_for(rel))
        except OSError as exc:
            _log.error("%s: move failed after %d file(s), reverting: %s", entry.name, len(moved), exc)
            for rel in reversed(moved):
                try:
                    move_file(dst_root / rel, src_root / rel)
                except OSError as undo_exc:
                    _log.error("could not move %s back: %s", rel, undo_exc)
            raise StorageError(f"{entry.name}: could not move {rel}: {exc}") from exc
        return moved, missing

    # ── Transitions ───────────────────────────────────────────────────

    def disable(self, entry: ModEntry) -> TransitionResult:
        if not entry.enabled:
            _log.info("%s is already disabled", entry.name)
            return TransitionResult(changed=False)

        target = self.mod_quarantine(entry)
        moved, missing = self._relocate(entry, self.game_root, target, self.prune_stop)
        entry.enabled = False
        _log.info("disabled %s: %d file(s) moved to %s", entry.name, len(moved), target)
        warning = PartialMoveFailure(entry.name, missing) if missing else None
        return TransitionResult(moved=moved, warning=warning)

    def enable(self, entry: ModEntry, entries: list[ModEntry]) -> TransitionResult:
        """Move ``entry`` back into the game root.

        Raises ``Conflict`` without moving anything if another enabled mod
        owns one of its paths.
        """
        if entry.enabled:
            _log.info("%s is already enabled", entry.name)
            return TransitionResult(changed=False)

        conflicts = find_conflicts(sorted(entry.installed_files), entry, entries)
        if conflicts:
            owner, path = conflicts[0]
            _log.warning("cannot enable %s: %s is owned by %s", entry.name, path, owner.name)
            raise Conflict(owner.name, entry.name, path)

        source = self.mod_quarantine(entry)
        moved, missing = self._relocate(
            entry, source, self.game_root, lambda _rel: self.quarantine_root
        )
        if source.exists() and not any(source.iterdir()):
            source.rmdir()
        entry.enabled = True
        _log.info("enabled %s: %d file(s) restored", entry.name, len(moved))
        warning = PartialMoveFailure(entry.name, missing) if missing else None
        return TransitionResult(moved=moved, warning=warning)

    # ── Quarantine housekeeping ───────────────────────────────────────

    def list_quarantined(self) -> list[str]:
        if not self.quarantine_root.is_dir():
            return []
        return sorted(p.name for p in self.quarantine_root.iterdir() if p.is_dir())

    def purge(self, entry: ModEntry) -> None:
        target = self.mod_quarantine(entry)
        if target.exists():
            remove_tree(target)
            _log.info("purged quarantine for %s", entry.name)
