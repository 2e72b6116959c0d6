"""
Filesystem helpers shared by the installer and the enable/disable tracker.

Deleting stale output from an interrupted run is done in two phases: first
clear read-only attributes across the whole subtree, then remove leaves
before their parents.  ``shutil.rmtree`` walks top-down and gives up on
attribute-protected, non-empty directories, so it is not used for this.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path

_log = logging.getLogger(__name__)

FILE_MODE = 0o644
DIR_MODE = 0o755


def _make_writable(path: Path) -> None:
    try:
        mode = path.lstat().st_mode
    except FileNotFoundError:
        return
    if stat.S_ISLNK(mode):
        return
    wanted = stat.S_IMODE(mode) | stat.S_IWUSR | stat.S_IRUSR
    if stat.S_ISDIR(mode):
        wanted |= stat.S_IXUSR
    if wanted != stat.S_IMODE(mode):
        os.chmod(path, wanted)


def clear_attributes(root: Path) -> None:
    """Phase 1: make every entry under ``root`` (inclusive) writable."""
    root = Path(root)
    if not root.exists() and not root.is_symlink():
        return
    _make_writable(root)
    if root.is_dir() and not root.is_symlink():
        # Parents first so their children can be listed and chmod'ed.
        for dirpath, dirnames, filenames in os.walk(root, topdown=True):
            for name in dirnames:
                _make_writable(Path(dirpath) / name)
            for name in filenames:
                _make_writable(Path(dirpath) / name)


def remove_tree(root: Path) -> None:
    """Remove ``root`` (file or directory) with the two-phase delete."""
    root = Path(root)
    if not root.exists() and not root.is_symlink():
        return
    clear_attributes(root)
    if root.is_file() or root.is_symlink():
        root.unlink()
        return
    # Phase 2: bottom-up
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        for name in filenames:
            (Path(dirpath) / name).unlink()
        for name in dirnames:
            child = Path(dirpath) / name
            if child.is_symlink():
                child.unlink()
            else:
                child.rmdir()
    root.rmdir()
    _log.debug("Removed tree %s", root)


def remove_path(path: Path) -> None:
    """Remove a single file, clearing a read-only bit first if needed."""
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        remove_tree(path)
        return
    if path.exists() or path.is_symlink():
        _make_writable(path)
        path.unlink()


def normalize_permissions(root: Path) -> None:
    """Give extracted content predictable modes (rw-r--r-- / rwxr-xr-x)."""
    root = Path(root)
    if root.is_dir():
        os.chmod(root, DIR_MODE)
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames:
                os.chmod(Path(dirpath) / name, DIR_MODE)
            for name in filenames:
                os.chmod(Path(dirpath) / name, FILE_MODE)
    elif root.is_file():
        os.chmod(root, FILE_MODE)


def move_file(src: Path, dst: Path) -> None:
    """Move ``src`` to ``dst`` replacing any file there.

    Falls back to copy + delete when a rename is not possible (e.g. across
    filesystems).
    """
    src, dst = Path(src), Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    if dst.is_dir() and not dst.is_symlink():
        remove_tree(dst)
    elif dst.exists():
        _make_writable(dst)
    try:
        os.replace(src, dst)
    except OSError as exc:
        _log.info("rename %s -> %s failed (%s); copying then removing", src, dst, exc)
        shutil.copy2(src, dst)
        remove_path(src)


def prune_empty_dirs(start: Path, stop_at: Path) -> None:
    """Remove ``start`` and its empty ancestors, never touching ``stop_at``."""
    current = Path(start)
    stop_at = Path(stop_at)
    while current.exists() and current != stop_at and current != current.parent:
        if stop_at not in current.parents:
            break
        if any(current.iterdir()):
            break
        current.rmdir()
        current = current.parent


def sanitize_name(name: str) -> str:
    """Make a mod name safe to use as a single directory name."""
    cleaned = "".join("_" if c in '/\\:*?"<>|' else c for c in name)
    return cleaned.strip() or "unnamed"
