"""
Archive extraction into a staging directory.

Supported container kinds are detected from the file extension:

    .zip  -> zipfile
    .7z   -> py7zr
    .rar  -> rarfile (needs an unrar/unar/bsdtar tool on the system)
    .dll  -> copied through as-is

A recognised kind whose decoder is missing or fails raises
``ExtractionFailure``; that only ever fails the one mod being installed.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable

import py7zr
import rarfile

from file_ops import normalize_permissions, remove_tree
from mod_errors import ExtractionFailure, ModManagerError, UnsupportedArchiveFormat

# Optional explicit path to an unrar binary
_unrar = os.environ.get("GHR_MODS_UNRAR")
if _unrar:
    rarfile.UNRAR_TOOL = _unrar

JUNK_NAMES = {"__MACOSX", ".DS_Store", "Thumbs.db"}

_log = logging.getLogger(__name__)


class ArchiveKind(enum.Enum):
    ZIP = ".zip"
    SEVEN_ZIP = ".7z"
    RAR = ".rar"
    BARE = ".dll"


def detect_kind(path: Path) -> ArchiveKind:
    suffix = Path(path).suffix.lower()
    for kind in ArchiveKind:
        if kind.value == suffix:
            return kind
    raise UnsupportedArchiveFormat(str(path), suffix)


# ── Member safety ─────────────────────────────────────────────────────


def _check_members(names: list[str], archive: Path) -> None:
    """Reject entries that would land outside the staging directory."""
    for name in names:
        pure = PurePosixPath(name.replace("\\", "/"))
        if pure.is_absolute() or ".." in pure.parts or (pure.parts and ":" in pure.parts[0]):
            raise ExtractionFailure(str(archive), f"unsafe member path {name!r}")


# ── Decoders ──────────────────────────────────────────────────────────


def _extract_zip(path: Path, staging: Path) -> None:
    with zipfile.ZipFile(path, "r") as zf:
        _check_members(zf.namelist(), path)
        zf.extractall(staging)


def _extract_7z(path: Path, staging: Path) -> None:
    with py7zr.SevenZipFile(path, "r") as sz:
        _check_members(sz.getnames(), path)
        sz.extractall(path=staging)


def _extract_rar(path: Path, staging: Path) -> None:
    with rarfile.RarFile(path, "r") as rf:
        _check_members([info.filename for info in rf.infolist()], path)
        rf.extractall(staging)


def _copy_bare(path: Path, staging: Path) -> None:
    shutil.copy2(path, staging / path.name)


Decoder = Callable[[Path, Path], None]

_DECODERS: dict[ArchiveKind, Decoder] = {
    ArchiveKind.ZIP: _extract_zip,
    ArchiveKind.SEVEN_ZIP: _extract_7z,
    ArchiveKind.RAR: _extract_rar,
    ArchiveKind.BARE: _copy_bare,
}


# ── Public API ────────────────────────────────────────────────────────


def _drop_junk(staging: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(staging):
        for name in list(dirnames):
            if name in JUNK_NAMES:
                remove_tree(Path(dirpath) / name)
                dirnames.remove(name)
        for name in filenames:
            if name in JUNK_NAMES:
                (Path(dirpath) / name).unlink()


def extract(path: Path, staging: Path) -> Path:
    """Unpack ``path`` into a fresh ``staging`` directory and return it.

    Raises ``UnsupportedArchiveFormat`` for unknown extensions and
    ``ExtractionFailure`` when decoding fails.
    """
    path = Path(path)
    staging = Path(staging)
    kind = detect_kind(path)
    decoder = _DECODERS.get(kind)
    if decoder is None:
        raise ExtractionFailure(str(path), f"no decoder available for {kind.value} archives")

    if staging.exists():
        remove_tree(staging)
    staging.mkdir(parents=True)

    _log.info("extracting %s (%s) into %s", path.name, kind.name, staging)
    try:
        decoder(path, staging)
    except ModManagerError:
        remove_tree(staging)
        raise
    except Exception as exc:
        remove_tree(staging)
        raise ExtractionFailure(str(path), f"{type(exc).__name__}: {exc}") from exc

    _drop_junk(staging)
    normalize_permissions(staging)
    return staging
