"""
Tests for archive kind detection and extraction into a staging directory.
"""

import os
import stat
from unittest.mock import patch

import py7zr
import pytest

import archive_extractor
from archive_extractor import ArchiveKind, detect_kind, extract
from mod_errors import ExtractionFailure, UnsupportedArchiveFormat
from tests.conftest import make_zip


def test_detect_kind_is_case_insensitive():
    assert detect_kind("Foo.ZIP") is ArchiveKind.ZIP
    assert detect_kind("Foo.7z") is ArchiveKind.SEVEN_ZIP
    assert detect_kind("Foo.rar") is ArchiveKind.RAR
    assert detect_kind("Foo.dll") is ArchiveKind.BARE


def test_unknown_extension_is_unsupported(tmp_path):
    path = tmp_path / "Foo.tar.gz"
    path.write_bytes(b"x")
    with pytest.raises(UnsupportedArchiveFormat) as exc_info:
        extract(path, tmp_path / "staging")
    assert exc_info.value.suffix == ".gz"


def test_extract_zip_drops_macos_junk(tmp_path):
    archive = make_zip(tmp_path / "Foo.zip", {
        "Foo/plugin.dll": b"dll",
        "__MACOSX/Foo/._plugin.dll": b"junk",
        "Foo/.DS_Store": b"junk",
    })
    staging = extract(archive, tmp_path / "staging")
    names = sorted(p.relative_to(staging).as_posix() for p in staging.rglob("*"))
    assert names == ["Foo", "Foo/plugin.dll"]


def test_extract_replaces_stale_staging(tmp_path):
    staging = tmp_path / "staging"
    (staging / "old").mkdir(parents=True)
    (staging / "old" / "leftover.txt").write_text("stale")
    archive = make_zip(tmp_path / "Foo.zip", {"plugin.dll": b"dll"})
    extract(archive, staging)
    assert not (staging / "old").exists()
    assert (staging / "plugin.dll").read_bytes() == b"dll"


def test_extract_7z(tmp_path):
    src = tmp_path / "plugin.dll"
    src.write_bytes(b"seven")
    archive = tmp_path / "Foo.7z"
    with py7zr.SevenZipFile(archive, "w") as sz:
        sz.write(src, "BepInEx/plugins/plugin.dll")
    staging = extract(archive, tmp_path / "staging")
    assert (staging / "BepInEx" / "plugins" / "plugin.dll").read_bytes() == b"seven"


def test_bare_dll_is_copied_through(tmp_path):
    dll = tmp_path / "Foo.dll"
    dll.write_bytes(b"MZ")
    staging = extract(dll, tmp_path / "staging")
    assert (staging / "Foo.dll").read_bytes() == b"MZ"
    assert dll.exists()


def test_path_traversal_is_rejected(tmp_path):
    archive = make_zip(tmp_path / "Evil.zip", {"../evil.dll": b"x"})
    with pytest.raises(ExtractionFailure):
        extract(archive, tmp_path / "staging")
    assert not (tmp_path / "evil.dll").exists()
    assert not (tmp_path / "staging").exists()


def test_corrupt_archives_raise_extraction_failure(tmp_path):
    for name in ("bad.zip", "bad.7z", "bad.rar"):
        path = tmp_path / name
        path.write_bytes(b"definitely not an archive")
        with pytest.raises(ExtractionFailure):
            extract(path, tmp_path / "staging")


def test_missing_decoder_raises_extraction_failure(tmp_path):
    src = tmp_path / "a.dll"
    src.write_bytes(b"a")
    archive = tmp_path / "Foo.7z"
    with py7zr.SevenZipFile(archive, "w") as sz:
        sz.write(src, "a.dll")
    with patch.dict(archive_extractor._DECODERS):
        del archive_extractor._DECODERS[ArchiveKind.SEVEN_ZIP]
        with pytest.raises(ExtractionFailure) as exc_info:
            extract(archive, tmp_path / "staging")
    assert "no decoder" in str(exc_info.value)


@pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
def test_permissions_are_normalised(tmp_path):
    archive = make_zip(tmp_path / "Foo.zip", {"dir/run.sh": b"#!/bin/sh"})
    staging = extract(archive, tmp_path / "staging")
    assert stat.S_IMODE((staging / "dir").stat().st_mode) == 0o755
    assert stat.S_IMODE((staging / "dir" / "run.sh").stat().st_mode) == 0o644
