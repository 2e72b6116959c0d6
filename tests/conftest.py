"""
Shared fixtures and helpers for the GitHub Release Mod Manager test suite.
"""

import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from manifest_schema import ModEntry, ModIdentifier, Profile
from releases import Asset, Release


def make_zip(path: Path, members: dict) -> Path:
    """Write a zip at ``path`` with ``{member_name: bytes|str}`` contents."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def make_entry(name: str, files=(), enabled=True, owner="acme", **kwargs) -> ModEntry:
    return ModEntry(
        identifier=ModIdentifier(owner=owner, repo_name=name),
        name=name,
        installed_files=set(files),
        enabled=enabled,
        **kwargs,
    )


def make_release(tag, assets, *, day=1, prerelease=False, title=None, body="") -> Release:
    return Release(
        tag=tag,
        display_name=title or tag,
        published_at=datetime(2024, 1, day, tzinfo=timezone.utc),
        is_prerelease=prerelease,
        body=body,
        assets=[Asset(name, f"https://example.invalid/{tag}/{name}", 10) for name in assets],
    )


class FakeResponse:
    def __init__(self, status=200, payload=None, headers=None, body=b""):
        self.status_code = status
        self._payload = payload
        self.headers = headers or {}
        self._body = body

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def iter_content(self, chunk_size):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Serves queued responses keyed by URL suffix and records every call."""

    def __init__(self, routes):
        self.headers = {}
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, timeout=None, stream=False):
        self.calls.append(url)
        for suffix, response in self.routes.items():
            if url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404, {"message": "Not Found"})


def release_json(tag, published, assets=("Foo-3.10.zip",), draft=False):
    return {
        "tag_name": tag,
        "name": tag,
        "published_at": published,
        "prerelease": False,
        "draft": draft,
        "assets": [
            {"name": a, "browser_download_url": f"https://dl.invalid/{a}", "size": 3}
            for a in assets
        ],
    }


def headers(remaining, limit=60, reset=None):
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset or int(time.time()) + 3600),
    }


@pytest.fixture
def game_root(tmp_path):
    """A fresh game root with the plugin and user-data roots in place."""
    root = tmp_path / "game"
    (root / "BepInEx" / "plugins").mkdir(parents=True)
    (root / "user" / "mods").mkdir(parents=True)
    return root


@pytest.fixture
def profile(game_root):
    return Profile(name="test", game_root=game_root, game_version="3.10")


@pytest.fixture
def downloads(tmp_path):
    d = tmp_path / "downloads"
    d.mkdir()
    return d
