"""
GitHub release fetching with a shared request budget.

All fetches issued during a run draw from one ``RateLimitCoordinator``.  The
coordinator starts from an estimate (60 requests unauthenticated, 5000 with a
token) and is corrected by the ``X-RateLimit-*`` headers of every response.
Once the budget is spent, every fetch that has not yet hit the network fails
immediately with ``RateLimited`` carrying the reset time.

Results are cached per identifier for the lifetime of the fetcher, so the
validation done by ``add`` and the selection done by ``upgrade`` cost a single
request.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import requests

from manifest_schema import ModIdentifier
from mod_errors import AuthError, NetworkError, NotFound, RateLimited, StorageError
from releases import Asset, Release

API_URL = "https://api.github.com"
USER_AGENT = "ghr-mod-manager"
UNAUTHENTICATED_QUOTA = 60
AUTHENTICATED_QUOTA = 5000
DEFAULT_PER_PAGE = 30
DOWNLOAD_CHUNK = 1 << 16

_log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitCoordinator:
    """One request budget shared by every concurrent fetch."""

    def __init__(self, authenticated: bool = False):
        self.limit = AUTHENTICATED_QUOTA if authenticated else UNAUTHENTICATED_QUOTA
        self.remaining = self.limit
        self.reset_at: datetime | None = None
        self._reported = False

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def new_batch(self) -> None:
        """Allow the next exhaustion to be logged again."""
        self._reported = False

    def acquire(self, identifier: str | None = None) -> None:
        """Reserve one request, or raise ``RateLimited`` without spending one.

        Runs without awaiting, so concurrent tasks on one event loop cannot
        both take the last request.
        """
        if self.remaining <= 0:
            if self.reset_at is not None and self.reset_at <= _now():
                _log.info("rate limit window reset; restoring %d request(s)", self.limit)
                self.remaining = self.limit
                self.reset_at = None
            else:
                self._report()
                raise RateLimited(self.reset_at, identifier)
        self.remaining -= 1

    def update(self, headers: Mapping[str, str]) -> None:
        """Overwrite the estimate with the server's view."""
        try:
            if "X-RateLimit-Limit" in headers:
                self.limit = int(headers["X-RateLimit-Limit"])
            if "X-RateLimit-Remaining" in headers:
                self.remaining = int(headers["X-RateLimit-Remaining"])
            if "X-RateLimit-Reset" in headers:
                self.reset_at = datetime.fromtimestamp(
                    int(headers["X-RateLimit-Reset"]), tz=timezone.utc
                )
        except (TypeError, ValueError) as exc:
            _log.debug("ignoring malformed rate limit headers: %s", exc)
        _log.debug("rate limit: %d/%d remaining", self.remaining, self.limit)

    def mark_exhausted(self) -> None:
        self.remaining = 0
        self._report()

    def _report(self) -> None:
        if self._reported:
            return
        self._reported = True
        when = self.reset_at.isoformat(timespec="seconds") if self.reset_at else "unknown"
        _log.warning("GitHub API rate limit exhausted; refusing further requests until %s", when)


class ReleaseFetcher:
    """Fetches releases for ``owner/repo`` identifiers from the GitHub API."""

    def __init__(
        self,
        token: str | None = None,
        *,
        session: requests.Session | None = None,
        coordinator: RateLimitCoordinator | None = None,
        api_url: str = API_URL,
        per_page: int = DEFAULT_PER_PAGE,
        timeout: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.per_page = per_page
        self.timeout = timeout
        self.coordinator = coordinator or RateLimitCoordinator(authenticated=bool(token))
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self._cache: dict[str, asyncio.Future] = {}

    # ── Public API ────────────────────────────────────────────────────

    async def fetch(self, identifier: ModIdentifier | str) -> list[Release]:
        """All releases of ``identifier``, newest first."""
        ident = _as_identifier(identifier)
        path = f"/repos/{ident.owner}/{ident.repo_name}/releases"
        return await self._cached(
            ident.key,
            lambda: self._fetch_releases(ident, path),
        )

    async def fetch_release(self, identifier: ModIdentifier | str, tag: str) -> Release:
        """The single release tagged ``tag`` (for pinned mods)."""
        ident = _as_identifier(identifier)
        path = f"/repos/{ident.owner}/{ident.repo_name}/releases/tags/{tag}"
        releases = await self._cached(
            f"{ident.key}@{tag}",
            lambda: self._fetch_tagged(ident, path, tag),
        )
        return releases[0]

    async def download(self, asset: Asset, dest_dir: Path) -> Path:
        """Download ``asset`` into ``dest_dir`` and return the final path."""
        return await asyncio.to_thread(self._download, asset, Path(dest_dir))

    def forget(self, identifier: ModIdentifier | str) -> None:
        self._cache.pop(_as_identifier(identifier).key, None)

    # ── Internals ─────────────────────────────────────────────────────

    async def _cached(self, key: str, factory) -> list[Release]:
        pending = self._cache.get(key)
        if pending is None:
            pending = asyncio.ensure_future(factory())
            self._cache[key] = pending
        else:
            _log.debug("release cache hit for %s", key)
        try:
            return await asyncio.shield(pending)
        except Exception:
            if pending.done() and self._cache.get(key) is pending:
                del self._cache[key]
            raise

    async def _fetch_releases(self, ident: ModIdentifier, path: str) -> list[Release]:
        data = await self._get_json(str(ident), path, {"per_page": self.per_page})
        if not isinstance(data, list):
            raise NetworkError(f"{ident}: unexpected release list payload")
        try:
            releases = [Release.from_api(item) for item in data if not item.get("draft")]
        except (KeyError, TypeError, ValueError) as exc:
            raise NetworkError(f"{ident}: malformed release data ({exc})") from exc
        releases.sort(key=lambda r: r.published_at, reverse=True)
        _log.info("%s: fetched %d release(s)", ident, len(releases))
        return releases

    async def _fetch_tagged(self, ident: ModIdentifier, path: str, tag: str) -> list[Release]:
        try:
            data = await self._get_json(str(ident), path, None)
        except NotFound as exc:
            raise NotFound(str(ident), f"no release tagged {tag!r}") from exc
        try:
            return [Release.from_api(data)]
        except (KeyError, TypeError, ValueError) as exc:
            raise NetworkError(f"{ident}: malformed release data ({exc})") from exc

    async def _get_json(self, identifier: str, path: str, params: dict | None) -> Any:
        self.coordinator.acquire(identifier)
        url = self.api_url + path
        _log.info("GET %s", url)
        try:
            response = await asyncio.to_thread(
                self.session.get, url, params=params, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise NetworkError(f"{identifier}: request failed ({exc})") from exc

        self.coordinator.update(response.headers)
        self._raise_for_status(identifier, response)
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"{identifier}: invalid JSON in response ({exc})") from exc

    def _raise_for_status(self, identifier: str, response: requests.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 404:
            raise NotFound(identifier)
        if status in (403, 429) and response.headers.get("X-RateLimit-Remaining") == "0":
            self.coordinator.mark_exhausted()
            raise RateLimited(self.coordinator.reset_at, identifier)
        if status in (401, 403):
            raise AuthError(f"{identifier}: GitHub rejected the request (HTTP {status})")
        raise NetworkError(f"{identifier}: unexpected HTTP {status}")

    def _download(self, asset: Asset, dest_dir: Path) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        final = dest_dir / asset.filename
        part = final.with_name(final.name + ".part")
        _log.info("Downloading %s (%d bytes)", asset.download_url, asset.size_bytes)
        try:
            with self.session.get(asset.download_url, stream=True, timeout=self.timeout) as resp:
                if resp.status_code != 200:
                    raise NetworkError(
                        f"{asset.filename}: download failed (HTTP {resp.status_code})"
                    )
                with open(part, "wb") as fh:
                    for chunk in resp.iter_content(DOWNLOAD_CHUNK):
                        if chunk:
                            fh.write(chunk)
            os.replace(part, final)
        except requests.RequestException as exc:
            part.unlink(missing_ok=True)
            raise NetworkError(f"{asset.filename}: download failed ({exc})") from exc
        except NetworkError:
            part.unlink(missing_ok=True)
            raise
        except OSError as exc:
            part.unlink(missing_ok=True)
            raise StorageError(f"{asset.filename}: cannot write download ({exc})") from exc
        return final


def _as_identifier(identifier: ModIdentifier | str) -> ModIdentifier:
    if isinstance(identifier, ModIdentifier):
        return identifier
    return ModIdentifier.parse(identifier)
