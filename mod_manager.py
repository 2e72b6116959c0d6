"""
GitHub Release Mod Manager - Core Logic

Ties the fetch / select / extract / normalise / install / track pipeline
together for one profile and exposes the user-level operations.

Single operations return an ``OperationResult``; batch operations (``upgrade``,
``install_local``) return a ``BatchReport``.  Inside a batch every mod runs its
pipeline strictly in order, mods run concurrently up to ``parallel_tasks``,
a mod-local failure is recorded against that mod only, and a global failure
(auth, rate limit, storage) stops the batch and is reported once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from archive_extractor import extract
from file_ops import prune_empty_dirs, remove_path, remove_tree, sanitize_name
from filters import (
    Filter,
    GameVersionMinor,
    GameVersionStrict,
    MinorFallback,
    filter_from_dict,
)
from github_client import ReleaseFetcher
from installer import (
    STAGING_DIR,
    ConflictPolicy,
    archive_dir,
    commit_manifest,
    finish_install,
    install_files,
    is_up_to_date,
    revert_manifest,
    rollback_install,
    store_archive,
    stored_archive,
)
from layout import PLUGINS_DIR, USER_MODS_DIR, normalize_layout
from manifest_schema import ModEntry, ModIdentifier, Profile
from mod_errors import AlreadyAdded, ModManagerError, ModNotFound, NetworkError, StorageError
from mod_state import ModStateManager
from releases import build_candidates, version_lines
from selector import Selection, select
from version_groups import VersionGroupResolver

DEFAULT_PARALLEL_TASKS = 8
DOWNLOAD_DIR = "downloads"

_log = logging.getLogger(__name__)


@dataclass
class OperationResult:
    ok: bool
    message: str
    error: ModManagerError | None = None
    value: Any = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class BatchReport:
    results: dict[str, OperationResult] = field(default_factory=dict)  # mod name -> result
    global_error: ModManagerError | None = None
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.global_error is None and all(r.ok for r in self.results.values())

    @property
    def failed(self) -> dict[str, OperationResult]:
        return {name: r for name, r in self.results.items() if not r.ok}


Worker = Callable[[ModEntry, asyncio.Lock], Awaitable[OperationResult]]


def read_identifiers(path: str | Path) -> list[str]:
    """Read ``owner/repo`` lines from a file; blank lines and ``#`` comments are skipped.

    Raises ``ValueError`` for a malformed line or a file with no identifiers.
    Raises ``StorageError`` if the file cannot be read.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}") from e
    identifiers = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        ModIdentifier.parse(line)
        identifiers.append(line)
    if not identifiers:
        raise ValueError(f"No mod identifiers found in {path}")
    return identifiers


class ModManager:
    """
    Main mod manager controller for one profile.

    Workflow:
        1. add() to track a GitHub repository
        2. upgrade() to select, download and install the newest matching assets
        3. disable() / enable() to move a mod's files in and out of the game
        4. remove() to stop tracking a mod
    """

    def __init__(
        self,
        profile: Profile,
        fetcher: ReleaseFetcher | None = None,
        resolver: VersionGroupResolver | None = None,
        log_callback: Optional[Callable[[str], None]] = None,
        save_callback: Optional[Callable[[Profile], None]] = None,
        parallel_tasks: int = DEFAULT_PARALLEL_TASKS,
        minor_fallback: MinorFallback = MinorFallback.STRICT,
    ):
        self.profile = profile
        self.game_root = Path(profile.game_root)
        self.fetcher = fetcher
        self.resolver = resolver or VersionGroupResolver()
        self.parallel_tasks = max(1, parallel_tasks)
        self.minor_fallback = minor_fallback
        self.state = ModStateManager(self.game_root)
        self._log_cb = log_callback or _log.info
        self._save_cb = save_callback

    # ── Logging / persistence ─────────────────────────────────────────

    def log(self, msg: str):
        self._log_cb(msg)

    def _save(self):
        if self._save_cb is not None:
            self._save_cb(self.profile)

    def _fail(self, exc: ModManagerError) -> OperationResult:
        self.log(f"  ERROR: {exc}")
        return OperationResult(False, str(exc), error=exc)

    # ── Profile helpers ───────────────────────────────────────────────

    @property
    def filters(self) -> list[Filter]:
        return [filter_from_dict(d) for d in self.profile.filters]

    @property
    def conflict_policy(self) -> ConflictPolicy:
        return ConflictPolicy(self.profile.conflict_policy)

    @property
    def staging_root(self) -> Path:
        return self.game_root / STAGING_DIR

    def list_mods(self) -> list[ModEntry]:
        return list(self.profile.mods)

    def _get(self, name: str) -> ModEntry:
        entry = self.profile.find_mod(name)
        if entry is None:
            raise ModNotFound(name)
        return entry

    def _require_fetcher(self) -> ReleaseFetcher:
        if self.fetcher is None:
            raise NetworkError("No release fetcher configured (offline mode)")
        return self.fetcher

    def ensure_layout(self):
        for rel in (PLUGINS_DIR, USER_MODS_DIR):
            (self.game_root / rel).mkdir(parents=True, exist_ok=True)
        archive_dir(self.game_root).mkdir(parents=True, exist_ok=True)

    # ── Add / remove ──────────────────────────────────────────────────

    async def _add_one(self, identifier: str, pinned_tag: str | None, force: bool) -> ModEntry:
        """Validate and track ``identifier``; raises on failure."""
        ident = ModIdentifier.parse(identifier)
        self.log(f"Adding {ident}...")
        if self.profile.find_by_identifier(ident) is not None:
            raise AlreadyAdded(str(ident))

        name = ident.repo_name
        if self.profile.find_mod(name) is not None:
            name = f"{ident.owner}-{ident.repo_name}"
        entry = ModEntry(identifier=ident, name=name, pinned_tag=pinned_tag)

        if force:
            # Existence only; compatibility is not checked
            fetcher = self._require_fetcher()
            if pinned_tag:
                await fetcher.fetch_release(ident, pinned_tag)
            else:
                await fetcher.fetch(ident)
        else:
            selection = await self._select_for(entry)
            self.log(f"  Compatible: {selection.asset.filename} ({selection.release_tag})")

        self.profile.mods.append(entry)
        try:
            self._save()
        except ModManagerError:
            self.profile.mods.remove(entry)
            raise
        self.log(f"  Added {name} ({ident})")
        return entry

    async def add(
        self, identifier: str, pinned_tag: str | None = None, force: bool = False
    ) -> OperationResult:
        """Track ``identifier`` after checking it has a release matching the filters.

        ``force`` skips the compatibility check; the repository must still exist.
        """
        try:
            entry = await self._add_one(identifier, pinned_tag, force)
        except ValueError as e:
            return OperationResult(False, str(e))
        except ModManagerError as e:
            return self._fail(e)
        return OperationResult(True, f"Added {entry.name}", value=entry)

    async def add_many(self, identifiers: list[str], force: bool = False) -> BatchReport:
        """Add several identifiers in order.

        A failure is recorded against its identifier and the rest continue;
        a global failure stops the run and lists the remaining identifiers
        as skipped.
        """
        report = BatchReport()
        if self.fetcher is not None:
            self.fetcher.coordinator.new_batch()
        for identifier in identifiers:
            if report.global_error is not None:
                report.skipped.append(identifier)
                continue
            try:
                entry = await self._add_one(identifier, None, force)
            except ValueError as e:
                report.results[identifier] = OperationResult(False, str(e))
            except ModManagerError as e:
                if e.GLOBAL:
                    report.global_error = e
                    report.skipped.append(identifier)
                    self.log(f"Aborting: {e}")
                    continue
                report.results[identifier] = self._fail(e)
            else:
                report.results[identifier] = OperationResult(True, f"Added {entry.name}", value=entry)

        ok = sum(1 for r in report.results.values() if r.ok)
        self.log(
            f"Done: {ok} added, {len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report

    def remove(self, name: str, keep_files: bool = False) -> OperationResult:
        try:
            entry = self._get(name)
        except ModManagerError as e:
            return self._fail(e)

        self.log(f"Removing {entry.name}...")
        removed = 0
        try:
            if not keep_files and entry.enabled:
                for rel in sorted(entry.installed_files):
                    fp = self.game_root / rel
                    if fp.exists():
                        remove_path(fp)
                        removed += 1
                        self.log(f"  Removed: {rel}")
                    else:
                        self.log(f"  Already missing: {rel}")
                    prune_empty_dirs(fp.parent, self.state.prune_stop(rel))
            elif not keep_files:
                removed = len(entry.installed_files)
                self.state.purge(entry)
        except OSError as e:
            return self._fail(StorageError(f"{entry.name}: could not delete files: {e}"))

        self.profile.mods.remove(entry)
        try:
            self._save()
        except ModManagerError as e:
            return self._fail(e)
        self.log(f"  Removed {entry.name} from the profile")
        return OperationResult(True, f"Removed {entry.name} ({removed} file(s) deleted)")

    # ── Select ────────────────────────────────────────────────────────

    async def _select_for(self, entry: ModEntry, filters: list[Filter] | None = None) -> Selection:
        fetcher = self._require_fetcher()
        if entry.pinned_tag:
            releases = [await fetcher.fetch_release(entry.identifier, entry.pinned_tag)]
        else:
            releases = await fetcher.fetch(entry.identifier)
        filters = self.filters if filters is None else filters
        candidates = build_candidates(releases, await self.game_version_lines(filters))
        return await select(releases, candidates, filters, self.resolver, self.minor_fallback)

    async def game_version_lines(self, filters: list[Filter]) -> set[str]:
        """``major.minor`` lines that name real game versions.

        Taken from the version tag source plus every version the profile or
        its filters mention, so an asset's own version number is not read as
        a game version.
        """
        await self.resolver.ensure_loaded()
        versions = set(self.resolver.known_versions())
        versions.add(self.profile.game_version)
        for filter_ in filters:
            if isinstance(filter_, (GameVersionStrict, GameVersionMinor)):
                versions.update(filter_.versions)
        return version_lines(versions)

    async def select(self, identifier: str, filters: list[Filter] | None = None) -> OperationResult:
        """Choose the asset ``identifier`` would install, without installing."""
        try:
            entry = self.profile.find_mod(identifier)
            if entry is None:
                entry = ModEntry(identifier=ModIdentifier.parse(identifier), name=identifier)
            selection = await self._select_for(entry, filters)
        except ValueError as e:
            return OperationResult(False, str(e))
        except ModManagerError as e:
            return self._fail(e)
        return OperationResult(
            True,
            f"{selection.asset.filename} from {selection.release_tag}",
            value=selection,
        )

    # ── Install ───────────────────────────────────────────────────────

    async def _install_archive(
        self,
        entry: ModEntry,
        archive: Path,
        tag: str | None,
        lock: asyncio.Lock,
        force: bool = False,
    ) -> OperationResult:
        if not entry.enabled:
            return OperationResult(True, f"{entry.name} is disabled; skipped")

        await asyncio.to_thread(self.ensure_layout)
        staging = self.staging_root / sanitize_name(f"{entry.name}-{archive.stem}")
        policy = ConflictPolicy.OVERWRITE if force else self.conflict_policy
        self.log(f"Installing {entry.name} from {archive.name}...")
        try:
            await asyncio.to_thread(extract, archive, staging)
            plan = await asyncio.to_thread(normalize_layout, staging, archive.name, entry.name)
            self.log(f"  {len(plan)} file(s) to install")

            # Conflict check, writes and the manifest commit of one mod are
            # not interleaved with another mod's.
            async with lock:
                result = await asyncio.to_thread(
                    install_files, self.game_root, plan, entry, self.profile.mods, policy
                )
                previous = (set(entry.installed_files), entry.installed_asset, entry.installed_version_tag)
                try:
                    await asyncio.to_thread(store_archive, self.game_root, entry, archive)
                    commit_manifest(entry, result)
                    entry.installed_asset = archive.name
                    entry.installed_version_tag = tag or entry.installed_version_tag or "local"
                    self._save()
                except Exception:
                    revert_manifest(entry, result, previous[0])
                    entry.installed_asset, entry.installed_version_tag = previous[1], previous[2]
                    await asyncio.to_thread(rollback_install, self.game_root, result)
                    raise
                await asyncio.to_thread(finish_install, result)
        finally:
            await asyncio.to_thread(remove_tree, staging)

        warnings = []
        for path, loser in sorted(result.transferred.items()):
            warnings.append(f"{path} taken over from {loser.name}")
        for path in result.kept:
            warnings.append(f"{path} left with its current owner")
        for w in warnings:
            self.log(f"  WARNING: {w}")
        self.log(f"  Successfully installed {entry.name} ({len(result.written)} files)")
        return OperationResult(
            True,
            f"Installed {len(result.written)} file(s)",
            value=result.written,
            warnings=warnings,
        )

    async def install_from_archive(
        self, identifier: str, archive_path: str | Path, force: bool = False
    ) -> OperationResult:
        archive = Path(archive_path)
        try:
            entry = self._get(identifier)
            if not force and is_up_to_date(self.game_root, entry, archive.name):
                self.log(f"{entry.name} is up to date ({archive.name})")
                return OperationResult(True, "Already installed", value=set(entry.installed_files))
            return await self._install_archive(entry, archive, None, asyncio.Lock(), force)
        except ModManagerError as e:
            return self._fail(e)

    async def _upgrade_one(self, entry: ModEntry, lock: asyncio.Lock, force: bool) -> OperationResult:
        if not entry.enabled:
            return OperationResult(True, f"{entry.name} is disabled; skipped")

        self.log(f"Checking {entry.name} ({entry.identifier})...")
        selection = await self._select_for(entry)
        asset = selection.asset
        if not force and is_up_to_date(self.game_root, entry, asset.filename):
            self.log(f"  {entry.name} is up to date ({selection.release_tag})")
            return OperationResult(True, f"Up to date ({selection.release_tag})")

        stored = stored_archive(self.game_root, entry, asset.filename)
        if stored.is_file() and not force:
            self.log(f"  Using stored archive {asset.filename}")
            archive = stored
        else:
            archive = await self._require_fetcher().download(
                asset, self.staging_root / DOWNLOAD_DIR / sanitize_name(entry.name)
            )
        result = await self._install_archive(entry, archive, selection.release_tag, lock, force)
        result.message = f"{selection.release_tag}: {result.message}"
        return result

    async def _local_one(self, entry: ModEntry, lock: asyncio.Lock, force: bool) -> OperationResult:
        if not entry.installed_asset:
            return OperationResult(True, f"{entry.name} has no stored archive; skipped")
        stored = stored_archive(self.game_root, entry, entry.installed_asset)
        if not stored.is_file():
            return OperationResult(False, f"Stored archive missing: {stored}")
        if not force and is_up_to_date(self.game_root, entry, stored.name):
            return OperationResult(True, "Already installed")
        return await self._install_archive(entry, stored, entry.installed_version_tag, lock, force)

    # ── Batches ───────────────────────────────────────────────────────

    async def _run_batch(self, entries: list[ModEntry], worker: Worker) -> BatchReport:
        report = BatchReport()
        semaphore = asyncio.Semaphore(self.parallel_tasks)
        lock = asyncio.Lock()
        if self.fetcher is not None:
            self.fetcher.coordinator.new_batch()

        if self.staging_root.exists():
            _log.info("removing stale staging directory %s", self.staging_root)
            await asyncio.to_thread(remove_tree, self.staging_root)

        async def run(entry: ModEntry):
            async with semaphore:
                if report.global_error is not None:
                    report.skipped.append(entry.name)
                    return
                try:
                    result = await worker(entry, lock)
                except ModManagerError as e:
                    if e.GLOBAL:
                        if report.global_error is None:
                            report.global_error = e
                            self.log(f"Aborting: {e}")
                        report.skipped.append(entry.name)
                        return
                    result = self._fail(e)
                except Exception as e:
                    _log.exception("unexpected failure while processing %s", entry.name)
                    result = OperationResult(False, f"Unexpected error: {e}")
                report.results[entry.name] = result

        await asyncio.gather(*(run(e) for e in entries))

        order = [e.name for e in entries]
        report.results = {n: report.results[n] for n in order if n in report.results}
        report.skipped.sort(key=order.index)
        if self.staging_root.exists():
            await asyncio.to_thread(remove_tree, self.staging_root)

        ok = sum(1 for r in report.results.values() if r.ok)
        self.log(
            f"Done: {ok} succeeded, {len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report

    async def upgrade(self, force: bool = False) -> BatchReport:
        """Select, download and install the newest matching asset of every mod."""
        return await self._run_batch(
            list(self.profile.mods),
            lambda entry, lock: self._upgrade_one(entry, lock, force),
        )

    async def install_local(self, force: bool = False) -> BatchReport:
        """Reinstall every mod from its archive in ``MODS/`` without network access."""
        return await self._run_batch(
            list(self.profile.mods),
            lambda entry, lock: self._local_one(entry, lock, force),
        )

    # ── Enable / disable ──────────────────────────────────────────────

    def disable(self, name: str) -> OperationResult:
        try:
            entry = self._get(name)
            self.log(f"Disabling {entry.name}...")
            transition = self.state.disable(entry)
            if transition.changed:
                self._save()
        except ModManagerError as e:
            return self._fail(e)
        return self._transition_result(entry, transition, "Disabled")

    def enable(self, name: str) -> OperationResult:
        try:
            entry = self._get(name)
            self.log(f"Enabling {entry.name}...")
            transition = self.state.enable(entry, self.profile.mods)
            if transition.changed:
                self._save()
        except ModManagerError as e:
            return self._fail(e)
        return self._transition_result(entry, transition, "Enabled")

    def _transition_result(self, entry, transition, verb: str) -> OperationResult:
        if not transition.changed:
            return OperationResult(True, f"{entry.name} is already {verb.lower()}")
        warnings = []
        if transition.warning is not None:
            warnings.append(str(transition.warning))
            self.log(f"  WARNING: {transition.warning}")
        return OperationResult(
            True,
            f"{verb} {entry.name} ({len(transition.moved)} file(s) moved)",
            value=transition.moved,
            warnings=warnings,
        )
