"""
Error taxonomy for the mod manager.

Every failure the engine can report is a ``ModManagerError``.  Errors are
split into two propagation classes via the ``GLOBAL`` class attribute:

* mod-local errors (``GLOBAL = False``) are recorded against a single mod
  inside a batch and the batch continues with the remaining mods;
* global errors (``GLOBAL = True``) abort the whole batch and are reported
  exactly once.

``PartialMoveFailure`` is never raised out of a state transition; it is
carried on the transition result as a warning.
"""

from __future__ import annotations

from datetime import datetime


class ModManagerError(Exception):
    """Base exception for all mod manager operations."""

    GLOBAL = False


# ── Fetch / download layer ────────────────────────────────────────────


class NotFound(ModManagerError):
    """Raised when a repository (or pinned release) does not exist."""

    def __init__(self, identifier: str, detail: str = ""):
        self.identifier = identifier
        msg = f"{identifier}: repository not found"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class RateLimited(ModManagerError):
    """Raised when the shared GitHub request budget is exhausted."""

    GLOBAL = True

    def __init__(self, reset_at: datetime | None, identifier: str | None = None):
        self.reset_at = reset_at
        self.identifier = identifier
        when = reset_at.isoformat(timespec="seconds") if reset_at else "unknown"
        msg = f"GitHub API rate limit exhausted, resets at {when}"
        if identifier:
            msg = f"{identifier}: {msg}"
        super().__init__(msg)


class AuthError(ModManagerError):
    """Raised when GitHub rejects the supplied credentials."""

    GLOBAL = True


class NetworkError(ModManagerError):
    """Raised when a request or download fails at the transport level."""


# ── Selection layer ───────────────────────────────────────────────────


class InvalidFilter(ModManagerError):
    """Raised when a filter cannot be evaluated (e.g. a bad regex)."""


class FilterEmpty(ModManagerError):
    """One or more hard filters matched no candidate at all."""

    def __init__(self, filter_names: list[str]):
        self.filter_names = list(filter_names)
        super().__init__(
            "The following filter(s) matched nothing: " + ", ".join(self.filter_names)
        )

    @property
    def filter_name(self) -> str:
        return self.filter_names[0]


class IntersectFailure(ModManagerError):
    """Every filter matched something, but no candidate satisfies all of them."""

    def __init__(self, message: str = "No single asset satisfies every filter"):
        super().__init__(message)


# ── Unpack layer ──────────────────────────────────────────────────────


class UnsupportedArchiveFormat(ModManagerError):
    """Raised for a file whose container kind is not recognised."""

    def __init__(self, path: str, suffix: str):
        self.path = path
        self.suffix = suffix
        super().__init__(f"Unsupported archive format {suffix or '(none)'!r}: {path}")


class ExtractionFailure(ModManagerError):
    """Raised when a recognised archive cannot be decoded or installed."""

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Extraction failed for {path}: {detail}")


# ── Install / enable layer ────────────────────────────────────────────


class Conflict(ModManagerError):
    """A destination path is already owned by a different enabled mod."""

    def __init__(self, owner: str, incoming: str, path: str):
        self.owner = owner
        self.incoming = incoming
        self.path = path
        super().__init__(
            f"Conflict: {path!r} is owned by {owner!r} and would be written by {incoming!r}"
        )


class PartialMoveFailure(ModManagerError):
    """Warning: some manifest paths were missing during enable/disable."""

    def __init__(self, mod_name: str, missing: list[str]):
        self.mod_name = mod_name
        self.missing = list(missing)
        super().__init__(
            f"{mod_name}: {len(self.missing)} tracked file(s) were missing and not moved: "
            + ", ".join(self.missing)
        )


# ── Profile / storage ─────────────────────────────────────────────────


class AlreadyAdded(ModManagerError):
    """Raised when adding an identifier the profile already tracks."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"{identifier} has already been added to this profile")


class ModNotFound(ModManagerError):
    """Raised when a mod name or identifier is not present in the profile."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"A mod with ID or name {name!r} is not present in this profile")


class StorageError(ModManagerError):
    """Raised for filesystem failures on shared state (config, archive store)."""

    GLOBAL = True
