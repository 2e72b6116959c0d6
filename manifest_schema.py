"""
Persisted schema for the mod manager.

The config file holds one or more profiles; each profile owns a game root,
the declared game version, its default filters, and an ordered list of mod
entries.  A mod entry's ``installed_files`` is the ownership manifest: the
set of game-root-relative paths that mod placed on disk.

Example config:

{
    "schema_version": "1.0",
    "active_profile": 0,
    "profiles": [
        {
            "name": "default",
            "game_root": "/home/me/.spt",
            "game_version": "3.10",
            "filters": [{"kind": "game_version_minor", "versions": ["3.10"]}],
            "conflict_policy": "fail",
            "mods": [
                {
                    "identifier": {"owner": "acme", "repo_name": "BetterLoot"},
                    "name": "BetterLoot",
                    "installed_version_tag": "v1.2.0",
                    "installed_asset": "BetterLoot-1.2.0.zip",
                    "installed_files": ["BepInEx/plugins/BetterLoot.dll"],
                    "enabled": true
                }
            ]
        }
    ]
}

Server mods additionally ship a ``package.json`` inside ``user/mods/<mod>/``
carrying name / version / compatible game version; ``ModPackageInfo`` reads
that file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path, PurePosixPath
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

CURRENT_VERSION = (1, 0)  # (major, minor) supported by this build
PACKAGE_INFO_FILENAME = "package.json"

ConflictPolicyName = Literal["fail", "overwrite", "keep_existing"]

_log = logging.getLogger(__name__)


class ModIdentifier(BaseModel):
    """``owner/repo`` of a GitHub repository.  Compared case-insensitively."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo_name: str

    @field_validator("owner", "repo_name")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v:
            raise ValueError(f"Invalid identifier component {v!r}")
        return v

    @classmethod
    def parse(cls, text: str) -> ModIdentifier:
        parts = text.strip().split("/")
        if len(parts) != 2 or not all(p.strip() for p in parts):
            raise ValueError(
                f"Invalid identifier format: {text!r}. Expected format: 'owner/repo'"
            )
        return cls(owner=parts[0], repo_name=parts[1])

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo_name}".lower()

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo_name}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModIdentifier):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


class ModEntry(BaseModel):
    """One mod tracked by a profile."""

    identifier: ModIdentifier
    name: str
    installed_version_tag: str | None = None
    installed_asset: str | None = None
    installed_files: set[str] = Field(default_factory=set)
    enabled: bool = True
    pinned_tag: str | None = None

    @field_validator("installed_files", mode="before")
    @classmethod
    def _normalize_paths(cls, v: Any) -> Any:
        if v is None:
            return set()
        out = set()
        for raw in v:
            path = str(raw).replace("\\", "/").strip("/")
            pure = PurePosixPath(path)
            if not path or pure.is_absolute() or ".." in pure.parts:
                raise ValueError(f"Invalid manifest path {raw!r}")
            out.add(pure.as_posix())
        return out

    @field_serializer("installed_files")
    def _sorted_files(self, v: set[str]) -> list[str]:
        return sorted(v)

    @property
    def is_installed(self) -> bool:
        return self.installed_version_tag is not None

    def matches(self, name_or_id: str) -> bool:
        """Whether ``name_or_id`` refers to this mod (name or owner/repo)."""
        needle = name_or_id.strip().lower()
        return (
            self.name.lower() == needle
            or self.identifier.key == needle
            or self.identifier.repo_name.lower() == needle
        )


class Profile(BaseModel):
    """A game install plus the mods managed inside it."""

    name: str
    game_root: Path
    game_version: str
    filters: list[dict[str, Any]] = Field(default_factory=list)
    conflict_policy: ConflictPolicyName = "fail"
    mods: list[ModEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_identifiers(self) -> Profile:
        seen: set[str] = set()
        for mod in self.mods:
            if mod.identifier.key in seen:
                raise ValueError(f"Duplicate mod identifier: {mod.identifier}")
            seen.add(mod.identifier.key)
        return self

    @model_validator(mode="after")
    def _default_filters(self) -> Profile:
        if not self.filters:
            self.filters = [
                {"kind": "game_version_minor", "versions": [self.game_version]}
            ]
        return self

    def find_mod(self, name_or_id: str) -> ModEntry | None:
        for mod in self.mods:
            if mod.matches(name_or_id):
                return mod
        return None

    def find_by_identifier(self, identifier: ModIdentifier) -> ModEntry | None:
        for mod in self.mods:
            if mod.identifier == identifier:
                return mod
        return None


class AppConfig(BaseModel):
    """Top-level config file contents."""

    schema_version: str = "1.0"
    active_profile: int = 0
    profiles: list[Profile] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        try:
            major, minor = (int(x) for x in v.split("."))
        except ValueError:
            raise ValueError(
                f"Invalid schema_version {v!r}: expected 'major.minor' (e.g. '1.0')"
            )
        cur_major, cur_minor = CURRENT_VERSION
        if major > cur_major:
            raise ValueError(
                f"schema_version {v!r} requires a newer mod manager "
                f"(this build supports up to version {cur_major}.x)"
            )
        if major == cur_major and minor > cur_minor:
            _log.warning(
                "Config version %s is newer than this build supports (%d.%d); "
                "some fields may be ignored.",
                v, cur_major, cur_minor,
            )
        return v

    def active(self) -> Profile | None:
        if 0 <= self.active_profile < len(self.profiles):
            return self.profiles[self.active_profile]
        return None


class ModPackageInfo(BaseModel):
    """Parsed ``package.json`` of a server mod."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    version: str | None = None
    spt_version: str | None = Field(default=None, alias="sptVersion")
    author: str | None = None


def parse_package_info(data: bytes) -> ModPackageInfo:
    """Parse raw ``package.json`` bytes.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the bytes are not valid JSON.
    """
    return ModPackageInfo.model_validate(json.loads(data.decode("utf-8-sig")))
