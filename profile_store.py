"""
Loading and saving the JSON config file.

The file is validated with pydantic on load and written atomically (temp file
in the same directory, then ``os.replace``) so an interrupted save never
leaves a truncated config behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from manifest_schema import AppConfig
from mod_errors import StorageError

APP_DIR_NAME = "ghr-mod-manager"
CONFIG_FILENAME = "config.json"
CONFIG_ENV = "GHR_MODS_CONFIG"

_log = logging.getLogger(__name__)


def app_dir() -> Path:
    base = os.environ.get("APPDATA")
    if base:
        return Path(base) / APP_DIR_NAME
    return Path("~/.config").expanduser() / APP_DIR_NAME


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return app_dir() / CONFIG_FILENAME


def load_config(path: Path | None = None) -> AppConfig:
    """Read the config at ``path``; a missing file gives an empty config.

    Raises ``StorageError`` for unreadable or invalid files.
    """
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        _log.info("No config at %s; starting with an empty one", path)
        return AppConfig()
    try:
        raw = path.read_text(encoding="utf-8")
        config = AppConfig.model_validate(json.loads(raw))
    except OSError as exc:
        raise StorageError(f"Cannot read config {path}: {exc}") from exc
    except (json.JSONDecodeError, ValidationError) as exc:
        raise StorageError(f"Invalid config {path}: {exc}") from exc
    _log.debug("Loaded config %s (%d profile(s))", path, len(config.profiles))
    return config


def save_config(config: AppConfig, path: Path | None = None) -> None:
    path = Path(path) if path is not None else default_config_path()
    data = json.dumps(config.model_dump(mode="json"), indent=2, ensure_ascii=False)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.write("\n")
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise StorageError(f"Cannot write config {path}: {exc}") from exc
    _log.debug("Saved config %s", path)
