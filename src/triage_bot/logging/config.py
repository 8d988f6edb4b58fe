"""Persisted logging preferences for the triage bot.

The level chosen with ``triage-bot logging set-level`` is stored in a small
JSON file so that long-running bot processes pick it up on start. An explicit
``TRIAGE_BOT_LOG_LEVEL`` environment variable always wins over the file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any


def _config_path(config_file: os.PathLike[str] | str | None = None) -> Path:
    if config_file is not None:
        return Path(config_file)
    raw = (os.environ.get("TRIAGE_BOT_LOG_CONFIG") or "").strip()
    if raw:
        return Path(raw).expanduser()
    base = (os.environ.get("TRIAGE_BOT_CONFIG_DIR") or "").strip()
    root = Path(base).expanduser() if base else Path.home() / ".triage-bot"
    return root / "logging.json"


def load_config(config_file: os.PathLike[str] | str | None = None) -> dict[str, Any]:
    """Return the stored logging config; unreadable files count as empty."""

    path = _config_path(config_file)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(config: dict[str, Any], config_file: os.PathLike[str] | str | None = None) -> Path:
    path = _config_path(config_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path


def level_from_name(value: str | int | None) -> int | None:
    """Resolve ``"debug"``/``"INFO"``/``10`` into a numeric level."""

    if value is None:
        return None
    if isinstance(value, int):
        return value
    candidate = logging.getLevelName(str(value).strip().upper())
    return candidate if isinstance(candidate, int) else None


def load_log_level(config_file: os.PathLike[str] | str | None = None) -> int | None:
    env_level = level_from_name(os.environ.get("TRIAGE_BOT_LOG_LEVEL") or None)
    if env_level is not None:
        return env_level
    return level_from_name(load_config(config_file).get("log_level"))


def save_log_level(level: str | int, config_file: os.PathLike[str] | str | None = None) -> Path:
    numeric = level_from_name(level)
    if numeric is None:
        raise ValueError(f"Unknown logging level: {level!r}")
    config = load_config(config_file)
    config["log_level"] = logging.getLevelName(numeric)
    return save_config(config, config_file)


__all__ = ["load_config", "save_config", "load_log_level", "save_log_level", "level_from_name"]
