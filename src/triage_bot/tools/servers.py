"""Parse ``mcp.json`` into server definitions.

Both the ``servers`` map and the editor-style ``mcpServers`` map are read and
merged (``mcpServers`` wins on a name clash). An entry with ``command`` is a
local stdio server; an entry with ``url`` is a remote streamable-HTTP server.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from triage_bot.errors import ConfigurationError
from triage_bot.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class LocalServer:
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None


@dataclass(frozen=True)
class RemoteServer:
    name: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)


ServerConfig = LocalServer | RemoteServer


def _pairs(value: Any, *, where: str) -> dict[str, str]:
    """Accept ``{"K": "V"}`` or ``[["K", "V"], ...]``."""

    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, list):
        out: dict[str, str] = {}
        for item in value:
            if not isinstance(item, (list, tuple)) or len(item) != 2:
                raise ConfigurationError(f"{where}: expected [key, value] pairs")
            out[str(item[0])] = str(item[1])
        return out
    raise ConfigurationError(f"{where}: expected an object or a list of pairs")


def parse_server(name: str, entry: Any) -> ServerConfig:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"mcp server {name!r}: entry must be an object")
    if entry.get("command"):
        args = entry.get("args") or []
        if not isinstance(args, list):
            raise ConfigurationError(f"mcp server {name!r}: args must be a list")
        env = _pairs(entry.get("env"), where=f"mcp server {name!r} env")
        env.update(_pairs(entry.get("envs"), where=f"mcp server {name!r} envs"))
        return LocalServer(
            name=name,
            command=str(entry["command"]),
            args=tuple(str(arg) for arg in args),
            env=env,
            cwd=str(entry["cwd"]) if entry.get("cwd") else None,
        )
    if entry.get("url"):
        url = str(entry["url"]).strip()
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(f"mcp server {name!r}: url must be http(s)")
        return RemoteServer(name=name, url=url, headers=_pairs(entry.get("headers"), where=f"mcp server {name!r} headers"))
    raise ConfigurationError(f"mcp server {name!r}: needs either 'command' or 'url'")


def parse_mcp_config(data: Any) -> list[ServerConfig]:
    if not isinstance(data, dict):
        raise ConfigurationError("mcp config must be a JSON object")
    merged: dict[str, Any] = {}
    for section in ("servers", "mcpServers"):
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise ConfigurationError(f"mcp config {section!r} must be an object")
        merged.update(entries)
    return [parse_server(name, entry) for name, entry in merged.items()]


def load_mcp_config(path: str | Path) -> list[ServerConfig]:
    """Read server definitions; a missing file means no external tools."""

    resolved = Path(path).expanduser()
    if not resolved.exists():
        logger.info("No MCP config at %s; only built-in tools are available", resolved)
        return []
    try:
        data = json.loads(resolved.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{resolved} is not valid JSON: {exc}") from exc
    return parse_mcp_config(data)
