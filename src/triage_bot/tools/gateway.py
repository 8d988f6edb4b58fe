from __future__ import annotations

import asyncio
import json
import time
from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from triage_bot.errors import ToolError, ToolInvocationError
from triage_bot.logging import get_logger
from triage_bot.types import ToolResult

from .builtin import BuiltinTool, ToolContext, default_builtin_tools
from .servers import ServerConfig
from .transports import McpTransport, build_transport


logger = get_logger(__name__)

BUILTIN_SERVER = "builtin"
_RESULT_MAX_CHARS = 20_000


@dataclass(frozen=True)
class ToolSpec:
    name: str
    server: str
    remote_name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    mutating: bool = False
    restricted: bool = False

    def openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"{self.remote_name} ({self.server})",
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


@dataclass(frozen=True)
class ToolCatalog:
    """Immutable snapshot of the tools a run may call."""

    tools: tuple[ToolSpec, ...] = ()

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self.tools)

    def __len__(self) -> int:
        return len(self.tools)

    def get(self, name: str) -> ToolSpec | None:
        for spec in self.tools:
            if spec.name == name:
                return spec
        return None

    def names(self) -> list[str]:
        return [spec.name for spec in self.tools]

    def offered(self, *, include_restricted: bool) -> "ToolCatalog":
        return ToolCatalog(tuple(spec for spec in self.tools if include_restricted or not spec.restricted))

    def openai_tools(self) -> list[dict[str, Any]]:
        return [spec.openai_tool() for spec in self.tools]


def _sanitize(name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "_-" else "_" for ch in name)
    return cleaned[:64] or "tool"


def build_catalog(
    remote: dict[str, list[dict[str, Any]]],
    builtins: Sequence[BuiltinTool] = (),
) -> ToolCatalog:
    """Merge built-in and discovered tools.

    A name exposed by more than one source is namespaced as
    ``server__tool`` for every non-builtin source that exposes it.
    """

    counts: Counter[str] = Counter(tool.name for tool in builtins)
    for tools in remote.values():
        counts.update({str(t.get("name") or "") for t in tools})

    specs: list[ToolSpec] = [
        ToolSpec(
            name=tool.name,
            server=BUILTIN_SERVER,
            remote_name=tool.name,
            description=tool.description,
            input_schema=tool.parameters,
            mutating=tool.mutating,
            restricted=tool.restricted,
        )
        for tool in builtins
    ]
    for server, tools in sorted(remote.items()):
        for tool in tools:
            remote_name = str(tool.get("name") or "").strip()
            if not remote_name:
                continue
            exposed = remote_name if counts[remote_name] == 1 else f"{server}__{remote_name}"
            schema = tool.get("inputSchema")
            specs.append(
                ToolSpec(
                    name=_sanitize(exposed),
                    server=server,
                    remote_name=remote_name,
                    description=str(tool.get("description") or ""),
                    input_schema=schema if isinstance(schema, dict) else {"type": "object", "properties": {}},
                )
            )
    return ToolCatalog(tuple(specs))


def render_call_result(result: dict[str, Any]) -> tuple[str, Any]:
    """Flatten an MCP ``tools/call`` result into text plus structured content."""

    parts: list[str] = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind == "text":
            parts.append(str(item.get("text") or ""))
        elif kind == "resource" and isinstance(item.get("resource"), dict):
            resource = item["resource"]
            parts.append(str(resource.get("text") or resource.get("uri") or ""))
        elif kind == "resource_link":
            parts.append(str(item.get("uri") or ""))
        else:
            parts.append(f"[{kind} content omitted]")
    structured = result.get("structuredContent")
    text = "\n".join(part for part in parts if part)
    if not text and structured is not None:
        text = json.dumps(structured)
    if len(text) > _RESULT_MAX_CHARS:
        text = text[:_RESULT_MAX_CHARS] + "\n[truncated]"
    return text, structured


class ToolGateway:
    """Discovers and invokes tools across MCP servers and built-ins.

    ``invoke`` never raises for tool-level problems; timeouts, transport
    failures, tool errors and unknown names all come back as
    :class:`~triage_bot.errors.ToolError`.
    """

    def __init__(
        self,
        servers: Iterable[ServerConfig] = (),
        *,
        builtins: Sequence[BuiltinTool] | None = None,
        default_timeout: float = 30.0,
        discovery_timeout: float = 30.0,
        transport_factory=build_transport,
    ) -> None:
        self.servers = list(servers)
        self.builtins: dict[str, BuiltinTool] = {
            tool.name: tool for tool in (default_builtin_tools() if builtins is None else builtins)
        }
        self.default_timeout = float(default_timeout)
        self.discovery_timeout = float(discovery_timeout)
        self._transport_factory = transport_factory
        self._transports: dict[str, McpTransport] = {}
        self._catalog: ToolCatalog | None = None
        self._discovering: asyncio.Lock | None = None

    @property
    def catalog(self) -> ToolCatalog:
        return self._catalog or ToolCatalog()

    async def _connect(self, server: ServerConfig) -> tuple[McpTransport, list[dict[str, Any]]]:
        transport = self._transport_factory(server)
        try:
            await transport.start()
            await transport.initialize(timeout=self.discovery_timeout)
            tools = await transport.list_tools(timeout=self.discovery_timeout)
        except BaseException:
            await transport.aclose()
            raise
        return transport, tools

    async def _discover(self) -> tuple[dict[str, McpTransport], ToolCatalog]:
        results = await asyncio.gather(*(self._connect(server) for server in self.servers), return_exceptions=True)
        transports: dict[str, McpTransport] = {}
        remote: dict[str, list[dict[str, Any]]] = {}
        for server, outcome in zip(self.servers, results):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("MCP server %s unavailable: %s: %s", server.name, type(outcome).__name__, outcome)
                continue
            transport, tools = outcome
            transports[server.name] = transport
            remote[server.name] = tools
            logger.info("MCP server %s: %s tool(s)", server.name, len(tools))
        catalog = build_catalog(remote, list(self.builtins.values()))
        return transports, catalog

    async def discover(self) -> ToolCatalog:
        """Connect to every server once and cache the merged catalog."""

        if self._catalog is not None:
            return self._catalog
        if self._discovering is None:
            self._discovering = asyncio.Lock()
        async with self._discovering:
            if self._catalog is None:
                self._transports, self._catalog = await self._discover()
        return self._catalog

    async def refresh(self) -> ToolCatalog:
        """Reconnect and rebuild the catalog; the old one stays valid until the swap."""

        transports, catalog = await self._discover()
        old = self._transports
        self._transports, self._catalog = transports, catalog
        await self._close_all(old.values())
        return catalog

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
        *,
        context: ToolContext | None = None,
    ) -> ToolResult | ToolError:
        timeout = self.default_timeout if timeout is None else float(timeout)
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        spec = self.catalog.get(name) or (
            ToolSpec(name=name, server=BUILTIN_SERVER, remote_name=name) if name in self.builtins else None
        )
        if spec is None:
            return ToolError(name, "unknown_tool", f"No tool named {name!r}.", elapsed())

        try:
            if spec.server == BUILTIN_SERVER:
                if context is None:
                    return ToolError(name, "tool", "Built-in tools need a run context.", elapsed())
                output = await asyncio.wait_for(self.builtins[spec.remote_name].handler(arguments, context), timeout)
                content = output if isinstance(output, str) else json.dumps(output)
                return ToolResult(name, content, elapsed())

            transport = self._transports.get(spec.server)
            if transport is None:
                return ToolError(name, "transport", f"MCP server {spec.server!r} is not connected.", elapsed())
            result = await asyncio.wait_for(
                transport.call_tool(spec.remote_name, arguments, timeout=timeout), timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", name, timeout)
            return ToolError(name, "timeout", f"Tool {name!r} timed out after {timeout:g}s.", elapsed())
        except ToolInvocationError as exc:
            logger.warning("Tool %s failed (%s): %s", name, exc.kind, exc)
            return ToolError(name, exc.kind, str(exc), elapsed())
        except Exception as exc:
            logger.exception("Tool %s raised unexpectedly", name)
            kind = "tool" if spec.server == BUILTIN_SERVER else "transport"
            return ToolError(name, kind, f"{type(exc).__name__}: {exc}", elapsed())

        text, structured = render_call_result(result)
        if result.get("isError"):
            return ToolError(name, "tool", text or "Tool reported an error.", elapsed())
        return ToolResult(name, text, elapsed(), structured)

    async def _close_all(self, transports: Iterable[McpTransport]) -> None:
        for transport in list(transports):
            try:
                await transport.aclose()
            except Exception:
                logger.exception("Error closing MCP server %s", getattr(transport, "name", "?"))

    async def aclose(self) -> None:
        transports, self._transports = self._transports, {}
        self._catalog = None
        await self._close_all(transports.values())
