"""MCP client sessions for configured servers.

Each transport owns one :class:`mcp.ClientSession`, opened over
``stdio_client`` for a local subprocess or ``streamablehttp_client`` for a
remote URL. The SDK context managers are entered and exited by a single
runner task per server, so a session opened during discovery can be closed
later from any task.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from datetime import timedelta
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from triage_bot import __version__
from triage_bot.errors import ToolInvocationError
from triage_bot.logging import get_logger

from .servers import LocalServer, RemoteServer, ServerConfig


logger = get_logger(__name__)

CLIENT_INFO = Implementation(name="triage-bot", version=__version__)

# JSON-RPC code the SDK uses when a request outlives read_timeout_seconds.
_REQUEST_TIMEOUT_CODE = 408
_CLOSE_TIMEOUT = 5.0


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _mcp_error(exc: McpError) -> ToolInvocationError:
    code = getattr(exc.error, "code", None)
    kind = "timeout" if code == _REQUEST_TIMEOUT_CODE else "tool"
    return ToolInvocationError(str(exc.error.message or exc), kind=kind)


class McpTransport:
    """One MCP server connection; subclasses choose the SDK stream pair."""

    name: str

    def __init__(self, name: str) -> None:
        self.name = name
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    def _streams(self) -> AbstractAsyncContextManager[Any]:
        raise NotImplementedError

    async def _run(self, ready: asyncio.Future[None]) -> None:
        try:
            async with self._streams() as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(read_stream, write_stream, client_info=CLIENT_INFO) as session:
                    self._session = session
                    ready.set_result(None)
                    await self._stop.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("MCP server %s connection ended: %s: %s", self.name, type(exc).__name__, exc)
        finally:
            self._session = None

    async def start(self) -> None:
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(ready), name=f"mcp-{self.name}")
        try:
            await ready
        except OSError as exc:
            raise ToolInvocationError(f"Could not start MCP server {self.name!r}: {exc}") from exc

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolInvocationError(f"MCP server {self.name!r} is not connected")
        return self._session

    async def initialize(self, *, timeout: float) -> dict[str, Any]:
        session = self._require_session()
        result = await asyncio.wait_for(session.initialize(), timeout)
        return _dump(result)

    async def list_tools(self, *, timeout: float) -> list[dict[str, Any]]:
        session = self._require_session()
        page = await asyncio.wait_for(session.list_tools(), timeout)
        tools = [_dump(tool) for tool in page.tools]
        while page.nextCursor:
            page = await asyncio.wait_for(session.list_tools(cursor=page.nextCursor), timeout)
            tools.extend(_dump(tool) for tool in page.tools)
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        session = self._require_session()
        try:
            result = await session.call_tool(name, arguments, read_timeout_seconds=timedelta(seconds=timeout))
        except McpError as exc:
            raise _mcp_error(exc) from exc
        return _dump(result)

    async def aclose(self) -> None:
        self._stop.set()
        runner, self._runner = self._runner, None
        if runner is None or runner.done():
            return
        try:
            await asyncio.wait_for(runner, _CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("MCP server %s did not close within %.0fs", self.name, _CLOSE_TIMEOUT)


class StdioTransport(McpTransport):
    def __init__(self, server: LocalServer) -> None:
        super().__init__(server.name)
        self.server = server

    def _streams(self) -> AbstractAsyncContextManager[Any]:
        params = StdioServerParameters(
            command=self.server.command,
            args=list(self.server.args),
            env=dict(self.server.env) or None,
            cwd=self.server.cwd,
        )
        return stdio_client(params)


class HttpTransport(McpTransport):
    def __init__(self, server: RemoteServer, *, timeout: float = 30.0) -> None:
        super().__init__(server.name)
        self.server = server
        self.timeout = timeout

    def _streams(self) -> AbstractAsyncContextManager[Any]:
        return streamablehttp_client(
            self.server.url,
            headers=dict(self.server.headers) or None,
            timeout=timedelta(seconds=self.timeout),
        )


def build_transport(server: ServerConfig) -> McpTransport:
    if isinstance(server, LocalServer):
        return StdioTransport(server)
    return HttpTransport(server)
