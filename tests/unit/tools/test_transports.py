from __future__ import annotations

import asyncio
import socket
import sys
import threading
import time
from pathlib import Path

import pytest
import uvicorn
from mcp_echo_server import build_server

from triage_bot.errors import ToolError, ToolInvocationError
from triage_bot.tools.gateway import ToolGateway
from triage_bot.tools.servers import LocalServer, RemoteServer
from triage_bot.tools.transports import HttpTransport, StdioTransport, build_transport
from triage_bot.types import ToolResult


ECHO_SERVER = Path(__file__).resolve().parents[2] / "mcp_echo_server.py"


def _local(name: str = "echo") -> LocalServer:
    return LocalServer(name=name, command=sys.executable, args=(str(ECHO_SERVER),))


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def http_server():
    port = _free_port()
    config = uvicorn.Config(build_server().streamable_http_app(), host="127.0.0.1", port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started:
        if time.monotonic() > deadline:
            raise RuntimeError("test MCP server did not start")
        time.sleep(0.05)
    yield RemoteServer(name="remote", url=f"http://127.0.0.1:{port}/mcp")
    server.should_exit = True
    thread.join(timeout=10)


def test_build_transport_picks_by_server_kind():
    assert isinstance(build_transport(RemoteServer(name="r", url="https://x")), HttpTransport)
    assert isinstance(build_transport(LocalServer(name="l", command="echo")), StdioTransport)


@pytest.mark.asyncio
async def test_stdio_transport_handshake_and_listing():
    transport = StdioTransport(_local())
    await transport.start()
    try:
        info = await transport.initialize(timeout=20)
        assert info["serverInfo"]["name"] == "echo"
        tools = await transport.list_tools(timeout=20)
        by_name = {tool["name"]: tool for tool in tools}
        assert {"echo", "add", "boom", "nap", "crash"} <= set(by_name)
        assert by_name["add"]["inputSchema"]["properties"].keys() >= {"a", "b"}

        result = await transport.call_tool("echo", {"text": "hi"}, timeout=10)
        assert result["isError"] is False
        assert result["content"][0] == {"type": "text", "text": "hi"}
    finally:
        await transport.aclose()
    # Closing twice is harmless.
    await transport.aclose()


@pytest.mark.asyncio
async def test_calls_before_start_fail_as_transport_errors():
    transport = StdioTransport(_local())
    with pytest.raises(ToolInvocationError) as excinfo:
        await transport.call_tool("echo", {"text": "hi"}, timeout=1)
    assert excinfo.value.kind == "transport"


@pytest.mark.asyncio
async def test_gateway_invokes_stdio_tools():
    gateway = ToolGateway([_local()], builtins=[], discovery_timeout=20)
    try:
        catalog = await gateway.discover()
        assert "echo" in catalog.names()

        echoed = await gateway.invoke("echo", {"text": "hello"}, timeout=10)
        assert isinstance(echoed, ToolResult)
        assert echoed.content == "hello"

        added = await gateway.invoke("add", {"a": 2, "b": 3}, timeout=10)
        assert added.content == "5"

        failed = await gateway.invoke("boom", {}, timeout=10)
        assert isinstance(failed, ToolError)
        assert failed.kind == "tool"
        assert "boom from server" in failed.message
    finally:
        await gateway.aclose()


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_session():
    gateway = ToolGateway([_local()], builtins=[], discovery_timeout=20)
    try:
        await gateway.discover()
        results = await asyncio.gather(
            *(gateway.invoke("echo", {"text": f"msg-{i}"}, timeout=10) for i in range(6))
        )
        assert [result.content for result in results] == [f"msg-{i}" for i in range(6)]
    finally:
        await gateway.aclose()


@pytest.mark.asyncio
async def test_slow_tool_times_out_within_one_interval():
    gateway = ToolGateway([_local()], builtins=[], discovery_timeout=20)
    try:
        await gateway.discover()
        started = time.monotonic()
        result = await gateway.invoke("nap", {"seconds": 30}, timeout=0.5)
        assert isinstance(result, ToolError)
        assert result.kind == "timeout"
        assert time.monotonic() - started < 5

        # The session stays usable after an abandoned call.
        again = await gateway.invoke("echo", {"text": "still here"}, timeout=10)
        assert again.content == "still here"
    finally:
        await gateway.aclose()


@pytest.mark.asyncio
async def test_server_exit_mid_call_is_reported_not_raised():
    gateway = ToolGateway([_local()], builtins=[], discovery_timeout=20)
    try:
        await gateway.discover()
        result = await gateway.invoke("crash", {}, timeout=3)
        assert isinstance(result, ToolError)
        assert result.kind in {"transport", "timeout", "tool"}
    finally:
        await asyncio.wait_for(gateway.aclose(), 15)


@pytest.mark.asyncio
async def test_missing_executable_is_skipped_at_discovery():
    missing = LocalServer(name="missing", command="/nonexistent/triage-bot-mcp-server")
    gateway = ToolGateway([missing, _local()], builtins=[], discovery_timeout=20)
    try:
        catalog = await gateway.discover()
        assert {spec.server for spec in catalog} == {"echo"}
    finally:
        await gateway.aclose()


@pytest.mark.asyncio
async def test_gateway_invokes_streamable_http_tools(http_server):
    gateway = ToolGateway([http_server], builtins=[], discovery_timeout=20)
    try:
        catalog = await gateway.discover()
        assert catalog.get("echo").server == "remote"

        results = await asyncio.gather(
            gateway.invoke("echo", {"text": "over http"}, timeout=10),
            gateway.invoke("add", {"a": 40, "b": 2}, timeout=10),
        )
        assert [result.content for result in results] == ["over http", "42"]

        failed = await gateway.invoke("boom", {}, timeout=10)
        assert failed.kind == "tool"
    finally:
        await gateway.aclose()


@pytest.mark.asyncio
async def test_unreachable_http_server_is_skipped():
    dead = RemoteServer(name="dead", url=f"http://127.0.0.1:{_free_port()}/mcp")
    gateway = ToolGateway([dead], builtins=[], discovery_timeout=5)
    try:
        catalog = await gateway.discover()
        assert len(catalog) == 0
    finally:
        await asyncio.wait_for(gateway.aclose(), 15)
