from __future__ import annotations

import time

import pytest
from fakes import FakeTransport, fake_gateway

from triage_bot.errors import ToolError, ToolInvocationError
from triage_bot.store import MemoryContextStore
from triage_bot.tools.builtin import ToolContext, default_builtin_tools, unlocks_restricted_tools
from triage_bot.tools.gateway import ToolGateway, build_catalog, render_call_result
from triage_bot.types import MessageRecord, ToolResult


def test_catalog_namespaces_colliding_names():
    catalog = build_catalog(
        {
            "jira": [{"name": "search", "description": "Search issues"}, {"name": "get_issue"}],
            "wiki": [{"name": "search"}],
        },
        default_builtin_tools(),
    )
    names = catalog.names()
    assert "jira__search" in names and "wiki__search" in names
    assert "search" not in names
    assert "get_issue" in names
    assert catalog.get("jira__search").remote_name == "search"
    assert catalog.get("remember_fact").restricted is True
    assert "remember_fact" not in catalog.offered(include_restricted=False).names()


def test_builtin_names_win_over_remote_duplicates():
    catalog = build_catalog({"slack": [{"name": "react"}]}, default_builtin_tools())
    assert catalog.get("react").server == "builtin"
    assert catalog.get("slack__react").remote_name == "react"


def test_render_call_result_flattens_content():
    text, structured = render_call_result(
        {
            "content": [
                {"type": "text", "text": "first"},
                {"type": "image", "data": "..."},
                {"type": "resource", "resource": {"uri": "file:///x", "text": "body"}},
            ],
            "structuredContent": {"n": 1},
        }
    )
    assert text == "first\n[image content omitted]\nbody"
    assert structured == {"n": 1}


@pytest.mark.asyncio
async def test_discover_skips_unavailable_servers_and_caches():
    transports = {
        "jira": FakeTransport("jira", [{"name": "get_issue"}]),
        "down": FakeTransport("down", [{"name": "never"}], fail=True),
    }
    gateway = fake_gateway(transports)
    catalog = await gateway.discover()
    assert "get_issue" in catalog.names()
    assert "never" not in catalog.names()
    assert await gateway.discover() is catalog

    result = await gateway.invoke("get_issue", {"key": "OPS-1"})
    assert isinstance(result, ToolResult)
    assert result.content == "jira:get_issue"
    assert transports["jira"].calls == [("get_issue", {"key": "OPS-1"})]

    await gateway.aclose()
    assert transports["jira"].closed is True
    assert transports["down"].closed is True


@pytest.mark.asyncio
async def test_unknown_tool_is_an_error_value():
    gateway = fake_gateway({})
    await gateway.discover()
    result = await gateway.invoke("does_not_exist", {})
    assert isinstance(result, ToolError)
    assert result.kind == "unknown_tool"
    assert result.to_payload()["ok"] is False


@pytest.mark.asyncio
async def test_timeout_returns_within_one_interval():
    gateway = fake_gateway({"slow": FakeTransport("slow", [{"name": "crawl"}], {"crawl": "hang"})})
    await gateway.discover()

    started = time.monotonic()
    result = await gateway.invoke("crawl", {}, timeout=0.2)
    elapsed = time.monotonic() - started

    assert isinstance(result, ToolError)
    assert result.kind == "timeout"
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_tool_errors_and_transport_errors_are_reported():
    transports = {
        "svc": FakeTransport(
            "svc",
            [{"name": "explode"}, {"name": "refuse"}, {"name": "crash"}],
            {
                "explode": {"isError": True, "content": [{"type": "text", "text": "no such ticket"}]},
                "refuse": ToolInvocationError("pipe closed", kind="transport"),
                "crash": RuntimeError("boom"),
            },
        )
    }
    gateway = fake_gateway(transports)
    await gateway.discover()

    explode = await gateway.invoke("explode", {})
    assert (explode.kind, explode.message) == ("tool", "no such ticket")
    assert (await gateway.invoke("refuse", {})).kind == "transport"
    crash = await gateway.invoke("crash", {})
    assert crash.kind == "transport"
    assert "boom" in crash.message


@pytest.mark.asyncio
async def test_builtin_mutations_are_recorded_not_applied():
    store = MemoryContextStore()
    gateway = ToolGateway([])
    await gateway.discover()
    context = ToolContext(channel_id="C1", author="U1", store=store)

    remembered = await gateway.invoke("remember_fact", {"text": "FooService owns bar-api"}, context=context)
    assert remembered.ok
    await gateway.invoke("set_oncall", {"topic": "payments", "identity": "U2"}, context=context)
    await gateway.invoke("tag_users", {"identities": ["U2", "U2", "S9"]}, context=context)
    await gateway.invoke("react", {"emoji": ":eyes:"}, context=context)

    assert context.mutations.facts == ["FooService owns bar-api"]
    assert context.mutations.oncall == {"payments": "U2"}
    assert context.mutations.tags == ["U2", "S9"]
    assert context.mutations.reaction == "eyes"
    assert await store.list_facts("C1") == []

    bad = await gateway.invoke("remember_fact", {"text": ""}, context=context)
    assert bad.kind == "invalid_arguments"


@pytest.mark.asyncio
async def test_builtin_search_reads_the_store():
    store = MemoryContextStore()
    await store.record_message(MessageRecord("C1", "1.0", "U1", "deploy pipeline stuck"))
    gateway = ToolGateway([])
    await gateway.discover()
    context = ToolContext(channel_id="C1", author="U1", store=store, message_ts="2.0")

    result = await gateway.invoke("search_messages", {"query": "pipeline"}, context=context)
    assert '"ts": "1.0"' in result.content


def test_restricted_tools_unlock_on_keywords():
    assert unlocks_restricted_tools("Please REMEMBER that X")
    assert unlocks_restricted_tools("who is on-call for db?")
    assert not unlocks_restricted_tools("why is my build failing")
