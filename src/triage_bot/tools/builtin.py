"""Tools the bot provides itself, alongside those discovered over MCP.

Mutating tools never touch the store: they record the requested change in
the run's :class:`~triage_bot.types.PendingMutations`, which the dispatcher
commits once the run finishes. Read-only tools query the context store.
"""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from triage_bot.errors import ToolInvocationError
from triage_bot.store.base import ContextStore
from triage_bot.types import PendingMutations


_EMOJI_RE = re.compile(r"^:?([a-z0-9_+\-]+):?$")

# Words in the user's message that unlock the memory-editing tools.
RESTRICTED_TRIGGERS = ("remember", "directive", "oncall", "on-call")


@dataclass
class ToolContext:
    channel_id: str
    author: str
    mutations: PendingMutations = field(default_factory=PendingMutations)
    store: ContextStore | None = None
    message_ts: str | None = None


Handler = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class BuiltinTool:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: Handler
    mutating: bool = False
    restricted: bool = False


def _required_text(arguments: dict[str, Any], key: str, *, limit: int = 4000) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolInvocationError(f"'{key}' must be a non-empty string", kind="invalid_arguments")
    value = value.strip()
    if len(value) > limit:
        raise ToolInvocationError(f"'{key}' must be at most {limit} characters", kind="invalid_arguments")
    return value


def _limit(arguments: dict[str, Any], default: int = 5, maximum: int = 20) -> int:
    raw = arguments.get("limit", default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return max(1, min(maximum, value))


def _terms(arguments: dict[str, Any]) -> list[str]:
    raw = arguments.get("query")
    if isinstance(raw, list):
        terms = [str(item) for item in raw if str(item).strip()]
    else:
        terms = [str(raw)] if isinstance(raw, str) and raw.strip() else []
    if not terms:
        raise ToolInvocationError("'query' must be a non-empty string", kind="invalid_arguments")
    return terms


def _need_store(ctx: ToolContext) -> ContextStore:
    if ctx.store is None:
        raise ToolInvocationError("context store is not available", kind="tool")
    return ctx.store


async def remember_fact(arguments: dict[str, Any], ctx: ToolContext) -> str:
    text = _required_text(arguments, "text")
    ctx.mutations.facts.append(text)
    return f"Recorded fact (saved after the reply): {text}"


async def supersede_fact(arguments: dict[str, Any], ctx: ToolContext) -> str:
    text = _required_text(arguments, "text")
    try:
        fact_id = int(arguments.get("fact_id"))
    except (TypeError, ValueError) as exc:
        raise ToolInvocationError("'fact_id' must be an integer", kind="invalid_arguments") from exc
    ctx.mutations.supersede[fact_id] = text
    return f"Recorded replacement for fact #{fact_id}."


async def set_channel_directive(arguments: dict[str, Any], ctx: ToolContext) -> str:
    ctx.mutations.directive = _required_text(arguments, "directive", limit=20_000)
    return "Recorded new channel directive (applied after the reply)."


async def set_oncall(arguments: dict[str, Any], ctx: ToolContext) -> str:
    topic = _required_text(arguments, "topic", limit=200)
    identity = arguments.get("identity")
    identity = identity.strip() if isinstance(identity, str) else ""
    ctx.mutations.oncall[topic] = identity
    return f"Recorded on-call for {topic}: {identity or '(cleared)'}"


async def tag_users(arguments: dict[str, Any], ctx: ToolContext) -> str:
    raw = arguments.get("identities")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        raise ToolInvocationError("'identities' must be a non-empty list", kind="invalid_arguments")
    for identity in raw:
        ctx.mutations.add_tag(str(identity))
    return "Will tag: " + ", ".join(ctx.mutations.tags)


async def react(arguments: dict[str, Any], ctx: ToolContext) -> str:
    emoji = _required_text(arguments, "emoji", limit=100).lower()
    match = _EMOJI_RE.match(emoji)
    if match is None:
        raise ToolInvocationError("'emoji' must be a Slack emoji name", kind="invalid_arguments")
    ctx.mutations.reaction = match.group(1)
    return f"Will react with :{ctx.mutations.reaction}:"


async def search_messages(arguments: dict[str, Any], ctx: ToolContext) -> str:
    store = _need_store(ctx)
    records = await store.search_messages(
        ctx.channel_id, _terms(arguments), _limit(arguments), exclude_ts=ctx.message_ts
    )
    return json.dumps(
        [
            {"ts": r.ts, "thread_ts": r.thread_ts, "author": r.author, "text": r.text, "kind": r.classification}
            for r in records
        ]
    )


async def search_facts(arguments: dict[str, Any], ctx: ToolContext) -> str:
    store = _need_store(ctx)
    facts = await store.search_facts(ctx.channel_id, _terms(arguments), _limit(arguments))
    return json.dumps([{"fact_id": f.fact_id, "text": f.text, "added_by": f.added_by} for f in facts])


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required, "additionalProperties": False}


_TEXT = {"type": "string"}
_LIMIT = {"type": "integer", "minimum": 1, "maximum": 20}
_QUERY = {"type": "string", "description": "Keywords to look for."}


def default_builtin_tools() -> tuple[BuiltinTool, ...]:
    return (
        BuiltinTool(
            "remember_fact",
            "Store a fact about this channel for future conversations.",
            _schema({"text": _TEXT}, ["text"]),
            remember_fact,
            mutating=True,
            restricted=True,
        ),
        BuiltinTool(
            "supersede_fact",
            "Replace an existing channel fact (by fact_id) with corrected text.",
            _schema({"fact_id": {"type": "integer"}, "text": _TEXT}, ["fact_id", "text"]),
            supersede_fact,
            mutating=True,
            restricted=True,
        ),
        BuiltinTool(
            "set_channel_directive",
            "Overwrite the standing instructions the bot follows in this channel.",
            _schema({"directive": _TEXT}, ["directive"]),
            set_channel_directive,
            mutating=True,
            restricted=True,
        ),
        BuiltinTool(
            "set_oncall",
            "Set (or clear, with an empty identity) the on-call owner for a topic or service.",
            _schema({"topic": _TEXT, "identity": _TEXT}, ["topic"]),
            set_oncall,
            mutating=True,
            restricted=True,
        ),
        BuiltinTool(
            "tag_users",
            "Mention users or groups at the top of the reply (Slack ids like U123 or S456).",
            _schema({"identities": {"type": "array", "items": _TEXT}}, ["identities"]),
            tag_users,
            mutating=True,
        ),
        BuiltinTool(
            "react",
            "Add an emoji reaction to the user's message.",
            _schema({"emoji": _TEXT}, ["emoji"]),
            react,
            mutating=True,
        ),
        BuiltinTool(
            "search_messages",
            "Search earlier messages in this channel.",
            _schema({"query": _QUERY, "limit": _LIMIT}, ["query"]),
            search_messages,
        ),
        BuiltinTool(
            "search_facts",
            "Search stored facts about this channel.",
            _schema({"query": _QUERY, "limit": _LIMIT}, ["query"]),
            search_facts,
        ),
    )


def unlocks_restricted_tools(message: str) -> bool:
    lowered = (message or "").lower()
    return any(trigger in lowered for trigger in RESTRICTED_TRIGGERS)
