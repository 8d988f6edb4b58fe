from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol


_USER_ID_RE = re.compile(r"^[UW][A-Z0-9]{2,}$")
_GROUP_ID_RE = re.compile(r"^S[A-Z0-9]{2,}$")


@dataclass(frozen=True)
class PostResult:
    ok: bool
    ts: str | None = None
    error: str | None = None


class ChatTransport(Protocol):
    async def post(
        self,
        channel_id: str,
        text: str,
        tag_identities: Sequence[str] = (),
        thread_ts: str | None = None,
    ) -> PostResult: ...

    async def react(self, channel_id: str, ts: str, emoji: str) -> bool: ...


def format_mention(identity: str) -> str:
    """Render a Slack user or user-group id as a mention; other text passes through."""

    value = identity.strip()
    if value.startswith("<") and value.endswith(">"):
        return value
    bare = value.lstrip("@")
    if _USER_ID_RE.match(bare):
        return f"<@{bare}>"
    if _GROUP_ID_RE.match(bare):
        return f"<!subteam^{bare}>"
    return value if value.startswith("@") else f"@{value}"


def with_mentions(text: str, tag_identities: Sequence[str]) -> str:
    mentions = " ".join(format_mention(identity) for identity in tag_identities if identity.strip())
    if not mentions:
        return text
    return f"{mentions} {text}" if text else mentions


@dataclass
class PostedMessage:
    channel_id: str
    text: str
    thread_ts: str | None
    ts: str


@dataclass
class RecordingChatTransport:
    """Keeps posts and reactions in memory; used by ``triage-bot simulate``."""

    posts: list[PostedMessage] = field(default_factory=list)
    reactions: list[tuple[str, str, str]] = field(default_factory=list)
    fail_posts: bool = False

    async def post(
        self,
        channel_id: str,
        text: str,
        tag_identities: Sequence[str] = (),
        thread_ts: str | None = None,
    ) -> PostResult:
        if self.fail_posts:
            return PostResult(ok=False, error="posting disabled")
        ts = f"9{len(self.posts):09d}.000100"
        self.posts.append(PostedMessage(channel_id, with_mentions(text, tag_identities), thread_ts, ts))
        return PostResult(ok=True, ts=ts)

    async def react(self, channel_id: str, ts: str, emoji: str) -> bool:
        self.reactions.append((channel_id, ts, emoji))
        return True
