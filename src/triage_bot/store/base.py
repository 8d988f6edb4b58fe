"""Context store interface and the relevance scoring shared by implementations."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from triage_bot.types import (
    ChannelState,
    Classification,
    ContextFact,
    MessageRecord,
    PendingMutations,
    PipelineRun,
)


_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_.\-]*[a-z0-9]|[a-z0-9]")
_STOPWORDS = frozenset(
    "a an and are as at be but by can do for from how i in is it my of on or our so that the this to was we what "
    "when where which who why will with you your".split()
)

T = TypeVar("T")


def tokenize(text: str) -> set[str]:
    return {tok for tok in _TOKEN_RE.findall((text or "").lower()) if tok not in _STOPWORDS}


def overlap_score(query_tokens: set[str], text: str) -> float:
    if not query_tokens:
        return 0.0
    tokens = tokenize(text)
    if not tokens:
        return 0.0
    return len(query_tokens & tokens) / len(query_tokens)


def rank_by_overlap(items: Iterable[T], terms: Sequence[str], text_of, limit: int) -> list[T]:
    """Order ``items`` by token overlap with ``terms``; ties keep newest first.

    ``items`` must already be ordered newest first. Items with no overlap are
    dropped.
    """

    query = set()
    for term in terms:
        query |= tokenize(term)
    scored = [(overlap_score(query, text_of(item)), idx, item) for idx, item in enumerate(items)]
    scored = [entry for entry in scored if entry[0] > 0]
    scored.sort(key=lambda entry: (-entry[0], entry[1]))
    return [item for _, _, item in scored[: max(0, limit)]]


@dataclass(frozen=True)
class CommitResult:
    facts: tuple[ContextFact, ...] = ()
    directive_changed: bool = False
    oncall_changed: bool = False
    classified: bool = False
    channel: ChannelState | None = None
    superseded: tuple[int, ...] = field(default_factory=tuple)


class ContextStore(Protocol):
    """Durable per-channel state.

    Every method is a coroutine. Implementations raise
    :class:`triage_bot.errors.PersistenceError` when the backing store is
    unavailable; ``commit_mutations`` applies all-or-nothing.
    """

    async def get_channel(self, channel_id: str) -> ChannelState | None: ...

    async def get_or_create_channel(self, channel_id: str, default_directive: str) -> ChannelState: ...

    async def set_directive(self, channel_id: str, directive: str) -> ChannelState: ...

    async def append_fact(
        self, channel_id: str, text: str, added_by: str, *, supersedes: int | None = None
    ) -> ContextFact: ...

    async def list_facts(
        self, channel_id: str, *, include_superseded: bool = False, limit: int | None = None
    ) -> list[ContextFact]: ...

    async def search_facts(self, channel_id: str, terms: Sequence[str], limit: int = 10) -> list[ContextFact]: ...

    async def record_message(self, record: MessageRecord) -> bool: ...

    async def get_message(self, channel_id: str, ts: str) -> MessageRecord | None: ...

    async def recent_messages(
        self, channel_id: str, limit: int, *, thread_ts: str | None = None, exclude_ts: str | None = None
    ) -> list[MessageRecord]: ...

    async def search_messages(
        self, channel_id: str, terms: Sequence[str], limit: int = 10, *, exclude_ts: str | None = None
    ) -> list[MessageRecord]: ...

    async def set_classification(self, channel_id: str, ts: str, classification: Classification) -> bool: ...

    async def set_reply_ts(self, channel_id: str, ts: str, reply_ts: str) -> bool: ...

    async def commit_mutations(
        self,
        channel_id: str,
        mutations: PendingMutations,
        *,
        added_by: str,
        default_directive: str,
        message_ts: str | None = None,
        classification: Classification | None = None,
    ) -> CommitResult: ...

    async def save_run_trace(self, run: PipelineRun, status: str, *, error: str | None = None) -> None: ...

    async def aclose(self) -> None: ...


def merge_oncall(current: dict[str, str], updates: dict[str, str]) -> dict[str, str]:
    """Apply on-call updates; an empty identity removes the topic."""

    merged = dict(current)
    for topic, identity in updates.items():
        topic = topic.strip()
        if not topic:
            continue
        if identity and identity.strip():
            merged[topic] = identity.strip()
        else:
            merged.pop(topic, None)
    return merged


def validate_directive(directive: str) -> str:
    cleaned = (directive or "").strip()
    if not cleaned:
        raise ValueError("Channel directive must not be empty.")
    return cleaned
