from __future__ import annotations

import itertools
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from triage_bot.errors import PersistenceError
from triage_bot.types import (
    ChannelState,
    Classification,
    ContextFact,
    MessageRecord,
    PendingMutations,
    PipelineRun,
    utcnow,
)

from .base import CommitResult, merge_oncall, rank_by_overlap, validate_directive


class MemoryContextStore:
    """In-process context store for tests and ``--memory`` runs.

    No awaits happen between reading and writing state, so each coroutine
    is atomic with respect to the event loop.
    """

    def __init__(self) -> None:
        self._channels: dict[str, ChannelState] = {}
        self._facts: list[ContextFact] = []
        self._messages: dict[tuple[str, str], MessageRecord] = {}
        self._classifications: dict[tuple[str, str], Classification] = {}
        self._order: list[tuple[str, str]] = []
        self._fact_ids = itertools.count(1)
        self.traces: list[dict[str, Any]] = []
        self.fail_writes = False

    def _check_writable(self) -> None:
        if self.fail_writes:
            raise PersistenceError("Context store is unavailable")

    async def get_channel(self, channel_id: str) -> ChannelState | None:
        state = self._channels.get(channel_id)
        return replace(state, oncall_map=dict(state.oncall_map)) if state else None

    async def get_or_create_channel(self, channel_id: str, default_directive: str) -> ChannelState:
        if channel_id not in self._channels:
            self._check_writable()
            self._channels[channel_id] = ChannelState(
                channel_id=channel_id, directive=validate_directive(default_directive), updated_at=utcnow()
            )
        return await self.get_channel(channel_id)  # type: ignore[return-value]

    async def set_directive(self, channel_id: str, directive: str) -> ChannelState:
        self._check_writable()
        cleaned = validate_directive(directive)
        state = self._channels.get(channel_id) or ChannelState(channel_id=channel_id, directive=cleaned)
        self._channels[channel_id] = replace(state, directive=cleaned, updated_at=utcnow())
        return await self.get_channel(channel_id)  # type: ignore[return-value]

    def _new_fact(self, channel_id: str, text: str, added_by: str, supersedes: int | None) -> ContextFact:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Fact text must not be empty.")
        return ContextFact(
            channel_id=channel_id,
            fact_id=next(self._fact_ids),
            text=cleaned,
            added_by=added_by or "",
            created_at=utcnow(),
            supersedes=supersedes,
        )

    async def append_fact(
        self, channel_id: str, text: str, added_by: str, *, supersedes: int | None = None
    ) -> ContextFact:
        self._check_writable()
        if channel_id not in self._channels:
            raise PersistenceError(f"Unknown channel {channel_id!r}")
        if supersedes is not None and not any(
            f.fact_id == supersedes and f.channel_id == channel_id for f in self._facts
        ):
            raise ValueError(f"Fact {supersedes} does not exist in {channel_id}.")
        fact = self._new_fact(channel_id, text, added_by, supersedes)
        self._facts.append(fact)
        return fact

    def _active(self, channel_id: str, include_superseded: bool) -> list[ContextFact]:
        hidden = set() if include_superseded else {f.supersedes for f in self._facts if f.supersedes is not None}
        return [f for f in self._facts if f.channel_id == channel_id and f.fact_id not in hidden]

    async def list_facts(
        self, channel_id: str, *, include_superseded: bool = False, limit: int | None = None
    ) -> list[ContextFact]:
        facts = self._active(channel_id, include_superseded)
        return facts[-limit:] if limit else ([] if limit == 0 else facts)

    async def search_facts(self, channel_id: str, terms: Sequence[str], limit: int = 10) -> list[ContextFact]:
        newest_first = list(reversed(self._active(channel_id, False)))
        return rank_by_overlap(newest_first, terms, lambda fact: fact.text, limit)

    def _with_classification(self, record: MessageRecord) -> MessageRecord:
        classification = self._classifications.get((record.channel_id, record.ts))
        return replace(record, classification=classification.kind.value) if classification else record

    async def record_message(self, record: MessageRecord) -> bool:
        key = (record.channel_id, record.ts)
        if key in self._messages:
            return False
        self._check_writable()
        self._messages[key] = replace(record, classification=None, reply_ts=None)
        self._order.append(key)
        return True

    async def get_message(self, channel_id: str, ts: str) -> MessageRecord | None:
        record = self._messages.get((channel_id, ts))
        return self._with_classification(record) if record else None

    def _channel_messages(self, channel_id: str, exclude_ts: str | None) -> list[MessageRecord]:
        return [
            self._with_classification(self._messages[key])
            for key in self._order
            if key[0] == channel_id and key[1] != exclude_ts
        ]

    async def recent_messages(
        self, channel_id: str, limit: int, *, thread_ts: str | None = None, exclude_ts: str | None = None
    ) -> list[MessageRecord]:
        if limit <= 0:
            return []
        records = self._channel_messages(channel_id, exclude_ts)
        if thread_ts is not None:
            records = [r for r in records if r.thread_ts == thread_ts or r.ts == thread_ts]
        return records[-limit:]

    async def search_messages(
        self, channel_id: str, terms: Sequence[str], limit: int = 10, *, exclude_ts: str | None = None
    ) -> list[MessageRecord]:
        newest_first = list(reversed(self._channel_messages(channel_id, exclude_ts)))
        return rank_by_overlap(newest_first, terms, lambda record: record.text, limit)

    def _classify(self, channel_id: str, ts: str, classification: Classification) -> bool:
        key = (channel_id, ts)
        if key not in self._messages or key in self._classifications:
            return False
        self._classifications[key] = classification
        return True

    async def set_classification(self, channel_id: str, ts: str, classification: Classification) -> bool:
        self._check_writable()
        return self._classify(channel_id, ts, classification)

    async def set_reply_ts(self, channel_id: str, ts: str, reply_ts: str) -> bool:
        self._check_writable()
        record = self._messages.get((channel_id, ts))
        if record is None or record.reply_ts is not None:
            return False
        self._messages[(channel_id, ts)] = replace(record, reply_ts=reply_ts)
        return True

    async def commit_mutations(
        self,
        channel_id: str,
        mutations: PendingMutations,
        *,
        added_by: str,
        default_directive: str,
        message_ts: str | None = None,
        classification: Classification | None = None,
    ) -> CommitResult:
        self._check_writable()
        # Validate and stage everything before touching shared state.
        state = self._channels.get(channel_id) or ChannelState(
            channel_id=channel_id, directive=validate_directive(default_directive), updated_at=utcnow()
        )
        directive = validate_directive(mutations.directive) if mutations.directive is not None else state.directive
        oncall = merge_oncall(state.oncall_map, mutations.oncall) if mutations.oncall else dict(state.oncall_map)

        known = {f.fact_id for f in self._facts if f.channel_id == channel_id}
        staged = [self._new_fact(channel_id, text, added_by, None) for text in mutations.facts]
        superseded = [int(old) for old in mutations.supersede if int(old) in known]
        staged += [
            self._new_fact(channel_id, mutations.supersede[old], added_by, int(old))
            for old in mutations.supersede
            if int(old) in known
        ]

        directive_changed = directive != state.directive
        oncall_changed = oncall != state.oncall_map
        new_state = replace(
            state,
            directive=directive,
            oncall_map=oncall,
            updated_at=utcnow() if (directive_changed or oncall_changed) else state.updated_at,
        )

        self._channels[channel_id] = new_state
        self._facts.extend(staged)
        classified = False
        if message_ts is not None and classification is not None:
            classified = self._classify(channel_id, message_ts, classification)

        return CommitResult(
            facts=tuple(staged),
            directive_changed=directive_changed,
            oncall_changed=oncall_changed,
            classified=classified,
            channel=replace(new_state, oncall_map=dict(new_state.oncall_map)),
            superseded=tuple(superseded),
        )

    async def save_run_trace(self, run: PipelineRun, status: str, *, error: str | None = None) -> None:
        self._check_writable()
        self.traces.append(
            {
                "run_id": run.run_id,
                "channel_id": run.event.channel_id,
                "message_ts": run.event.ts,
                "status": status,
                "iterations": run.iterations,
                "tools": [item.tool_name for item in run.tool_invocations],
                "error": error,
            }
        )

    async def list_run_traces(self, channel_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        traces = [t for t in reversed(self.traces) if channel_id is None or t["channel_id"] == channel_id]
        return traces[:limit]

    async def aclose(self) -> None:
        return None
