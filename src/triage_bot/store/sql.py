from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from triage_bot.errors import PersistenceError
from triage_bot.logging import get_logger
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
from .connect import get_session, sqlite_uri
from .models import Channel, ChannelFact, ChannelMessage, RunTrace


logger = get_logger(__name__)

T = TypeVar("T")

# Candidate window scanned by token-overlap search.
_SEARCH_WINDOW = 500


def _to_state(row: Channel) -> ChannelState:
    return ChannelState(
        channel_id=row.channel_id,
        directive=row.directive,
        oncall_map=dict(row.oncall_json or {}),
        updated_at=row.updated_at,
    )


def _to_fact(row: ChannelFact) -> ContextFact:
    return ContextFact(
        channel_id=row.channel_id,
        fact_id=int(row.id),
        text=row.text,
        added_by=row.added_by,
        created_at=row.created_at,
        supersedes=row.supersedes,
    )


def _to_message(row: ChannelMessage) -> MessageRecord:
    classification = row.classification_json or None
    return MessageRecord(
        channel_id=row.channel_id,
        ts=row.ts,
        author=row.author,
        text=row.text,
        thread_ts=row.thread_ts,
        classification=classification.get("kind") if isinstance(classification, dict) else None,
        reply_ts=row.reply_ts,
    )


class SqlContextStore:
    """SQLite-backed context store.

    SQLAlchemy sessions are blocking, so every operation runs in a worker
    thread. A call still running after ``timeout_seconds`` is logged and then
    awaited, never abandoned; SQLite's ``busy_timeout`` bounds lock waits.
    ``commit_mutations`` is one session and therefore one transaction.
    """

    def __init__(self, db_path: str | Path | None = None, *, timeout_seconds: float = 10.0) -> None:
        self.db_uri = sqlite_uri(db_path)
        self.timeout_seconds = float(timeout_seconds)

    async def _run(self, label: str, fn: Callable[..., T], *args: Any) -> T:
        work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(work), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                # Worker threads cannot be cancelled; the caller gets what actually happened.
                logger.warning("Store %s still running after %.1fs; waiting for it", label, self.timeout_seconds)
                return await work
        except SQLAlchemyError as exc:
            logger.warning("Store %s failed: %s", label, exc)
            raise PersistenceError(f"Context store {label} failed: {type(exc).__name__}") from exc

    # Channels

    def _channel_row(self, db: Session, channel_id: str) -> Channel | None:
        return db.execute(select(Channel).where(Channel.channel_id == channel_id)).scalar_one_or_none()

    def _ensure_channel(self, db: Session, channel_id: str, default_directive: str) -> Channel:
        row = self._channel_row(db, channel_id)
        if row is None:
            row = Channel(channel_id=channel_id, directive=validate_directive(default_directive), oncall_json={})
            db.add(row)
            db.flush()
        return row

    def _get_channel(self, channel_id: str) -> ChannelState | None:
        with get_session(self.db_uri) as db:
            row = self._channel_row(db, channel_id)
            return _to_state(row) if row is not None else None

    async def get_channel(self, channel_id: str) -> ChannelState | None:
        return await self._run("get_channel", self._get_channel, channel_id)

    def _get_or_create_channel(self, channel_id: str, default_directive: str) -> ChannelState:
        try:
            with get_session(self.db_uri) as db:
                return _to_state(self._ensure_channel(db, channel_id, default_directive))
        except IntegrityError:
            # Another writer created the row first.
            with get_session(self.db_uri) as db:
                row = self._channel_row(db, channel_id)
                if row is None:
                    raise
                return _to_state(row)

    async def get_or_create_channel(self, channel_id: str, default_directive: str) -> ChannelState:
        return await self._run("get_or_create_channel", self._get_or_create_channel, channel_id, default_directive)

    def _set_directive(self, channel_id: str, directive: str) -> ChannelState:
        cleaned = validate_directive(directive)
        with get_session(self.db_uri) as db:
            row = self._ensure_channel(db, channel_id, cleaned)
            row.directive = cleaned
            row.updated_at = utcnow()
            db.flush()
            return _to_state(row)

    async def set_directive(self, channel_id: str, directive: str) -> ChannelState:
        return await self._run("set_directive", self._set_directive, channel_id, directive)

    # Facts

    def _insert_fact(self, db: Session, channel_id: str, text: str, added_by: str, supersedes: int | None) -> ChannelFact:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Fact text must not be empty.")
        row = ChannelFact(channel_id=channel_id, text=cleaned, added_by=added_by or "", supersedes=supersedes)
        db.add(row)
        db.flush()
        return row

    def _append_fact(self, channel_id: str, text: str, added_by: str, supersedes: int | None) -> ContextFact:
        with get_session(self.db_uri) as db:
            if self._channel_row(db, channel_id) is None:
                raise PersistenceError(f"Unknown channel {channel_id!r}")
            if supersedes is not None:
                old = db.get(ChannelFact, supersedes)
                if old is None or old.channel_id != channel_id:
                    raise ValueError(f"Fact {supersedes} does not exist in {channel_id}.")
            return _to_fact(self._insert_fact(db, channel_id, text, added_by, supersedes))

    async def append_fact(
        self, channel_id: str, text: str, added_by: str, *, supersedes: int | None = None
    ) -> ContextFact:
        return await self._run("append_fact", self._append_fact, channel_id, text, added_by, supersedes)

    def _active_facts_query(self, channel_id: str, include_superseded: bool):
        stmt = select(ChannelFact).where(ChannelFact.channel_id == channel_id)
        if not include_superseded:
            newer = aliased(ChannelFact)
            stmt = stmt.where(~select(newer.id).where(newer.supersedes == ChannelFact.id).exists())
        return stmt

    def _list_facts(self, channel_id: str, include_superseded: bool, limit: int | None) -> list[ContextFact]:
        stmt = self._active_facts_query(channel_id, include_superseded).order_by(ChannelFact.id.desc())
        if limit is not None:
            stmt = stmt.limit(max(0, int(limit)))
        with get_session(self.db_uri) as db:
            rows = db.execute(stmt).scalars().all()
            return [_to_fact(row) for row in reversed(rows)]

    async def list_facts(
        self, channel_id: str, *, include_superseded: bool = False, limit: int | None = None
    ) -> list[ContextFact]:
        return await self._run("list_facts", self._list_facts, channel_id, include_superseded, limit)

    def _search_facts(self, channel_id: str, terms: Sequence[str], limit: int) -> list[ContextFact]:
        stmt = self._active_facts_query(channel_id, False).order_by(ChannelFact.id.desc()).limit(_SEARCH_WINDOW)
        with get_session(self.db_uri) as db:
            facts = [_to_fact(row) for row in db.execute(stmt).scalars().all()]
        return rank_by_overlap(facts, terms, lambda fact: fact.text, limit)

    async def search_facts(self, channel_id: str, terms: Sequence[str], limit: int = 10) -> list[ContextFact]:
        return await self._run("search_facts", self._search_facts, channel_id, list(terms), limit)

    # Messages

    def _message_row(self, db: Session, channel_id: str, ts: str) -> ChannelMessage | None:
        stmt = select(ChannelMessage).where(ChannelMessage.channel_id == channel_id, ChannelMessage.ts == ts)
        return db.execute(stmt).scalar_one_or_none()

    def _record_message(self, record: MessageRecord) -> bool:
        try:
            with get_session(self.db_uri) as db:
                if self._message_row(db, record.channel_id, record.ts) is not None:
                    return False
                db.add(
                    ChannelMessage(
                        channel_id=record.channel_id,
                        ts=record.ts,
                        thread_ts=record.thread_ts,
                        author=record.author,
                        text=record.text,
                    )
                )
            return True
        except IntegrityError:
            return False

    async def record_message(self, record: MessageRecord) -> bool:
        return await self._run("record_message", self._record_message, record)

    def _get_message(self, channel_id: str, ts: str) -> MessageRecord | None:
        with get_session(self.db_uri) as db:
            row = self._message_row(db, channel_id, ts)
            return _to_message(row) if row is not None else None

    async def get_message(self, channel_id: str, ts: str) -> MessageRecord | None:
        return await self._run("get_message", self._get_message, channel_id, ts)

    def _recent_messages(
        self, channel_id: str, limit: int, thread_ts: str | None, exclude_ts: str | None
    ) -> list[MessageRecord]:
        if limit <= 0:
            return []
        stmt = select(ChannelMessage).where(ChannelMessage.channel_id == channel_id)
        if thread_ts is not None:
            stmt = stmt.where(or_(ChannelMessage.thread_ts == thread_ts, ChannelMessage.ts == thread_ts))
        if exclude_ts is not None:
            stmt = stmt.where(ChannelMessage.ts != exclude_ts)
        stmt = stmt.order_by(ChannelMessage.id.desc()).limit(int(limit))
        with get_session(self.db_uri) as db:
            rows = db.execute(stmt).scalars().all()
            return [_to_message(row) for row in reversed(rows)]

    async def recent_messages(
        self, channel_id: str, limit: int, *, thread_ts: str | None = None, exclude_ts: str | None = None
    ) -> list[MessageRecord]:
        return await self._run("recent_messages", self._recent_messages, channel_id, limit, thread_ts, exclude_ts)

    def _search_messages(
        self, channel_id: str, terms: Sequence[str], limit: int, exclude_ts: str | None
    ) -> list[MessageRecord]:
        stmt = select(ChannelMessage).where(ChannelMessage.channel_id == channel_id)
        if exclude_ts is not None:
            stmt = stmt.where(ChannelMessage.ts != exclude_ts)
        stmt = stmt.order_by(ChannelMessage.id.desc()).limit(_SEARCH_WINDOW)
        with get_session(self.db_uri) as db:
            records = [_to_message(row) for row in db.execute(stmt).scalars().all()]
        return rank_by_overlap(records, terms, lambda record: record.text, limit)

    async def search_messages(
        self, channel_id: str, terms: Sequence[str], limit: int = 10, *, exclude_ts: str | None = None
    ) -> list[MessageRecord]:
        return await self._run("search_messages", self._search_messages, channel_id, list(terms), limit, exclude_ts)

    def _classify_row(self, row: ChannelMessage | None, classification: Classification) -> bool:
        if row is None or row.classification_json is not None:
            return False
        row.classification_json = classification.to_dict()
        row.classified_at = utcnow()
        return True

    def _set_classification(self, channel_id: str, ts: str, classification: Classification) -> bool:
        with get_session(self.db_uri) as db:
            return self._classify_row(self._message_row(db, channel_id, ts), classification)

    async def set_classification(self, channel_id: str, ts: str, classification: Classification) -> bool:
        return await self._run("set_classification", self._set_classification, channel_id, ts, classification)

    def _set_reply_ts(self, channel_id: str, ts: str, reply_ts: str) -> bool:
        with get_session(self.db_uri) as db:
            row = self._message_row(db, channel_id, ts)
            if row is None or row.reply_ts is not None:
                return False
            row.reply_ts = reply_ts
            return True

    async def set_reply_ts(self, channel_id: str, ts: str, reply_ts: str) -> bool:
        return await self._run("set_reply_ts", self._set_reply_ts, channel_id, ts, reply_ts)

    # Commit

    def _commit_mutations(
        self,
        channel_id: str,
        mutations: PendingMutations,
        added_by: str,
        default_directive: str,
        message_ts: str | None,
        classification: Classification | None,
    ) -> CommitResult:
        with get_session(self.db_uri) as db:
            channel = self._ensure_channel(db, channel_id, default_directive)

            created: list[ChannelFact] = []
            for text in mutations.facts:
                created.append(self._insert_fact(db, channel_id, text, added_by, None))

            superseded: list[int] = []
            for old_id, text in mutations.supersede.items():
                old = db.get(ChannelFact, int(old_id))
                if old is None or old.channel_id != channel_id:
                    logger.warning("Skipping supersede of unknown fact %s in %s", old_id, channel_id)
                    continue
                created.append(self._insert_fact(db, channel_id, text, added_by, int(old_id)))
                superseded.append(int(old_id))

            directive_changed = False
            if mutations.directive is not None:
                directive = validate_directive(mutations.directive)
                if directive != channel.directive:
                    channel.directive = directive
                    directive_changed = True

            oncall_changed = False
            if mutations.oncall:
                merged = merge_oncall(dict(channel.oncall_json or {}), mutations.oncall)
                if merged != (channel.oncall_json or {}):
                    channel.oncall_json = merged
                    oncall_changed = True

            if directive_changed or oncall_changed:
                channel.updated_at = utcnow()

            classified = False
            if message_ts is not None and classification is not None:
                classified = self._classify_row(self._message_row(db, channel_id, message_ts), classification)

            db.flush()
            return CommitResult(
                facts=tuple(_to_fact(row) for row in created),
                directive_changed=directive_changed,
                oncall_changed=oncall_changed,
                classified=classified,
                channel=_to_state(channel),
                superseded=tuple(superseded),
            )

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
        return await self._run(
            "commit_mutations",
            self._commit_mutations,
            channel_id,
            mutations,
            added_by,
            default_directive,
            message_ts,
            classification,
        )

    # Traces

    def _save_run_trace(self, run: PipelineRun, status: str, error: str | None) -> None:
        with get_session(self.db_uri) as db:
            db.add(
                RunTrace(
                    run_id=run.run_id,
                    channel_id=run.event.channel_id,
                    message_ts=run.event.ts,
                    status=status,
                    iterations=run.iterations,
                    classification_json=run.classification.to_dict() if run.classification else None,
                    tools_json=[
                        {
                            "tool": item.tool_name,
                            "arguments": item.arguments,
                            "result": item.result,
                            "error": item.error,
                            "duration_ms": item.duration_ms,
                        }
                        for item in run.tool_invocations
                    ],
                    mutations_json=run.mutations.to_dict(),
                    reply=run.reply,
                    error=error,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                    duration_ms=run.duration_ms(),
                )
            )

    async def save_run_trace(self, run: PipelineRun, status: str, *, error: str | None = None) -> None:
        await self._run("save_run_trace", self._save_run_trace, run, status, error)

    def _list_run_traces(self, channel_id: str | None, limit: int) -> list[dict[str, Any]]:
        stmt = select(RunTrace)
        if channel_id is not None:
            stmt = stmt.where(RunTrace.channel_id == channel_id)
        stmt = stmt.order_by(RunTrace.id.desc()).limit(max(0, int(limit)))
        with get_session(self.db_uri) as db:
            return [
                {
                    "run_id": row.run_id,
                    "channel_id": row.channel_id,
                    "message_ts": row.message_ts,
                    "status": row.status,
                    "iterations": row.iterations,
                    "tools": list(row.tools_json or []),
                    "duration_ms": row.duration_ms,
                    "error": row.error,
                }
                for row in db.execute(stmt).scalars().all()
            ]

    async def list_run_traces(self, channel_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        return await self._run("list_run_traces", self._list_run_traces, channel_id, limit)

    async def aclose(self) -> None:
        return None
