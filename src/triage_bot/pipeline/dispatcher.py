from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field

from triage_bot.chat.base import ChatTransport
from triage_bot.errors import PersistenceError
from triage_bot.logging import get_logger
from triage_bot.store.base import CommitResult, ContextStore
from triage_bot.types import CLASSIFICATION_EMOJI, RunOutcome, RunStatus


logger = get_logger(__name__)

BEST_EFFORT_NOTE = "_(best effort: I couldn't save changes from this conversation.)_"

_COMMITTING = {RunStatus.answered, RunStatus.degraded, RunStatus.no_action}
_REACTING = {RunStatus.answered, RunStatus.degraded}


@dataclass
class DispatchReport:
    committed: bool = False
    posted: bool = False
    reply_ts: str | None = None
    reactions: list[str] = field(default_factory=list)
    degraded: bool = False
    errors: list[str] = field(default_factory=list)
    commit: CommitResult | None = None


class ActionDispatcher:
    """Apply a run outcome: persist, then post, then trace.

    Mutations and the message classification are written in one store
    transaction before anything is posted. A failed commit does not stop the
    reply, which goes out marked as best effort. Post failures are reported,
    never raised.
    """

    def __init__(
        self,
        store: ContextStore,
        chat: ChatTransport | None,
        *,
        default_directive_for: Callable[[str], str],
        trace_runs: bool = False,
    ) -> None:
        self.store = store
        self.chat = chat
        self.default_directive_for = default_directive_for
        self.trace_runs = trace_runs

    async def _commit(self, outcome: RunOutcome, report: DispatchReport) -> None:
        event = outcome.event
        has_classification = outcome.classification is not None and not outcome.classification.degraded
        if outcome.mutations.is_empty() and not has_classification:
            return
        try:
            report.commit = await self.store.commit_mutations(
                event.channel_id,
                outcome.mutations,
                added_by=event.author,
                default_directive=self.default_directive_for(event.channel_id),
                message_ts=event.ts,
                classification=outcome.classification if has_classification else None,
            )
            report.committed = True
        except (PersistenceError, ValueError) as exc:
            logger.warning("Commit failed for %s/%s: %s", event.channel_id, event.ts, exc)
            report.degraded = True
            report.errors.append(f"commit: {exc}")

    async def _post(self, outcome: RunOutcome, report: DispatchReport) -> None:
        event = outcome.event
        text = (outcome.reply or "").strip()
        if self.chat is None or not text or outcome.status == RunStatus.no_action:
            return
        if report.degraded:
            text = f"{text}\n\n{BEST_EFFORT_NOTE}"
        try:
            result = await self.chat.post(event.channel_id, text, outcome.tags, outcome.thread_ts)
        except Exception as exc:
            logger.exception("Posting reply to %s failed", event.channel_id)
            report.errors.append(f"post: {type(exc).__name__}: {exc}")
            return
        if not result.ok:
            logger.warning("Posting reply to %s failed: %s", event.channel_id, result.error)
            report.errors.append(f"post: {result.error}")
            return
        report.posted = True
        report.reply_ts = result.ts
        if result.ts:
            try:
                await self.store.set_reply_ts(event.channel_id, event.ts, result.ts)
            except PersistenceError as exc:
                logger.warning("Could not attach reply_ts to %s/%s: %s", event.channel_id, event.ts, exc)

    async def _react(self, outcome: RunOutcome, report: DispatchReport) -> None:
        if self.chat is None or outcome.status not in _REACTING:
            return
        wanted: list[str] = []
        if outcome.classification is not None and not outcome.classification.degraded:
            wanted.append(CLASSIFICATION_EMOJI[outcome.classification.kind])
        if outcome.mutations.reaction and outcome.mutations.reaction not in wanted:
            wanted.append(outcome.mutations.reaction)
        for emoji in wanted:
            try:
                if await self.chat.react(outcome.event.channel_id, outcome.event.ts, emoji):
                    report.reactions.append(emoji)
            except Exception as exc:
                logger.warning("Reaction %s on %s failed: %s", emoji, outcome.event.ts, exc)

    async def _trace(self, outcome: RunOutcome, report: DispatchReport) -> None:
        run = outcome.run
        logger.info(
            "run %s",
            json.dumps(
                {
                    "run_id": run.run_id if run else None,
                    "channel": outcome.event.channel_id,
                    "ts": outcome.event.ts,
                    "status": outcome.status.value,
                    "kind": outcome.classification.kind.value if outcome.classification else None,
                    "iterations": run.iterations if run else 0,
                    "tools": [item.tool_name for item in run.tool_invocations] if run else [],
                    "duration_ms": run.duration_ms() if run else None,
                    "committed": report.committed,
                    "posted": report.posted,
                    "errors": report.errors,
                },
                default=str,
            ),
        )
        if not self.trace_runs or run is None:
            return
        try:
            await self.store.save_run_trace(run, outcome.status.value, error=outcome.error)
        except PersistenceError as exc:
            logger.warning("Could not persist trace for run %s: %s", run.run_id, exc)

    async def apply(self, outcome: RunOutcome) -> DispatchReport:
        report = DispatchReport()
        if outcome.status in _COMMITTING:
            await self._commit(outcome, report)
        await self._post(outcome, report)
        await self._react(outcome, report)
        await self._trace(outcome, report)
        return report
