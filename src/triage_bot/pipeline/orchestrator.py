from __future__ import annotations

import asyncio
from collections.abc import Mapping

from triage_bot.config.settings import Settings
from triage_bot.errors import (
    APOLOGY_MESSAGE,
    FALLBACK_REPLY,
    ModelUnavailableError,
    PersistenceError,
    ShuttingDown,
    TransientExternalError,
)
from triage_bot.llm.prompts import DEFAULT_DIRECTIVE
from triage_bot.logging import get_logger
from triage_bot.store.base import ContextStore
from triage_bot.tools.gateway import ToolGateway
from triage_bot.types import (
    ChannelState,
    ContextFact,
    InboundEvent,
    MessageRecord,
    PendingMutations,
    PipelineRun,
    RunOutcome,
    RunStatus,
    utcnow,
)

from .assistant import AssistantStage
from .classify import ClassificationStage
from .commands import Command, acknowledgement, detect_command
from .dispatcher import ActionDispatcher
from .locks import ChannelLocks


logger = get_logger(__name__)

_FACTS_LIMIT = 10


class Orchestrator:
    """Turns one inbound event into one :class:`RunOutcome`.

    Events on the same channel are serialized by a per-channel lock; a global
    semaphore caps how many runs execute at once across channels, and excess
    events wait for a slot. The lock is held through dispatch so a channel's
    state and replies are applied in arrival order.
    """

    def __init__(
        self,
        *,
        store: ContextStore,
        classifier: ClassificationStage,
        assistant: AssistantStage,
        gateway: ToolGateway,
        dispatcher: ActionDispatcher | None = None,
        settings: Settings | None = None,
        locks: ChannelLocks | None = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.assistant = assistant
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self.locks = locks or ChannelLocks()
        self._slots = asyncio.Semaphore(self.settings.max_concurrent_runs)
        self._inflight: set[asyncio.Task] = set()
        self._closing = False

    # Directive resolution

    @property
    def channel_directives(self) -> Mapping[str, str]:
        return self.settings.channel_directives

    def default_directive(self, channel_id: str) -> str:
        override = (self.channel_directives.get(channel_id) or "").strip()
        if override:
            return override
        return (self.settings.system_directive or "").strip() or DEFAULT_DIRECTIVE

    # Entry points

    def submit(self, event: InboundEvent) -> asyncio.Task:
        """Schedule ``handle_event`` as a task tracked for shutdown."""

        task = asyncio.create_task(self.handle_event(event), name=f"run-{event.channel_id}-{event.ts}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle_event(self, event: InboundEvent, *, dispatch: bool = True) -> RunOutcome:
        if not event.channel_id:
            raise ValueError("event.channel_id must not be empty")
        if self._closing:
            return RunOutcome(RunStatus.failed, event, error=str(ShuttingDown("orchestrator is shutting down")))

        current = asyncio.current_task()
        if current is not None:
            self._inflight.add(current)
        try:
            async with self.locks.lock(event.channel_id):
                async with self._slots:
                    outcome = await self._process(event)
                    if dispatch and self.dispatcher is not None:
                        outcome.report = await self.dispatcher.apply(outcome)
                    return outcome
        finally:
            if current is not None:
                self._inflight.discard(current)

    # Steps

    async def _load_channel(self, event: InboundEvent) -> ChannelState:
        default = self.default_directive(event.channel_id)
        try:
            return await self.store.get_or_create_channel(event.channel_id, default)
        except PersistenceError as exc:
            logger.warning("Channel state unavailable for %s, using defaults: %s", event.channel_id, exc)
            return ChannelState(channel_id=event.channel_id, directive=default)

    async def _record(self, event: InboundEvent) -> bool:
        """Store the inbound message; False when ``(channel_id, ts)`` was already seen."""

        try:
            return await self.store.record_message(
                MessageRecord(
                    channel_id=event.channel_id,
                    ts=event.ts,
                    author=event.author,
                    text=event.text,
                    thread_ts=event.thread_ts,
                )
            )
        except PersistenceError as exc:
            logger.warning("Could not record message %s/%s: %s", event.channel_id, event.ts, exc)
            return True

    async def _run_command(self, event: InboundEvent, command: Command) -> RunOutcome:
        try:
            if command.kind == "remember":
                fact = await self.store.append_fact(event.channel_id, command.text, event.author)
                reply = acknowledgement(command, fact_id=fact.fact_id)
            elif command.kind == "set_directive":
                await self.store.set_directive(event.channel_id, command.text)
                reply = acknowledgement(command)
            else:
                await self.store.set_directive(event.channel_id, self.default_directive(event.channel_id))
                reply = acknowledgement(command)
        except (PersistenceError, ValueError) as exc:
            logger.warning("Command %s failed in %s: %s", command.kind, event.channel_id, exc)
            return RunOutcome(RunStatus.failed, event, reply=APOLOGY_MESSAGE, error=str(exc))
        logger.info("Applied %s command in %s", command.kind, event.channel_id)
        return RunOutcome(RunStatus.command, event, reply=reply)

    def should_respond(self, event: InboundEvent) -> bool:
        if event.mentions_bot or event.channel_type == "im":
            return True
        scope = self.settings.auto_respond
        if scope == "all":
            return True
        if scope == "top_level":
            return event.is_top_level
        return False

    async def _history(self, event: InboundEvent) -> list[MessageRecord]:
        try:
            return await self.store.recent_messages(
                event.channel_id, self.settings.history_limit, exclude_ts=event.ts
            )
        except PersistenceError as exc:
            logger.warning("History unavailable for %s: %s", event.channel_id, exc)
            return []

    async def _retrieve(self, run: PipelineRun) -> tuple[list[MessageRecord], list[ContextFact]]:
        event = run.event
        classification = run.classification
        terms = list(classification.search_terms) if classification else []
        search_results: list[MessageRecord] = []
        facts: list[ContextFact] = []
        try:
            if classification is not None and classification.needs_search:
                search_results = await self.store.search_messages(
                    event.channel_id, terms, limit=5, exclude_ts=event.ts
                )
            facts = await self.store.search_facts(event.channel_id, [*terms, event.text], limit=_FACTS_LIMIT)
            if not facts:
                facts = await self.store.list_facts(event.channel_id, limit=_FACTS_LIMIT)
        except PersistenceError as exc:
            logger.warning("Context retrieval failed for %s: %s", event.channel_id, exc)
        return search_results, facts

    async def _pipeline(self, run: PipelineRun) -> RunOutcome:
        event = run.event
        channel = run.channel
        assert channel is not None

        history = await self._history(event)
        run.classification = await self.classifier.classify(event.text, channel.directive, history)
        search_results, facts = await self._retrieve(run)
        catalog = await self.gateway.discover()

        result = await self.assistant.respond(
            event,
            channel,
            run.classification,
            catalog,
            facts=facts,
            history=history,
            search_results=search_results,
            store=self.store,
            mutations=run.mutations,
        )
        run.tool_invocations = list(result.tool_invocations)
        run.iterations = result.iterations
        run.mutations = result.mutations

        if result.degraded:
            reply = f"{result.reply}\n\n{FALLBACK_REPLY}" if result.reply else FALLBACK_REPLY
            run.reply = reply
            return RunOutcome(
                RunStatus.degraded,
                event,
                reply=reply,
                mutations=result.mutations,
                classification=run.classification,
                run=run,
                error=result.model_error or "tool budget exhausted",
            )
        if result.no_action:
            return RunOutcome(
                RunStatus.no_action, event, mutations=result.mutations, classification=run.classification, run=run
            )
        run.reply = result.reply
        return RunOutcome(
            RunStatus.answered,
            event,
            reply=result.reply,
            mutations=result.mutations,
            classification=run.classification,
            run=run,
        )

    async def _process(self, event: InboundEvent) -> RunOutcome:
        channel = await self._load_channel(event)
        if not await self._record(event):
            logger.info("Skipping redelivered event %s/%s", event.channel_id, event.ts)
            return RunOutcome(RunStatus.no_action, event)

        command = detect_command(event.text)
        if command is not None:
            return await self._run_command(event, command)

        if not self.should_respond(event):
            return RunOutcome(RunStatus.no_action, event)

        run = PipelineRun(event=event, channel=channel)
        try:
            outcome = await asyncio.wait_for(self._pipeline(run), timeout=self.settings.run_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Run %s in %s exceeded %.0fs; replying degraded",
                run.run_id,
                event.channel_id,
                self.settings.run_timeout_seconds,
            )
            run.reply = FALLBACK_REPLY
            # Mutations from a timed-out run are discarded.
            outcome = RunOutcome(
                RunStatus.degraded,
                event,
                reply=FALLBACK_REPLY,
                mutations=PendingMutations(),
                classification=run.classification,
                run=run,
                error="wall-clock budget exceeded",
            )
        except (ModelUnavailableError, TransientExternalError) as exc:
            logger.warning("No model reachable for run %s: %s", run.run_id, exc)
            outcome = RunOutcome(
                RunStatus.failed,
                event,
                reply=APOLOGY_MESSAGE,
                classification=run.classification,
                run=run,
                error=f"{type(exc).__name__}: {exc}",
            )
        except Exception as exc:
            logger.exception("Run %s failed", run.run_id)
            outcome = RunOutcome(
                RunStatus.failed,
                event,
                reply=APOLOGY_MESSAGE,
                classification=run.classification,
                run=run,
                error=f"{type(exc).__name__}: {exc}",
            )
        run.finished_at = utcnow()
        return outcome

    # Shutdown

    async def shutdown(self, grace_seconds: float | None = None) -> None:
        """Stop accepting events, let in-flight runs finish, then cancel the rest."""

        self._closing = True
        grace = self.settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        pending = {task for task in self._inflight if not task.done() and task is not asyncio.current_task()}
        if pending:
            logger.info("Waiting up to %.0fs for %s in-flight run(s)", grace, len(pending))
            _, still_running = await asyncio.wait(pending, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("Cancelled %s run(s) at shutdown", len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)
        await self.gateway.aclose()
        await self.store.aclose()


def build_orchestrator(
    settings: Settings,
    *,
    chat=None,
    store: ContextStore | None = None,
    provider=None,
    gateway: ToolGateway | None = None,
) -> Orchestrator:
    """Wire the default components for ``settings``; any piece may be passed in."""

    from triage_bot.llm.service import build_provider
    from triage_bot.store.sql import SqlContextStore
    from triage_bot.tools.servers import load_mcp_config

    store = store or SqlContextStore(settings.resolved_db_path(), timeout_seconds=settings.store_timeout_seconds)
    provider = provider or build_provider(settings)
    gateway = gateway or ToolGateway(
        load_mcp_config(settings.mcp_config_path), default_timeout=settings.tool_timeout_seconds
    )
    classifier = ClassificationStage(
        provider,
        settings.search_model,
        max_retries=settings.llm_max_retries,
        backoff=settings.backoff,
    )
    assistant = AssistantStage(
        provider,
        gateway,
        settings.assistant_model,
        max_tool_iterations=settings.max_tool_iterations,
        max_concurrent_tool_calls=settings.max_concurrent_tool_calls,
        tool_timeout_seconds=settings.tool_timeout_seconds,
        max_retries=settings.llm_max_retries,
        backoff=settings.backoff,
        mention_addendum=settings.mention_directive,
    )
    orchestrator = Orchestrator(
        store=store,
        classifier=classifier,
        assistant=assistant,
        gateway=gateway,
        settings=settings,
    )
    orchestrator.dispatcher = ActionDispatcher(
        store,
        chat,
        default_directive_for=orchestrator.default_directive,
        trace_runs=settings.trace_runs,
    )
    return orchestrator
