from __future__ import annotations

import pytest

from triage_bot.chat.base import RecordingChatTransport
from triage_bot.pipeline.dispatcher import BEST_EFFORT_NOTE, ActionDispatcher
from triage_bot.store import MemoryContextStore
from triage_bot.types import (
    Classification,
    InboundEvent,
    IssueKind,
    MessageRecord,
    PendingMutations,
    PipelineRun,
    RunOutcome,
    RunStatus,
    Urgency,
)


EVENT = InboundEvent(channel_id="C1", author="U1", text="build broken", ts="10.0")


class OrderedStore(MemoryContextStore):
    def __init__(self, log):
        super().__init__()
        self.log = log

    async def commit_mutations(self, *args, **kwargs):
        self.log.append("commit")
        return await super().commit_mutations(*args, **kwargs)

    async def save_run_trace(self, *args, **kwargs):
        self.log.append("trace")
        return await super().save_run_trace(*args, **kwargs)


class OrderedChat(RecordingChatTransport):
    def __init__(self, log):
        super().__init__()
        self.log = log

    async def post(self, *args, **kwargs):
        self.log.append("post")
        return await super().post(*args, **kwargs)

    async def react(self, *args, **kwargs):
        self.log.append("react")
        return await super().react(*args, **kwargs)


def _outcome(status=RunStatus.answered, **kwargs) -> RunOutcome:
    kwargs.setdefault("reply", "Rebuild with --clean.")
    kwargs.setdefault("classification", Classification(IssueKind.bug, Urgency.high))
    kwargs.setdefault("run", PipelineRun(event=EVENT))
    return RunOutcome(status, EVENT, **kwargs)


def _dispatcher(store, chat, **kwargs):
    return ActionDispatcher(store, chat, default_directive_for=lambda channel_id: "default", **kwargs)


@pytest.mark.asyncio
async def test_persist_then_post_then_trace():
    log: list[str] = []
    store, chat = OrderedStore(log), OrderedChat(log)
    await store.record_message(MessageRecord("C1", "10.0", "U1", "build broken"))
    mutations = PendingMutations(facts=["CI uses the large runners"], tags=["U07ABC"], reaction="eyes")

    report = await _dispatcher(store, chat, trace_runs=True).apply(_outcome(mutations=mutations))

    assert log == ["commit", "post", "react", "react", "trace"]
    assert report.committed and report.posted and not report.degraded
    assert chat.posts[0].text == "<@U07ABC> Rebuild with --clean."
    assert chat.posts[0].thread_ts == "10.0"
    assert [emoji for _, _, emoji in chat.reactions] == ["bug", "eyes"]
    assert [fact.text for fact in await store.list_facts("C1")] == ["CI uses the large runners"]
    message = await store.get_message("C1", "10.0")
    assert message.classification == "Bug"
    assert message.reply_ts == report.reply_ts
    assert store.traces[0]["status"] == "answered"


@pytest.mark.asyncio
async def test_persistence_failure_posts_best_effort_reply():
    store, chat = MemoryContextStore(), RecordingChatTransport()
    store.fail_writes = True

    report = await _dispatcher(store, chat).apply(_outcome(mutations=PendingMutations(facts=["x"])))

    assert report.committed is False
    assert report.degraded is True
    assert report.posted is True
    assert chat.posts[0].text.endswith(BEST_EFFORT_NOTE)
    assert any(error.startswith("commit") for error in report.errors)


@pytest.mark.asyncio
async def test_no_action_commits_but_does_not_post():
    store, chat = MemoryContextStore(), RecordingChatTransport()
    outcome = _outcome(RunStatus.no_action, reply=None, mutations=PendingMutations(oncall={"ci": "U3"}))

    report = await _dispatcher(store, chat).apply(outcome)

    assert report.committed is True
    assert chat.posts == [] and chat.reactions == []
    assert (await store.get_channel("C1")).oncall_map == {"ci": "U3"}


@pytest.mark.asyncio
async def test_failed_run_posts_apology_without_committing():
    store, chat = MemoryContextStore(), RecordingChatTransport()
    outcome = _outcome(RunStatus.failed, reply="Sorry", mutations=PendingMutations(facts=["never saved"]))

    report = await _dispatcher(store, chat).apply(outcome)

    assert report.committed is False
    assert [post.text for post in chat.posts] == ["Sorry"]
    assert chat.reactions == []
    assert await store.get_channel("C1") is None


@pytest.mark.asyncio
async def test_degraded_classification_is_not_committed_or_reacted():
    store, chat = MemoryContextStore(), RecordingChatTransport()
    await store.record_message(MessageRecord("C1", "10.0", "U1", "build broken"))
    outcome = _outcome(RunStatus.degraded, classification=Classification(degraded=True))

    report = await _dispatcher(store, chat).apply(outcome)

    assert report.committed is False
    assert chat.reactions == []
    assert (await store.get_message("C1", "10.0")).classification is None


@pytest.mark.asyncio
async def test_post_failure_is_reported_not_raised():
    store, chat = MemoryContextStore(), RecordingChatTransport(fail_posts=True)
    report = await _dispatcher(store, chat).apply(_outcome())
    assert report.posted is False
    assert report.errors == ["post: posting disabled"]
