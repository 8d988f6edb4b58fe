from __future__ import annotations

import time

import pytest
from sqlalchemy.exc import OperationalError

from triage_bot.errors import PersistenceError
from triage_bot.store import MemoryContextStore, SqlContextStore
from triage_bot.store.base import merge_oncall, rank_by_overlap, tokenize
from triage_bot.types import Classification, IssueKind, MessageRecord, PendingMutations, Urgency


DEFAULT = "Be helpful."


@pytest.fixture(params=["sql", "memory"])
def store(request, tmp_path):
    if request.param == "sql":
        return SqlContextStore(tmp_path / f"store-{request.node.name}.db")
    return MemoryContextStore()


def _message(ts: str, text: str, *, channel: str = "C1", thread_ts: str | None = None) -> MessageRecord:
    return MessageRecord(channel_id=channel, ts=ts, author="U1", text=text, thread_ts=thread_ts)


@pytest.mark.asyncio
async def test_directive_round_trip(store):
    created = await store.get_or_create_channel("C1", DEFAULT)
    assert created.directive == DEFAULT
    assert (await store.get_or_create_channel("C1", "ignored")).directive == DEFAULT

    await store.set_directive("C1", "Answer in haiku.")
    assert (await store.get_channel("C1")).directive == "Answer in haiku."
    assert await store.get_channel("C-unknown") is None

    with pytest.raises(ValueError):
        await store.set_directive("C1", "   ")


@pytest.mark.asyncio
async def test_two_remembers_give_two_facts_in_order(store):
    await store.get_or_create_channel("C1", DEFAULT)
    first = await store.append_fact("C1", "FooService owns bar-api", "U1")
    second = await store.append_fact("C1", "Deploys freeze on Fridays", "U2")

    facts = await store.list_facts("C1")
    assert [fact.fact_id for fact in facts] == [first.fact_id, second.fact_id]
    assert facts[0].added_by == "U1"
    assert await store.list_facts("C2") == []


@pytest.mark.asyncio
async def test_superseded_fact_is_hidden_but_kept(store):
    await store.get_or_create_channel("C1", DEFAULT)
    old = await store.append_fact("C1", "Alice is on call for payments", "U1")
    new = await store.append_fact("C1", "Bob is on call for payments", "U1", supersedes=old.fact_id)

    assert [fact.fact_id for fact in await store.list_facts("C1")] == [new.fact_id]
    everything = await store.list_facts("C1", include_superseded=True)
    assert {fact.fact_id for fact in everything} == {old.fact_id, new.fact_id}

    with pytest.raises(ValueError):
        await store.append_fact("C1", "dangling", "U1", supersedes=9999)


@pytest.mark.asyncio
async def test_supersede_only_targets_facts_of_the_same_channel(store):
    await store.get_or_create_channel("C1", DEFAULT)
    await store.get_or_create_channel("C2", DEFAULT)
    elsewhere = await store.append_fact("C2", "C2 owns the release train", "U1")

    with pytest.raises(ValueError):
        await store.append_fact("C1", "hijack", "U1", supersedes=elsewhere.fact_id)

    assert await store.list_facts("C1") == []
    assert [fact.text for fact in await store.list_facts("C2")] == ["C2 owns the release train"]


@pytest.mark.asyncio
async def test_append_fact_requires_known_channel(store):
    with pytest.raises(PersistenceError):
        await store.append_fact("C-missing", "text", "U1")


@pytest.mark.asyncio
async def test_record_message_is_idempotent_and_classification_sets_once(store):
    assert await store.record_message(_message("1.0", "build is failing")) is True
    assert await store.record_message(_message("1.0", "duplicate delivery")) is False
    assert (await store.get_message("C1", "1.0")).text == "build is failing"

    bug = Classification(IssueKind.bug, Urgency.high)
    assert await store.set_classification("C1", "1.0", bug) is True
    assert await store.set_classification("C1", "1.0", Classification(IssueKind.question)) is False
    assert (await store.get_message("C1", "1.0")).classification == "Bug"
    assert await store.set_classification("C1", "missing", bug) is False


@pytest.mark.asyncio
async def test_recent_messages_window_thread_and_exclude(store):
    await store.record_message(_message("1.0", "root question"))
    await store.record_message(_message("2.0", "unrelated"))
    await store.record_message(_message("3.0", "reply in thread", thread_ts="1.0"))
    await store.record_message(_message("4.0", "latest"))

    recent = await store.recent_messages("C1", 2)
    assert [record.ts for record in recent] == ["3.0", "4.0"]
    assert [r.ts for r in await store.recent_messages("C1", 10, exclude_ts="4.0")] == ["1.0", "2.0", "3.0"]
    assert [r.ts for r in await store.recent_messages("C1", 10, thread_ts="1.0")] == ["1.0", "3.0"]
    assert await store.recent_messages("C1", 0) == []


@pytest.mark.asyncio
async def test_search_ranks_by_overlap_and_prefers_newer(store):
    await store.get_or_create_channel("C1", DEFAULT)
    await store.record_message(_message("1.0", "ci build failing on main"))
    await store.record_message(_message("2.0", "lunch anyone?"))
    await store.record_message(_message("3.0", "build failing again"))
    await store.append_fact("C1", "The build runs on Jenkins", "U1")

    found = await store.search_messages("C1", ["build failing"], limit=5)
    assert [record.ts for record in found] == ["3.0", "1.0"]
    assert [fact.text for fact in await store.search_facts("C1", ["jenkins"])] == ["The build runs on Jenkins"]


@pytest.mark.asyncio
async def test_commit_mutations_applies_everything_together(store):
    await store.get_or_create_channel("C1", DEFAULT)
    await store.record_message(_message("1.0", "please remember FooService owns bar-api"))
    old = await store.append_fact("C1", "payments: alice", "U1")

    mutations = PendingMutations(
        facts=["FooService owns bar-api"],
        supersede={old.fact_id: "payments: bob"},
        directive="Be terse.",
        oncall={"payments": "U2"},
    )
    result = await store.commit_mutations(
        "C1",
        mutations,
        added_by="U1",
        default_directive=DEFAULT,
        message_ts="1.0",
        classification=Classification(IssueKind.other),
    )

    assert result.directive_changed and result.oncall_changed and result.classified
    assert result.superseded == (old.fact_id,)
    state = await store.get_channel("C1")
    assert state.directive == "Be terse."
    assert state.oncall_map == {"payments": "U2"}
    assert sorted(fact.text for fact in await store.list_facts("C1")) == ["FooService owns bar-api", "payments: bob"]


@pytest.mark.asyncio
async def test_commit_mutations_is_all_or_nothing(store):
    await store.get_or_create_channel("C1", DEFAULT)
    bad = PendingMutations(facts=["would be lost"], directive="   ")
    with pytest.raises(ValueError):
        await store.commit_mutations("C1", bad, added_by="U1", default_directive=DEFAULT)

    assert await store.list_facts("C1") == []
    assert (await store.get_channel("C1")).directive == DEFAULT


@pytest.mark.asyncio
async def test_commit_creates_missing_channel_with_default(store):
    result = await store.commit_mutations(
        "C9", PendingMutations(oncall={"db": "U7"}), added_by="U1", default_directive=DEFAULT
    )
    assert result.channel.directive == DEFAULT
    assert (await store.get_channel("C9")).oncall_map == {"db": "U7"}


@pytest.mark.asyncio
async def test_reply_ts_is_attached_once(store):
    await store.record_message(_message("1.0", "hello"))
    assert await store.set_reply_ts("C1", "1.0", "1.5") is True
    assert await store.set_reply_ts("C1", "1.0", "1.6") is False
    assert (await store.get_message("C1", "1.0")).reply_ts == "1.5"


@pytest.mark.asyncio
async def test_memory_store_can_simulate_outage():
    store = MemoryContextStore()
    store.fail_writes = True
    with pytest.raises(PersistenceError):
        await store.get_or_create_channel("C1", DEFAULT)


def test_merge_oncall_removes_blank_identities():
    assert merge_oncall({"db": "U1", "api": "U2"}, {"db": "", "web": " U3 "}) == {"api": "U2", "web": "U3"}


def test_tokenize_and_rank_skip_stopwords():
    assert tokenize("Why is THE build-bot failing?") == {"build-bot", "failing"}
    items = ["nothing here", "build failing", "failing"]
    assert rank_by_overlap(items, ["build failing"], lambda item: item, 5) == ["build failing", "failing"]


class SlowSqlStore(SqlContextStore):
    """Commits and fact writes that outlast the store timeout."""

    delay = 0.4
    fail = False

    def _commit_mutations(self, *args, **kwargs):
        time.sleep(self.delay)
        return super()._commit_mutations(*args, **kwargs)

    def _append_fact(self, *args, **kwargs):
        time.sleep(self.delay)
        if self.fail:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return super()._append_fact(*args, **kwargs)


@pytest.mark.asyncio
async def test_slow_commit_reports_what_actually_landed(tmp_path):
    store = SlowSqlStore(tmp_path / "slow.db", timeout_seconds=0.1)
    await store.get_or_create_channel("C1", DEFAULT)

    result = await store.commit_mutations(
        "C1", PendingMutations(facts=["late fact"]), added_by="U1", default_directive=DEFAULT
    )

    assert [fact.text for fact in result.facts] == ["late fact"]
    assert [fact.text for fact in await store.list_facts("C1")] == ["late fact"]


@pytest.mark.asyncio
async def test_slow_failure_still_raises_persistence_error(tmp_path):
    store = SlowSqlStore(tmp_path / "slow.db", timeout_seconds=0.1)
    store.fail = True
    await store.get_or_create_channel("C1", DEFAULT)

    with pytest.raises(PersistenceError):
        await store.append_fact("C1", "never stored", "U1")
    assert await store.list_facts("C1") == []
