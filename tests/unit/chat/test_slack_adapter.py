from __future__ import annotations

import pytest
from slack_sdk.errors import SlackApiError

from triage_bot.chat.base import RecordingChatTransport, format_mention, with_mentions
from triage_bot.chat.slack import SlackChatTransport, arrives_as_app_mention, normalize_event


BOT = "U0BOT"


def test_normalize_event_strips_bot_mention():
    event = normalize_event(
        {
            "type": "app_mention",
            "channel": "C1",
            "user": "U1",
            "ts": "1.0",
            "thread_ts": "0.5",
            "text": "<@U0BOT> why is &lt;main&gt; red?",
            "channel_type": "channel",
        },
        bot_user_id=BOT,
    )
    assert event.text == "why is <main> red?"
    assert event.mentions_bot is True
    assert event.thread_ts == "0.5"
    assert event.reply_thread_ts == "0.5"
    assert event.is_top_level is False


def test_normalize_event_plain_message_is_top_level():
    event = normalize_event({"type": "message", "channel": "C1", "user": "U1", "ts": "1.0", "text": "hi"}, bot_user_id=BOT)
    assert event.mentions_bot is False
    assert event.is_top_level is True
    assert event.reply_thread_ts == "1.0"


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "message", "channel": "C1", "bot_id": "B1", "ts": "1.0", "text": "beep"},
        {"type": "message", "channel": "C1", "user": "U1", "ts": "1.0", "subtype": "message_changed"},
        {"type": "message", "channel": "C1", "user": BOT, "ts": "1.0", "text": "my own reply"},
        {"type": "message", "user": "U1", "ts": "1.0", "text": "no channel"},
    ],
)
def test_normalize_event_ignores_non_human_messages(raw):
    assert normalize_event(raw, bot_user_id=BOT) is None


def test_format_mention_handles_users_groups_and_names():
    assert format_mention("U0123ABC") == "<@U0123ABC>"
    assert format_mention("@W0123ABC") == "<@W0123ABC>"
    assert format_mention("S0GROUP1") == "<!subteam^S0GROUP1>"
    assert format_mention("<@U0123ABC>") == "<@U0123ABC>"
    assert format_mention("payments-oncall") == "@payments-oncall"
    assert with_mentions("hello", ["U0123ABC", " "]) == "<@U0123ABC> hello"
    assert with_mentions("hello", []) == "hello"


class FakeSlackClient:
    def __init__(self, *, fail_first_with=None, react_error=None):
        self.fail_first_with = fail_first_with
        self.react_error = react_error
        self.posted = []
        self.joined = []

    async def chat_postMessage(self, **kwargs):
        if self.fail_first_with and not self.posted and not self.joined:
            raise SlackApiError("failed", {"ok": False, "error": self.fail_first_with})
        self.posted.append(kwargs)
        return {"ok": True, "ts": "9.9"}

    async def conversations_join(self, **kwargs):
        self.joined.append(kwargs["channel"])
        return {"ok": True}

    async def reactions_add(self, **kwargs):
        if self.react_error:
            raise SlackApiError("failed", {"ok": False, "error": self.react_error})
        return {"ok": True}


@pytest.mark.asyncio
async def test_post_joins_channel_and_retries_once():
    client = FakeSlackClient(fail_first_with="not_in_channel")
    result = await SlackChatTransport(client).post("C1", "hello", ["U0123ABC"], thread_ts="1.0")
    assert result.ok and result.ts == "9.9"
    assert client.joined == ["C1"]
    assert client.posted == [{"channel": "C1", "text": "<@U0123ABC> hello", "thread_ts": "1.0"}]


@pytest.mark.asyncio
async def test_post_failure_is_returned_not_raised():
    client = FakeSlackClient(fail_first_with="channel_not_found")
    result = await SlackChatTransport(client).post("C1", "hello")
    assert result.ok is False
    assert result.error == "channel_not_found"
    assert client.joined == []


@pytest.mark.asyncio
async def test_react_treats_already_reacted_as_success():
    assert await SlackChatTransport(FakeSlackClient(react_error="already_reacted")).react("C1", "1.0", "bug") is True
    assert await SlackChatTransport(FakeSlackClient(react_error="invalid_name")).react("C1", "1.0", "nope") is False


@pytest.mark.asyncio
async def test_recording_transport_keeps_posts():
    chat = RecordingChatTransport()
    first = await chat.post("C1", "one", thread_ts="1.0")
    second = await chat.post("C1", "two")
    assert first.ts != second.ts
    assert [post.text for post in chat.posts] == ["one", "two"]


@pytest.mark.parametrize(
    ("event", "skipped"),
    [
        ({"channel": "C1", "channel_type": "channel", "text": f"<@{BOT}> why is CI red?"}, True),
        ({"channel": "D1", "channel_type": "im", "text": f"<@{BOT}> why is CI red?"}, False),
        ({"channel": "C1", "channel_type": "channel", "text": "why is CI red?"}, False),
    ],
)
def test_only_channel_mentions_defer_to_app_mention(event, skipped):
    assert arrives_as_app_mention(event, BOT) is skipped
    assert arrives_as_app_mention(event, None) is False
