"""Slack adapter: Socket Mode intake and Web API replies.

Inbound ``message`` and ``app_mention`` events are normalized into
:class:`~triage_bot.types.InboundEvent` and handed to the orchestrator as
background tasks, so Bolt can acknowledge immediately.
"""

from __future__ import annotations

import asyncio
import re
import signal
from collections.abc import Sequence
from typing import Any

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from triage_bot.config.settings import Settings
from triage_bot.logging import get_logger
from triage_bot.types import InboundEvent

from .base import PostResult, with_mentions


logger = get_logger(__name__)

_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")
# Message subtypes that still carry a human-authored message.
_HUMAN_SUBTYPES = {None, "", "thread_broadcast", "file_share"}


def _unescape_slack_text(text: str) -> str:
    return (text or "").replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&").strip()


def _slack_error(exc: SlackApiError) -> str:
    response = getattr(exc, "response", None)
    try:
        return str(response.get("error") or "") if response is not None else ""
    except AttributeError:
        return ""


def normalize_event(event: dict[str, Any], *, bot_user_id: str | None) -> InboundEvent | None:
    """Return an event for a human message, or ``None`` for anything to ignore."""

    if event.get("bot_id") or event.get("subtype") not in _HUMAN_SUBTYPES:
        return None
    channel = str(event.get("channel") or "").strip()
    ts = str(event.get("ts") or "").strip()
    author = str(event.get("user") or "").strip()
    if not channel or not ts or not author or (bot_user_id and author == bot_user_id):
        return None

    raw = _unescape_slack_text(str(event.get("text") or ""))
    mentioned = bool(bot_user_id) and any(match == bot_user_id for match in _MENTION_RE.findall(raw))
    text = raw
    if bot_user_id:
        text = re.sub(rf"<@{re.escape(bot_user_id)}(?:\|[^>]*)?>", "", text).strip()
    thread_ts = str(event.get("thread_ts") or "").strip() or None

    return InboundEvent(
        channel_id=channel,
        author=author,
        text=text,
        ts=ts,
        thread_ts=thread_ts,
        mentions_bot=mentioned or event.get("type") == "app_mention",
        channel_type=event.get("channel_type"),
    )


class SlackChatTransport:
    def __init__(self, client: AsyncWebClient) -> None:
        self.client = client

    async def _post_once(self, channel_id: str, text: str, thread_ts: str | None) -> PostResult:
        kwargs: dict[str, Any] = {"channel": channel_id, "text": text}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        response = await self.client.chat_postMessage(**kwargs)
        return PostResult(ok=True, ts=str(response.get("ts") or "") or None)

    async def post(
        self,
        channel_id: str,
        text: str,
        tag_identities: Sequence[str] = (),
        thread_ts: str | None = None,
    ) -> PostResult:
        body = with_mentions(text, tag_identities)
        try:
            return await self._post_once(channel_id, body, thread_ts)
        except SlackApiError as exc:
            error = _slack_error(exc)
            if error != "not_in_channel":
                logger.warning("Slack post failed (%s) channel=%s thread_ts=%s", error, channel_id, thread_ts)
                return PostResult(ok=False, error=error or str(exc))
        try:
            await self.client.conversations_join(channel=channel_id)
            return await self._post_once(channel_id, body, thread_ts)
        except SlackApiError as exc:
            logger.warning("Slack post after join failed channel=%s: %s", channel_id, _slack_error(exc))
            return PostResult(ok=False, error=_slack_error(exc) or str(exc))

    async def react(self, channel_id: str, ts: str, emoji: str) -> bool:
        try:
            await self.client.reactions_add(channel=channel_id, timestamp=ts, name=emoji)
        except SlackApiError as exc:
            error = _slack_error(exc)
            if error == "already_reacted":
                return True
            logger.warning("Slack reaction %s failed (%s) channel=%s", emoji, error, channel_id)
            return False
        return True


def arrives_as_app_mention(event: dict[str, Any], bot_user_id: str | None) -> bool:
    """True when Slack also delivers ``event`` as ``app_mention``, so the ``message`` copy is skipped.

    Slack sends no ``app_mention`` for direct messages.
    """
    if not bot_user_id or event.get("channel_type") == "im":
        return False
    return f"<@{bot_user_id}" in str(event.get("text") or "")


class SlackBot:
    """Owns the Bolt app, the Socket Mode connection and the orchestrator."""

    def __init__(self, settings: Settings) -> None:
        bot_token, app_token = settings.require_slack()
        self.settings = settings
        self.app = AsyncApp(token=bot_token)
        self.app_token = app_token
        self.chat = SlackChatTransport(self.app.client)
        self.bot_user_id: str | None = None
        self.handler: AsyncSocketModeHandler | None = None
        self.orchestrator = None
        self._stopping = False
        self._stopped = asyncio.Event()

    def _handle(self, event: dict[str, Any]) -> None:
        inbound = normalize_event(event, bot_user_id=self.bot_user_id)
        if inbound is None or self.orchestrator is None:
            return
        logger.info(
            "Slack %s channel=%s ts=%s user=%s mention=%s",
            event.get("type"),
            inbound.channel_id,
            inbound.ts,
            inbound.author,
            inbound.mentions_bot,
        )
        self.orchestrator.submit(inbound)

    def _register(self) -> None:
        @self.app.event("message")
        async def _on_message(event, ack):  # type: ignore[no-untyped-def]
            await ack()
            if arrives_as_app_mention(event, self.bot_user_id):
                return
            self._handle(event)

        @self.app.event("app_mention")
        async def _on_mention(event, ack):  # type: ignore[no-untyped-def]
            await ack()
            self._handle(event)

        @self.app.error
        async def _on_error(error, body):  # type: ignore[no-untyped-def]
            logger.error("Slack handler error: %s", error)

    async def start(self) -> None:
        from triage_bot.pipeline.orchestrator import build_orchestrator

        try:
            auth = await self.app.client.auth_test()
            self.bot_user_id = auth.get("user_id")
            logger.info("Slack auth ok team=%s bot_user=%s", auth.get("team_id"), self.bot_user_id)
        except SlackApiError:
            logger.exception("Slack auth_test failed (check SLACK_BOT_TOKEN)")
            raise

        self.orchestrator = build_orchestrator(self.settings, chat=self.chat)
        catalog = await self.orchestrator.gateway.discover()
        logger.info("Tool catalog ready: %s tool(s)", len(catalog))

        self._register()
        self.handler = AsyncSocketModeHandler(self.app, self.app_token)
        await self.handler.connect_async()
        logger.info("Socket Mode connected")

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        if self.handler is not None:
            await self.handler.close_async()
        if self.orchestrator is not None:
            await self.orchestrator.shutdown(self.settings.shutdown_grace_seconds)
        logger.info("Slack bot stopped")
        self._stopped.set()

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(self.stop()))
            except NotImplementedError:
                pass
        await self.start()
        await self._stopped.wait()


async def run_bot(settings: Settings) -> None:
    await SlackBot(settings).run_forever()
