"""``triage-bot run`` and ``triage-bot simulate``."""

from __future__ import annotations

import asyncio
import time

from triage_bot.chat.base import RecordingChatTransport
from triage_bot.cli import settings_or_exit
from triage_bot.errors import ConfigurationError
from triage_bot.logging import get_logger
from triage_bot.store.memory import MemoryContextStore
from triage_bot.types import InboundEvent


logger = get_logger(__name__)


def register_subcommands(subparsers) -> None:
    run_parser = subparsers.add_parser("run", help="Run the Slack bot (Socket Mode)")
    run_parser.add_argument("--mcp-config", default=None, help="Path to mcp.json (default: $TRIAGE_BOT_MCP_CONFIG)")

    sim = subparsers.add_parser("simulate", help="Push one message through the pipeline without Slack")
    sim.add_argument("text", help="Message text")
    sim.add_argument("--channel", default="CSIMULATED", help="Channel id (default: CSIMULATED)")
    sim.add_argument("--author", default="USIMULATED", help="Author id (default: USIMULATED)")
    sim.add_argument("--thread-ts", default=None, help="Thread timestamp, for in-thread messages")
    sim.add_argument("--mention", action="store_true", help="Treat the message as an @-mention")
    sim.add_argument("--memory", action="store_true", help="Use a throwaway in-memory store")
    sim.add_argument("--mcp-config", default=None, help="Path to mcp.json (default: $TRIAGE_BOT_MCP_CONFIG)")


async def _simulate(args) -> None:
    from triage_bot.pipeline.orchestrator import build_orchestrator

    overrides = {"mcp_config_path": args.mcp_config} if args.mcp_config else {}
    settings = settings_or_exit(**overrides)
    chat = RecordingChatTransport()
    store = MemoryContextStore() if args.memory else None
    orchestrator = build_orchestrator(settings, chat=chat, store=store)

    event = InboundEvent(
        channel_id=args.channel,
        author=args.author,
        text=args.text,
        ts=f"{time.time():.6f}",
        thread_ts=args.thread_ts,
        mentions_bot=args.mention,
    )
    try:
        outcome = await orchestrator.handle_event(event)
    finally:
        await orchestrator.shutdown(0)

    print(f"status: {outcome.status.value}")
    if outcome.classification is not None:
        print(f"classification: {outcome.classification.kind.value} / {outcome.classification.urgency.value}")
    if outcome.run is not None:
        for item in outcome.run.tool_invocations:
            state = "ok" if item.ok else item.error
            print(f"tool: {item.tool_name} ({item.duration_ms} ms) {state}")
    for post in chat.posts:
        print(f"reply (thread {post.thread_ts}):\n{post.text}")
    for _, _, emoji in chat.reactions:
        print(f"reaction: :{emoji}:")


def dispatch(args) -> None:
    if args.command == "run":
        from triage_bot.chat.slack import run_bot

        overrides = {"mcp_config_path": args.mcp_config} if args.mcp_config else {}
        settings = settings_or_exit(**overrides)
        try:
            asyncio.run(run_bot(settings))
        except ConfigurationError as exc:
            raise SystemExit(f"Configuration error: {exc}") from exc
        except KeyboardInterrupt:
            logger.info("Interrupted")
        return
    if args.command == "simulate":
        asyncio.run(_simulate(args))
        return
    raise SystemExit(f"Unknown command: {args.command}")
