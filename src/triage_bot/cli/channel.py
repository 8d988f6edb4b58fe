"""``triage-bot channel`` subcommands operating on the context store."""

from __future__ import annotations

import asyncio

from rich.console import Console
from rich.table import Table

from triage_bot.cli import settings_or_exit
from triage_bot.llm.prompts import DEFAULT_DIRECTIVE
from triage_bot.store.sql import SqlContextStore


def register_subcommands(subparsers) -> None:
    show = subparsers.add_parser("show", help="Show a channel's directive and on-call map")
    show.add_argument("channel_id")

    directive = subparsers.add_parser("set-directive", help="Replace a channel's directive")
    directive.add_argument("channel_id")
    group = directive.add_mutually_exclusive_group(required=True)
    group.add_argument("--text", help="New directive text")
    group.add_argument("--file", help="Read the directive from a file")
    group.add_argument("--reset", action="store_true", help="Restore the default directive")

    remember = subparsers.add_parser("remember", help="Append a fact to a channel")
    remember.add_argument("channel_id")
    remember.add_argument("text")
    remember.add_argument("--added-by", default="cli")
    remember.add_argument("--supersedes", type=int, default=None, help="Fact id this fact replaces")

    facts = subparsers.add_parser("facts", help="List a channel's facts")
    facts.add_argument("channel_id")
    facts.add_argument("--all", action="store_true", help="Include superseded facts")
    facts.add_argument("--limit", type=int, default=None)

    traces = subparsers.add_parser("traces", help="List recent run traces")
    traces.add_argument("channel_id", nargs="?", default=None)
    traces.add_argument("--limit", type=int, default=20)


def _default_directive(settings, channel_id: str) -> str:
    override = (settings.channel_directives.get(channel_id) or "").strip()
    return override or (settings.system_directive or "").strip() or DEFAULT_DIRECTIVE


async def _run(args, console: Console) -> None:
    settings = settings_or_exit()
    store = SqlContextStore(settings.resolved_db_path(), timeout_seconds=settings.store_timeout_seconds)
    default = _default_directive(settings, getattr(args, "channel_id", None) or "")

    if args.subcommand == "show":
        state = await store.get_channel(args.channel_id)
        if state is None:
            console.print(f"[yellow]No state stored for {args.channel_id}; the default directive applies.[/yellow]")
            return
        console.print(f"[bold]{state.channel_id}[/bold] (updated {state.updated_at})")
        console.print(state.directive)
        if state.oncall_map:
            table = Table(title="On-call")
            table.add_column("Topic", style="bold cyan")
            table.add_column("Identity")
            for topic, identity in sorted(state.oncall_map.items()):
                table.add_row(topic, identity)
            console.print(table)
    elif args.subcommand == "set-directive":
        if args.reset:
            text = default
        elif args.file:
            with open(args.file, encoding="utf-8") as handle:
                text = handle.read()
        else:
            text = args.text
        if not (text or "").strip():
            raise SystemExit("Directive must not be empty")
        await store.set_directive(args.channel_id, text)
        console.print(f"Directive for {args.channel_id} updated.")
    elif args.subcommand == "remember":
        await store.get_or_create_channel(args.channel_id, default)
        fact = await store.append_fact(args.channel_id, args.text, args.added_by, supersedes=args.supersedes)
        console.print(f"Stored fact #{fact.fact_id}.")
    elif args.subcommand == "facts":
        facts = await store.list_facts(args.channel_id, include_superseded=args.all, limit=args.limit)
        table = Table(title=f"Facts for {args.channel_id} ({len(facts)})")
        table.add_column("#", justify="right")
        table.add_column("Text")
        table.add_column("Added by", style="dim")
        table.add_column("Supersedes", style="dim")
        for fact in facts:
            table.add_row(str(fact.fact_id), fact.text, fact.added_by, str(fact.supersedes or ""))
        console.print(table)
    elif args.subcommand == "traces":
        rows = await store.list_run_traces(args.channel_id, args.limit)
        table = Table(title="Run traces")
        for column in ("run_id", "channel_id", "status", "iterations", "duration_ms", "error"):
            table.add_column(column)
        for row in rows:
            table.add_row(*(str(row.get(column) or "") for column in ("run_id", "channel_id", "status", "iterations", "duration_ms", "error")))
        console.print(table)
    else:
        raise SystemExit(f"Unknown channel subcommand: {args.subcommand}")


def dispatch(args, console: Console | None = None) -> None:
    asyncio.run(_run(args, console or Console()))
