"""``triage-bot tools`` subcommands."""

from __future__ import annotations

import asyncio
import json

from rich.console import Console
from rich.table import Table

from triage_bot.cli import settings_or_exit
from triage_bot.errors import ConfigurationError
from triage_bot.tools.builtin import ToolContext
from triage_bot.tools.gateway import ToolGateway
from triage_bot.tools.servers import load_mcp_config


def register_subcommands(subparsers) -> None:
    list_parser = subparsers.add_parser("list", help="Discover servers and list the tool catalog")
    list_parser.add_argument("--mcp-config", default=None, help="Path to mcp.json")
    list_parser.add_argument("--json", action="store_true", help="Print the catalog as JSON")

    call_parser = subparsers.add_parser("call", help="Invoke one tool through the gateway")
    call_parser.add_argument("name", help="Tool name as shown by `tools list`")
    call_parser.add_argument("--args", default="{}", help="JSON object of arguments")
    call_parser.add_argument("--timeout", type=float, default=None, help="Timeout in seconds")
    call_parser.add_argument("--mcp-config", default=None, help="Path to mcp.json")
    call_parser.add_argument("--channel", default="CCLI", help="Channel id for built-in tools")


def _gateway(args) -> ToolGateway:
    settings = settings_or_exit()
    try:
        servers = load_mcp_config(args.mcp_config or settings.mcp_config_path)
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc
    return ToolGateway(servers, default_timeout=settings.tool_timeout_seconds)


async def _list(args, console: Console) -> None:
    gateway = _gateway(args)
    try:
        catalog = await gateway.discover()
    finally:
        await gateway.aclose()

    if args.json:
        print(json.dumps([spec.openai_tool() for spec in catalog], indent=2))
        return
    table = Table(title=f"Tool catalog ({len(catalog)})")
    table.add_column("Name", style="bold cyan")
    table.add_column("Server")
    table.add_column("Flags", style="dim")
    table.add_column("Description")
    for spec in catalog:
        flags = ",".join(flag for flag, on in (("mutating", spec.mutating), ("restricted", spec.restricted)) if on)
        table.add_row(spec.name, spec.server, flags, spec.description.splitlines()[0] if spec.description else "")
    console.print(table)


async def _call(args, console: Console) -> int:
    try:
        arguments = json.loads(args.args)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"--args is not valid JSON: {exc}") from exc
    if not isinstance(arguments, dict):
        raise SystemExit("--args must be a JSON object")

    gateway = _gateway(args)
    context = ToolContext(channel_id=args.channel, author="cli")
    try:
        await gateway.discover()
        result = await gateway.invoke(args.name, arguments, args.timeout, context=context)
    finally:
        await gateway.aclose()

    console.print_json(json.dumps(result.to_payload()))
    if not context.mutations.is_empty() or context.mutations.tags or context.mutations.reaction:
        console.print("[dim]Recorded (not applied) mutations:[/dim]")
        console.print_json(json.dumps(context.mutations.to_dict()))
    return 0 if result.ok else 1


def dispatch(args, console: Console | None = None) -> None:
    console = console or Console()
    if args.subcommand == "list":
        asyncio.run(_list(args, console))
    elif args.subcommand == "call":
        code = asyncio.run(_call(args, console))
        if code:
            raise SystemExit(code)
    else:
        raise SystemExit(f"Unknown tools subcommand: {args.subcommand}")
