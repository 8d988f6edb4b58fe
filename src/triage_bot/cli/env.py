"""``triage-bot env`` subcommands."""

from __future__ import annotations

import os

from rich.console import Console
from rich.table import Table

from triage_bot.config.audit import AuditReport, audit_environment
from triage_bot.config.contract import default_contract


def register_subcommands(subparsers) -> None:
    check = subparsers.add_parser("check", help="Validate the environment against the config contract")
    check.add_argument("--profile", choices=["dev", "prod"], default=os.getenv("TRIAGE_BOT_PROFILE") or "dev")
    check.add_argument("--json", action="store_true", help="Print the report as JSON")

    subparsers.add_parser("vars", help="List every supported variable with its defaults")


def _print_report(report: AuditReport, console: Console) -> None:
    table = Table(title=f"Environment ({report.profile})", show_lines=False)
    table.add_column("Variable", style="bold cyan")
    table.add_column("Value")
    table.add_column("Default", style="dim")
    table.add_column("Status")
    for item in report.vars:
        if item.errors:
            status = "[red]" + "; ".join(item.errors) + "[/red]"
        elif item.warnings:
            status = "[yellow]" + "; ".join(item.warnings) + "[/yellow]"
        else:
            status = "[green]ok[/green]"
        table.add_row(item.key, item.redacted_value() or "", item.default or "", status)
    console.print(table)
    console.print(f"{report.errors} error(s), {report.warnings} warning(s)")


def dispatch(args, console: Console | None = None) -> None:
    console = console or Console()
    if args.subcommand == "check":
        report = audit_environment(profile=args.profile)
        if args.json:
            print(report.to_json())
        else:
            _print_report(report, console)
        if not report.ok:
            raise SystemExit(1)
    elif args.subcommand == "vars":
        table = Table(title="triage-bot environment variables")
        table.add_column("Group", style="dim")
        table.add_column("Variable", style="bold cyan")
        table.add_column("Kind")
        table.add_column("Dev default")
        table.add_column("Description")
        for spec in default_contract():
            table.add_row(spec.group, spec.key, spec.kind, spec.default_for("dev") or "", spec.description)
        console.print(table)
    else:
        raise SystemExit(f"Unknown env subcommand: {args.subcommand}")
