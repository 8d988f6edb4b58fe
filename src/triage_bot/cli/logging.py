"""``triage-bot logging`` subcommands."""

import logging

from triage_bot.logging import get_logger, reset_logger
from triage_bot.logging.config import save_log_level
from triage_bot.logging.logging import get_configured_level, log_file


LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def register_subcommands(subparsers):
    set_level_parser = subparsers.add_parser("set-level", help="Persist the logging level")
    set_level_parser.add_argument("level", choices=LEVELS, type=str.upper, help="Logging level to use")

    subparsers.add_parser("show-path", help="Show the log file location")
    subparsers.add_parser("show-level", help="Show the configured logging level")


def dispatch(args):
    if args.subcommand == "set-level":
        path = save_log_level(args.level)
        reset_logger()
        get_logger(level=getattr(logging, args.level))
        print(f"{args.level} (saved to {path})")
    elif args.subcommand == "show-path":
        print(log_file().resolve())
    elif args.subcommand == "show-level":
        print(get_configured_level())
    else:
        raise SystemExit(f"Unknown logging subcommand: {args.subcommand}")
