# triage_bot/cli/main.py
import argparse
import sys

from triage_bot import __version__
from triage_bot.cli import bot, channel, env, logging as logging_cli, tools
from triage_bot.config.env import load_env_files, split_env_file_args


def build_parser():
    parser = argparse.ArgumentParser(prog="triage-bot", description="Support-channel triage bot")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--env-file",
        action="append",
        default=[],
        help="Load KEY=value pairs before reading configuration (repeatable, any position)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    bot.register_subcommands(subparsers)

    tools_parser = subparsers.add_parser("tools", help="Inspect and call MCP tools")
    tools_subparsers = tools_parser.add_subparsers(dest="subcommand", required=True)
    tools.register_subcommands(tools_subparsers)

    channel_parser = subparsers.add_parser("channel", help="Inspect and edit stored channel state")
    channel_subparsers = channel_parser.add_subparsers(dest="subcommand", required=True)
    channel.register_subcommands(channel_subparsers)

    env_parser = subparsers.add_parser("env", help="Environment configuration")
    env_subparsers = env_parser.add_subparsers(dest="subcommand", required=True)
    env.register_subcommands(env_subparsers)

    logging_parser = subparsers.add_parser("logging", help="Logging utilities")
    logging_subparsers = logging_parser.add_subparsers(dest="subcommand", required=True)
    logging_cli.register_subcommands(logging_subparsers)

    return parser


def main(argv=None):
    env_files, remaining = split_env_file_args(sys.argv[1:] if argv is None else argv)
    if env_files:
        load_env_files(env_files)

    args = build_parser().parse_args(remaining)

    if args.command in {"run", "simulate"}:
        bot.dispatch(args)
    elif args.command == "tools":
        tools.dispatch(args)
    elif args.command == "channel":
        channel.dispatch(args)
    elif args.command == "env":
        env.dispatch(args)
    elif args.command == "logging":
        logging_cli.dispatch(args)


if __name__ == "__main__":
    main()
