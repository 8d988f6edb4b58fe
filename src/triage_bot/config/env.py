"""Load ``KEY=value`` env files before the CLI reads configuration.

The bot is usually started under a process manager that exports variables, but
local runs keep tokens in a ``.env`` file. ``--env-file`` may be passed
anywhere on the command line, including after a subcommand.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from pathlib import Path


def split_env_file_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Return ``(env_files, remaining_argv)``.

    Both ``--env-file path`` and ``--env-file=path`` are recognized.
    """

    env_files: list[str] = []
    remaining: list[str] = []
    tokens = iter(argv)
    for token in tokens:
        if token == "--env-file":
            path = next(tokens, None)
            if path is None:
                raise SystemExit("--env-file requires a file path")
            env_files.append(path)
        elif token.startswith("--env-file="):
            env_files.append(token.partition("=")[2])
        else:
            remaining.append(token)
    return env_files, remaining


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] in {"'", '"'} and value[-1] == value[0]:
        return value[1:-1]
    # Unquoted values may carry a trailing " # comment".
    marker = value.find(" #")
    if marker >= 0:
        value = value[:marker]
    return value.rstrip()


def parse_env_text(text: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ").lstrip()
        key, sep, raw_value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        parsed[key] = _unquote(raw_value.strip())
    return parsed


def load_env_files(
    paths: Iterable[str | Path],
    *,
    override: bool = True,
    environ: dict[str, str] | None = None,
) -> dict[str, str]:
    """Apply env files in order (later files win) and return the merged values."""

    target = os.environ if environ is None else environ
    merged: dict[str, str] = {}
    for path in paths:
        resolved = Path(path).expanduser()
        if not resolved.exists():
            raise SystemExit(f"--env-file does not exist: {resolved}")
        merged.update(parse_env_text(resolved.read_text(encoding="utf-8")))

    for key, value in merged.items():
        if override or key not in target:
            target[key] = value
    return merged
