"""Explicit user commands handled without the model.

"remember that ..." appends a channel fact and "set/update/reset the channel
directive ..." rewrites the directive. Both commit immediately, before and
independently of any assistant run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal


CommandKind = Literal["remember", "set_directive", "reset_directive"]

# Leading "<@U123>", "@triage-bot", "hey bot," and "please" are not part of the command.
_PREFIX = r"^\s*(?:<@[A-Z0-9]+(?:\|[^>]*)?>[\s,:]*|@\S+[\s,:]+)*(?:(?:hey|hi)\s+\S+[\s,:]+)?(?:please\s+)?"

_REMEMBER_RE = re.compile(_PREFIX + r"remember(?:\s+that\b|\s*:)\s*(?P<text>.+)$", re.IGNORECASE | re.DOTALL)
_SET_DIRECTIVE_RE = re.compile(
    _PREFIX
    + r"(?:update|set|change|replace|reset)\s+(?:the\s+|this\s+)?(?:channel(?:'s)?\s+)?directive"
    + r"(?:\s+(?:to|as)\b|\s*:|\s*=)\s*(?P<text>.+)$",
    re.IGNORECASE | re.DOTALL,
)
_RESET_DIRECTIVE_RE = re.compile(
    _PREFIX + r"reset\s+(?:the\s+|this\s+)?(?:channel(?:'s)?\s+)?directive\b[\s.!]*(?:to\s*:?\s*(?:the\s+)?default[\s.!]*)?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    text: str = ""


def detect_command(message: str) -> Command | None:
    text = (message or "").strip()
    if not text:
        return None

    if _RESET_DIRECTIVE_RE.match(text):
        return Command("reset_directive")

    match = _SET_DIRECTIVE_RE.match(text)
    if match:
        body = match.group("text").strip().lstrip(":").strip()
        if body:
            return Command("set_directive", body)

    match = _REMEMBER_RE.match(text)
    if match:
        body = match.group("text").strip().rstrip(".").strip()
        if body:
            return Command("remember", body)

    return None


def acknowledgement(command: Command, *, fact_id: int | None = None) -> str:
    if command.kind == "remember":
        suffix = f" (fact #{fact_id})" if fact_id is not None else ""
        return f"Got it, I'll remember that{suffix}: _{command.text}_"
    if command.kind == "set_directive":
        return "Channel directive updated. I'll follow it from now on."
    return "Channel directive reset to the default."
