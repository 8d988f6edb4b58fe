"""Error taxonomy shared by the pipeline and its adapters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal


APOLOGY_MESSAGE = (
    "Sorry, I couldn't process this message right now. "
    "Someone from the team will take a look."
)
FALLBACK_REPLY = (
    "_I'm only partially confident in this answer; some lookups did not finish._"
)


class TriageBotError(Exception):
    """Base class for errors raised by triage-bot."""


class TransientExternalError(TriageBotError):
    """Rate limit, timeout or network blip; safe to retry with backoff."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelUnavailableError(TriageBotError):
    """The completion provider failed in a way retries will not fix."""


class ConfigurationError(TriageBotError):
    """A required credential or endpoint is missing or invalid."""


class BudgetExceededError(TriageBotError):
    """The tool-loop iteration cap or the run wall-clock budget was reached."""

    def __init__(self, message: str, *, budget: Literal["iterations", "wall_clock"]) -> None:
        super().__init__(message)
        self.budget = budget


class PersistenceError(TriageBotError):
    """The context store is unavailable or rejected a write."""


class ShuttingDown(TriageBotError):
    """Raised for events that arrive after shutdown began."""


ToolErrorKind = Literal["timeout", "transport", "tool", "unknown_tool", "invalid_arguments"]


@dataclass(frozen=True)
class ToolError:
    """A failed tool call.

    Tool failures are data: they are returned by the gateway and fed back to
    the model as a tool message, never raised out of the reasoning loop.
    """

    tool_name: str
    kind: ToolErrorKind
    message: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return False

    def to_payload(self) -> dict[str, Any]:
        return {"ok": False, "tool": self.tool_name, "error": {"kind": self.kind, "message": self.message}}


class ToolInvocationError(TriageBotError):
    """Exception form of :class:`ToolError`, used inside transports."""

    def __init__(self, message: str, *, kind: ToolErrorKind = "transport") -> None:
        super().__init__(message)
        self.kind = kind
