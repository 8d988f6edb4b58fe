"""Domain types passed between the orchestrator, its stages and adapters."""

from __future__ import annotations

import enum
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


class IssueKind(str, enum.Enum):
    bug = "Bug"
    feature = "Feature"
    question = "Question"
    incident = "Incident"
    other = "Other"

    @classmethod
    def parse(cls, value: Any) -> "IssueKind":
        raw = str(value or "").strip().lower()
        for item in cls:
            if item.value.lower() == raw:
                return item
        return cls.other


class Urgency(str, enum.Enum):
    low = "Low"
    normal = "Normal"
    high = "High"
    critical = "Critical"

    @classmethod
    def parse(cls, value: Any) -> "Urgency":
        raw = str(value or "").strip().lower()
        for item in cls:
            if item.value.lower() == raw:
                return item
        return cls.normal


# Reaction added to the triggering message once a run is classified.
CLASSIFICATION_EMOJI: dict[IssueKind, str] = {
    IssueKind.question: "question",
    IssueKind.feature: "bulb",
    IssueKind.bug: "bug",
    IssueKind.incident: "warning",
    IssueKind.other: "grey_question",
}


@dataclass(frozen=True)
class InboundEvent:
    """A chat message normalized by the chat adapter."""

    channel_id: str
    author: str
    text: str
    ts: str
    thread_ts: str | None = None
    mentions_bot: bool = False
    channel_type: str | None = None

    @property
    def reply_thread_ts(self) -> str:
        return self.thread_ts or self.ts

    @property
    def is_top_level(self) -> bool:
        return self.thread_ts is None or self.thread_ts == self.ts


@dataclass
class ChannelState:
    channel_id: str
    directive: str
    oncall_map: dict[str, str] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ContextFact:
    channel_id: str
    fact_id: int
    text: str
    added_by: str
    created_at: datetime
    supersedes: int | None = None


@dataclass(frozen=True)
class MessageRecord:
    channel_id: str
    ts: str
    author: str
    text: str
    thread_ts: str | None = None
    classification: str | None = None
    reply_ts: str | None = None


@dataclass(frozen=True)
class Classification:
    kind: IssueKind = IssueKind.other
    urgency: Urgency = Urgency.normal
    needs_search: bool = False
    search_terms: tuple[str, ...] = ()
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "urgency": self.urgency.value,
            "needs_search": self.needs_search,
            "search_terms": list(self.search_terms),
        }


@dataclass(frozen=True)
class ToolResult:
    tool_name: str
    content: str
    duration_ms: int = 0
    structured: Any = None

    @property
    def ok(self) -> bool:
        return True

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": True, "tool": self.tool_name, "content": self.content}
        if self.structured is not None:
            payload["structured"] = self.structured
        return payload


@dataclass(frozen=True)
class ToolInvocationRecord:
    tool_name: str
    arguments: dict[str, Any]
    result: str | None
    error: str | None
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PendingMutations:
    """State edits collected during a run and applied once at commit."""

    facts: list[str] = field(default_factory=list)
    supersede: dict[int, str] = field(default_factory=dict)
    directive: str | None = None
    oncall: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    reaction: str | None = None

    def is_empty(self) -> bool:
        return not (self.facts or self.supersede or self.directive is not None or self.oncall)

    def add_tag(self, identity: str) -> None:
        identity = identity.strip()
        if identity and identity not in self.tags:
            self.tags.append(identity)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AssistantResult:
    reply: str
    mutations: PendingMutations
    tool_invocations: list[ToolInvocationRecord] = field(default_factory=list)
    iterations: int = 0
    exhausted: bool = False
    no_action: bool = False
    model_error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.exhausted or self.model_error is not None

    @property
    def tags(self) -> list[str]:
        return list(self.mutations.tags)


class RunStatus(str, enum.Enum):
    answered = "answered"
    degraded = "degraded"
    command = "command"
    no_action = "no_action"
    failed = "failed"


@dataclass
class PipelineRun:
    event: InboundEvent
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    channel: ChannelState | None = None
    classification: Classification | None = None
    tool_invocations: list[ToolInvocationRecord] = field(default_factory=list)
    reply: str | None = None
    mutations: PendingMutations = field(default_factory=PendingMutations)
    iterations: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


@dataclass
class RunOutcome:
    status: RunStatus
    event: InboundEvent
    reply: str | None = None
    mutations: PendingMutations = field(default_factory=PendingMutations)
    classification: Classification | None = None
    run: PipelineRun | None = None
    error: str | None = None
    report: Any = None

    @property
    def degraded(self) -> bool:
        return self.status == RunStatus.degraded

    @property
    def tags(self) -> list[str]:
        return list(self.mutations.tags)

    @property
    def thread_ts(self) -> str:
        return self.event.reply_thread_ts

    @property
    def pending_mutations(self) -> PendingMutations:
        return self.mutations
