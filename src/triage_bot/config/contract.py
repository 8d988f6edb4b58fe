from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


Profile = Literal["dev", "prod"]
VarKind = Literal["string", "bool", "int", "float", "path", "url", "json"]

TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
FALSY = frozenset({"0", "false", "no", "n", "off"})


@dataclass(frozen=True)
class RequiredIf:
    key: str
    equals: str


@dataclass(frozen=True)
class VarSpec:
    key: str
    kind: VarKind
    group: str
    description: str
    required_in: frozenset[Profile] = field(default_factory=frozenset)
    required_if: RequiredIf | None = None
    default_by_profile: dict[Profile, str] = field(default_factory=dict)
    choices: tuple[str, ...] = ()
    secret: bool = False
    min_value: float | None = None
    max_value: float | None = None
    prefix: str | None = None

    def default_for(self, profile: Profile) -> str | None:
        raw = (self.default_by_profile.get(profile) or "").strip()
        return raw or None


def _same(value: str) -> dict[Profile, str]:
    return {"dev": value, "prod": value}


def default_contract() -> tuple[VarSpec, ...]:
    """Contract for env vars read by the triage bot."""

    return (
        VarSpec(
            key="TRIAGE_BOT_PROFILE",
            kind="string",
            group="General",
            description="Deployment profile used for defaults and required checks.",
            default_by_profile={"dev": "dev", "prod": "prod"},
            choices=("dev", "prod"),
        ),
        # Chat
        VarSpec(
            key="SLACK_BOT_TOKEN",
            kind="string",
            group="Chat",
            description="Slack bot token (xoxb-...) used to post replies and reactions.",
            required_in=frozenset({"prod"}),
            prefix="xoxb-",
            secret=True,
        ),
        VarSpec(
            key="SLACK_APP_TOKEN",
            kind="string",
            group="Chat",
            description="Slack app-level token (xapp-...) for Socket Mode.",
            required_in=frozenset({"prod"}),
            prefix="xapp-",
            secret=True,
        ),
        VarSpec(
            key="TRIAGE_BOT_AUTO_RESPOND",
            kind="string",
            group="Chat",
            description="Which non-mention messages the bot answers: top_level, all or mentions (mentions only).",
            default_by_profile=_same("top_level"),
            choices=("top_level", "all", "mentions"),
        ),
        # Model
        VarSpec(
            key="TRIAGE_BOT_LLM_PROVIDER",
            kind="string",
            group="Model",
            description="Completion provider: openai (any OpenAI-compatible endpoint) or stub.",
            default_by_profile={"dev": "stub", "prod": "openai"},
            choices=("openai", "stub"),
        ),
        VarSpec(
            key="OPENAI_API_KEY",
            kind="string",
            group="Model",
            description="API key for the OpenAI-compatible endpoint.",
            required_if=RequiredIf(key="TRIAGE_BOT_LLM_PROVIDER", equals="openai"),
            secret=True,
        ),
        VarSpec(
            key="TRIAGE_BOT_LLM_BASE_URL",
            kind="url",
            group="Model",
            description="Base URL of the OpenAI-compatible endpoint (with or without /v1).",
            default_by_profile=_same("https://api.openai.com"),
        ),
        VarSpec(
            key="TRIAGE_BOT_SEARCH_AGENT_MODEL",
            kind="string",
            group="Model",
            description="Model used by the classification/search stage.",
            default_by_profile=_same("gpt-4.1"),
        ),
        VarSpec(
            key="TRIAGE_BOT_ASSISTANT_AGENT_MODEL",
            kind="string",
            group="Model",
            description="Model used by the tool-augmented assistant stage.",
            default_by_profile=_same("o3"),
        ),
        VarSpec(
            key="TRIAGE_BOT_SEARCH_AGENT_TEMPERATURE",
            kind="float",
            group="Model",
            description="Sampling temperature for the search stage (0-2, non-reasoning models only).",
            default_by_profile=_same("0.0"),
            min_value=0.0,
            max_value=2.0,
        ),
        VarSpec(
            key="TRIAGE_BOT_ASSISTANT_AGENT_TEMPERATURE",
            kind="float",
            group="Model",
            description="Sampling temperature for the assistant stage (0-2, non-reasoning models only).",
            default_by_profile=_same("0.7"),
            min_value=0.0,
            max_value=2.0,
        ),
        VarSpec(
            key="TRIAGE_BOT_SEARCH_AGENT_REASONING_EFFORT",
            kind="string",
            group="Model",
            description="Reasoning effort for o-series search models.",
            default_by_profile=_same("low"),
            choices=("low", "medium", "high"),
        ),
        VarSpec(
            key="TRIAGE_BOT_ASSISTANT_AGENT_REASONING_EFFORT",
            kind="string",
            group="Model",
            description="Reasoning effort for o-series assistant models.",
            default_by_profile=_same("medium"),
            choices=("low", "medium", "high"),
        ),
        VarSpec(
            key="TRIAGE_BOT_MAX_OUTPUT_TOKENS",
            kind="int",
            group="Model",
            description="Max output tokens per completion.",
            default_by_profile=_same("65536"),
            min_value=1,
            max_value=128_000,
        ),
        VarSpec(
            key="TRIAGE_BOT_SYSTEM_DIRECTIVE",
            kind="string",
            group="Model",
            description="Override for the built-in default channel directive.",
        ),
        VarSpec(
            key="TRIAGE_BOT_MENTION_DIRECTIVE",
            kind="string",
            group="Model",
            description="Override for the built-in assistant addendum.",
        ),
        VarSpec(
            key="TRIAGE_BOT_CHANNEL_DIRECTIVES",
            kind="json",
            group="Model",
            description='JSON object of per-channel directive overrides, e.g. {"C123": "..."}.',
        ),
        # Bounds
        VarSpec(
            key="TRIAGE_BOT_LLM_TIMEOUT_SECONDS",
            kind="float",
            group="Bounds",
            description="Timeout for a single completion request.",
            default_by_profile=_same("60"),
            min_value=1,
        ),
        VarSpec(
            key="TRIAGE_BOT_LLM_MAX_RETRIES",
            kind="int",
            group="Bounds",
            description="Retries for transient model failures (rate limit, timeout).",
            default_by_profile=_same("3"),
            min_value=0,
            max_value=10,
        ),
        VarSpec(
            key="TRIAGE_BOT_RETRY_BASE_SECONDS",
            kind="float",
            group="Bounds",
            description="Base delay for exponential retry backoff.",
            default_by_profile=_same("0.5"),
            min_value=0.001,
        ),
        VarSpec(
            key="TRIAGE_BOT_MAX_TOOL_ITERATIONS",
            kind="int",
            group="Bounds",
            description="Max tool invocations per run before the answer is degraded.",
            default_by_profile=_same("10"),
            min_value=1,
            max_value=100,
        ),
        VarSpec(
            key="TRIAGE_BOT_MAX_CONCURRENT_TOOL_CALLS",
            kind="int",
            group="Bounds",
            description="Max tool calls running at once within a run.",
            default_by_profile=_same("4"),
            min_value=1,
            max_value=64,
        ),
        VarSpec(
            key="TRIAGE_BOT_TOOL_TIMEOUT_SECONDS",
            kind="float",
            group="Bounds",
            description="Timeout for a single tool invocation.",
            default_by_profile=_same("30"),
            min_value=0.1,
        ),
        VarSpec(
            key="TRIAGE_BOT_RUN_TIMEOUT_SECONDS",
            kind="float",
            group="Bounds",
            description="Wall-clock budget for one run (classification + assistant).",
            default_by_profile=_same("300"),
            min_value=1,
        ),
        VarSpec(
            key="TRIAGE_BOT_STORE_TIMEOUT_SECONDS",
            kind="float",
            group="Bounds",
            description="Timeout for a single context store read or write.",
            default_by_profile=_same("10"),
            min_value=0.1,
        ),
        VarSpec(
            key="TRIAGE_BOT_MAX_CONCURRENT_RUNS",
            kind="int",
            group="Bounds",
            description="Max runs in flight across all channels; excess events queue.",
            default_by_profile=_same("16"),
            min_value=1,
        ),
        VarSpec(
            key="TRIAGE_BOT_HISTORY_LIMIT",
            kind="int",
            group="Bounds",
            description="Recent channel messages included in prompts.",
            default_by_profile=_same("20"),
            min_value=0,
            max_value=500,
        ),
        VarSpec(
            key="TRIAGE_BOT_SHUTDOWN_GRACE_SECONDS",
            kind="float",
            group="Bounds",
            description="Grace period for in-flight runs on shutdown.",
            default_by_profile=_same("20"),
            min_value=0,
        ),
        # Storage
        VarSpec(
            key="TRIAGE_BOT_DB_PATH",
            kind="path",
            group="Storage",
            description="SQLite DB path or sqlite:/// URI for channel state, facts and messages.",
            default_by_profile={"dev": "~/.triage-bot/triage-bot.db", "prod": "/var/lib/triage-bot/triage-bot.db"},
        ),
        VarSpec(
            key="TRIAGE_BOT_TRACE_RUNS",
            kind="bool",
            group="Storage",
            description="Persist per-run tool invocation traces.",
            default_by_profile={"dev": "1", "prod": "0"},
        ),
        # Tools
        VarSpec(
            key="TRIAGE_BOT_MCP_CONFIG",
            kind="path",
            group="Tools",
            description="Path to the mcp.json file listing tool servers.",
            default_by_profile=_same("mcp.json"),
        ),
    )


def contract_by_key(contract: tuple[VarSpec, ...] | None = None) -> dict[str, VarSpec]:
    return {spec.key: spec for spec in (contract or default_contract())}
