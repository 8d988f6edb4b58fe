"""Runtime settings resolved from the environment.

Defaults live in :mod:`triage_bot.config.contract`; this module only parses
and bounds-checks them into a frozen :class:`Settings`.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from triage_bot.config.contract import FALSY, TRUTHY, Profile, VarSpec, contract_by_key
from triage_bot.errors import ConfigurationError
from triage_bot.llm.backoff import ExponentialBackoffParams



def is_reasoning_model(model: str) -> bool:
    """o-series models take a reasoning effort instead of a temperature."""

    name = (model or "").strip().lower().rsplit("/", 1)[-1]
    return len(name) > 1 and name[0] == "o" and name[1].isdigit()


@dataclass(frozen=True)
class ModelParams:
    model: str
    temperature: float
    reasoning_effort: str
    max_output_tokens: int

    def request_fields(self) -> dict[str, Any]:
        """Sampling fields for a chat completion request body."""

        payload: dict[str, Any] = {"model": self.model, "max_completion_tokens": self.max_output_tokens}
        if is_reasoning_model(self.model):
            payload["reasoning_effort"] = self.reasoning_effort
        else:
            payload["temperature"] = self.temperature
        return payload


class _Reader:
    def __init__(self, env: Mapping[str, str], profile: Profile) -> None:
        self._env = env
        self._profile = profile
        self._specs = contract_by_key()

    def _spec(self, key: str) -> VarSpec:
        return self._specs[key]

    def raw(self, key: str) -> str | None:
        value = (self._env.get(key) or "").strip()
        if value:
            return value
        return self._spec(key).default_for(self._profile)

    def text(self, key: str) -> str | None:
        value = self.raw(key)
        spec = self._spec(key)
        if value is not None and spec.choices and value not in spec.choices:
            raise ConfigurationError(f"{key} must be one of: {', '.join(spec.choices)} (got {value!r})")
        return value

    def _bounded(self, key: str, value: float) -> None:
        spec = self._spec(key)
        if spec.min_value is not None and value < spec.min_value:
            raise ConfigurationError(f"{key} must be >= {spec.min_value} (got {value})")
        if spec.max_value is not None and value > spec.max_value:
            raise ConfigurationError(f"{key} must be <= {spec.max_value} (got {value})")

    def integer(self, key: str) -> int:
        raw = self.raw(key)
        try:
            value = int(str(raw))
        except ValueError as exc:
            raise ConfigurationError(f"{key} must be an integer (got {raw!r})") from exc
        self._bounded(key, value)
        return value

    def number(self, key: str) -> float:
        raw = self.raw(key)
        try:
            value = float(str(raw))
        except ValueError as exc:
            raise ConfigurationError(f"{key} must be a number (got {raw!r})") from exc
        self._bounded(key, value)
        return value

    def flag(self, key: str) -> bool:
        raw = (self.raw(key) or "").lower()
        if raw in TRUTHY:
            return True
        if raw in FALSY or not raw:
            return False
        raise ConfigurationError(f"{key} must be a boolean (got {raw!r})")

    def mapping(self, key: str) -> dict[str, str]:
        raw = self.raw(key)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"{key} must be a JSON object: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError(f"{key} must be a JSON object")
        return {str(k): str(v) for k, v in parsed.items() if str(v).strip()}


@dataclass(frozen=True)
class Settings:
    profile: Profile = "dev"

    slack_bot_token: str | None = None
    slack_app_token: str | None = None
    auto_respond: str = "top_level"

    llm_provider: str = "stub"
    llm_base_url: str = "https://api.openai.com"
    openai_api_key: str | None = None
    search_model: ModelParams = ModelParams("gpt-4.1", 0.0, "low", 65536)
    assistant_model: ModelParams = ModelParams("o3", 0.7, "medium", 65536)
    system_directive: str | None = None
    mention_directive: str | None = None
    channel_directives: dict[str, str] = field(default_factory=dict)

    llm_timeout_seconds: float = 60.0
    llm_max_retries: int = 3
    backoff: ExponentialBackoffParams = field(default_factory=ExponentialBackoffParams)
    max_tool_iterations: int = 10
    max_concurrent_tool_calls: int = 4
    tool_timeout_seconds: float = 30.0
    run_timeout_seconds: float = 300.0
    store_timeout_seconds: float = 10.0
    max_concurrent_runs: int = 16
    history_limit: int = 20
    shutdown_grace_seconds: float = 20.0

    db_path: str = "~/.triage-bot/triage-bot.db"
    trace_runs: bool = True
    mcp_config_path: str = "mcp.json"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, *, profile: Profile | None = None) -> "Settings":
        """Build settings from ``env`` (default ``os.environ``).

        Raises :class:`ConfigurationError` for out-of-range or malformed values
        and for credentials the chosen provider needs.
        """

        env = os.environ if env is None else env
        if profile is None:
            raw_profile = (env.get("TRIAGE_BOT_PROFILE") or "dev").strip().lower()
            if raw_profile not in {"dev", "prod"}:
                raise ConfigurationError(f"TRIAGE_BOT_PROFILE must be dev or prod (got {raw_profile!r})")
            profile = raw_profile  # type: ignore[assignment]
        read = _Reader(env, profile)

        max_tokens = read.integer("TRIAGE_BOT_MAX_OUTPUT_TOKENS")
        search_model = ModelParams(
            model=read.text("TRIAGE_BOT_SEARCH_AGENT_MODEL") or "gpt-4.1",
            temperature=read.number("TRIAGE_BOT_SEARCH_AGENT_TEMPERATURE"),
            reasoning_effort=read.text("TRIAGE_BOT_SEARCH_AGENT_REASONING_EFFORT") or "low",
            max_output_tokens=max_tokens,
        )
        assistant_model = ModelParams(
            model=read.text("TRIAGE_BOT_ASSISTANT_AGENT_MODEL") or "o3",
            temperature=read.number("TRIAGE_BOT_ASSISTANT_AGENT_TEMPERATURE"),
            reasoning_effort=read.text("TRIAGE_BOT_ASSISTANT_AGENT_REASONING_EFFORT") or "medium",
            max_output_tokens=max_tokens,
        )

        provider = read.text("TRIAGE_BOT_LLM_PROVIDER") or "stub"
        api_key = read.raw("OPENAI_API_KEY")
        if provider == "openai" and not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required when TRIAGE_BOT_LLM_PROVIDER=openai")

        base_url = read.raw("TRIAGE_BOT_LLM_BASE_URL") or "https://api.openai.com"
        if not base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"TRIAGE_BOT_LLM_BASE_URL must be an http(s) URL (got {base_url!r})")

        return cls(
            profile=profile,
            slack_bot_token=read.raw("SLACK_BOT_TOKEN"),
            slack_app_token=read.raw("SLACK_APP_TOKEN"),
            auto_respond=read.text("TRIAGE_BOT_AUTO_RESPOND") or "top_level",
            llm_provider=provider,
            llm_base_url=base_url,
            openai_api_key=api_key,
            search_model=search_model,
            assistant_model=assistant_model,
            system_directive=read.raw("TRIAGE_BOT_SYSTEM_DIRECTIVE"),
            mention_directive=read.raw("TRIAGE_BOT_MENTION_DIRECTIVE"),
            channel_directives=read.mapping("TRIAGE_BOT_CHANNEL_DIRECTIVES"),
            llm_timeout_seconds=read.number("TRIAGE_BOT_LLM_TIMEOUT_SECONDS"),
            llm_max_retries=read.integer("TRIAGE_BOT_LLM_MAX_RETRIES"),
            backoff=ExponentialBackoffParams(base_seconds=read.number("TRIAGE_BOT_RETRY_BASE_SECONDS")),
            max_tool_iterations=read.integer("TRIAGE_BOT_MAX_TOOL_ITERATIONS"),
            max_concurrent_tool_calls=read.integer("TRIAGE_BOT_MAX_CONCURRENT_TOOL_CALLS"),
            tool_timeout_seconds=read.number("TRIAGE_BOT_TOOL_TIMEOUT_SECONDS"),
            run_timeout_seconds=read.number("TRIAGE_BOT_RUN_TIMEOUT_SECONDS"),
            store_timeout_seconds=read.number("TRIAGE_BOT_STORE_TIMEOUT_SECONDS"),
            max_concurrent_runs=read.integer("TRIAGE_BOT_MAX_CONCURRENT_RUNS"),
            history_limit=read.integer("TRIAGE_BOT_HISTORY_LIMIT"),
            shutdown_grace_seconds=read.number("TRIAGE_BOT_SHUTDOWN_GRACE_SECONDS"),
            db_path=read.raw("TRIAGE_BOT_DB_PATH") or "~/.triage-bot/triage-bot.db",
            trace_runs=read.flag("TRIAGE_BOT_TRACE_RUNS"),
            mcp_config_path=read.raw("TRIAGE_BOT_MCP_CONFIG") or "mcp.json",
        )

    def with_overrides(self, **changes: Any) -> "Settings":
        return replace(self, **changes)

    def resolved_db_path(self) -> str:
        if self.db_path.startswith("sqlite"):
            return self.db_path
        return str(Path(self.db_path).expanduser())

    def require_slack(self) -> tuple[str, str]:
        if not self.slack_bot_token or not self.slack_app_token:
            raise ConfigurationError("SLACK_BOT_TOKEN and SLACK_APP_TOKEN are required to run the Slack bot")
        return self.slack_bot_token, self.slack_app_token
