from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from triage_bot.config.settings import ModelParams, Settings
from triage_bot.errors import ConfigurationError, ModelUnavailableError, TransientExternalError
from triage_bot.logging import get_logger


logger = get_logger(__name__)

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str = ""
    arguments_error: str | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments or json.dumps(self.arguments)},
        }


@dataclass(frozen=True)
class Completion:
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    model: str | None = None
    finish_reason: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def assistant_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message() for call in self.tool_calls]
        return message


class CompletionProvider(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None,
        params: ModelParams,
    ) -> Completion: ...


def _normalize_openai_base_url(value: str) -> str:
    """Strip ``/v1`` or endpoint suffixes so both spellings of the URL work."""

    raw = (value or "").strip().rstrip("/")
    for suffix in ("/v1/chat/completions", "/v1"):
        if raw.endswith(suffix):
            raw = raw[: -len(suffix)].rstrip("/")
            break
    return raw


def _truncate_text(value: str, *, limit: int = 2000) -> str:
    text = (value or "").strip()
    return text if len(text) <= limit else text[:limit]


def parse_tool_calls(raw_calls: Any) -> tuple[ToolCall, ...]:
    if not isinstance(raw_calls, list):
        return ()
    calls: list[ToolCall] = []
    for index, item in enumerate(raw_calls):
        if not isinstance(item, dict):
            continue
        function = item.get("function") if isinstance(item.get("function"), dict) else {}
        name = str(function.get("name") or "").strip()
        if not name:
            continue
        raw_args = function.get("arguments")
        arguments: dict[str, Any] = {}
        error: str | None = None
        if isinstance(raw_args, dict):
            arguments = raw_args
            raw_args = json.dumps(raw_args)
        elif isinstance(raw_args, str) and raw_args.strip():
            try:
                parsed = json.loads(raw_args)
            except json.JSONDecodeError as exc:
                error = f"arguments are not valid JSON: {exc}"
            else:
                if isinstance(parsed, dict):
                    arguments = parsed
                else:
                    error = "arguments must be a JSON object"
        calls.append(
            ToolCall(
                id=str(item.get("id") or f"call_{index}"),
                name=name,
                arguments=arguments,
                raw_arguments=str(raw_args or ""),
                arguments_error=error,
            )
        )
    return tuple(calls)


def parse_completion(data: Any) -> Completion:
    if not isinstance(data, dict):
        raise ModelUnavailableError("Completion response was not a JSON object.")
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ModelUnavailableError("Completion response had no choices.")
    choice0 = choices[0]
    message = choice0.get("message") if isinstance(choice0.get("message"), dict) else {}
    return Completion(
        text=str(message.get("content") or choice0.get("text") or ""),
        tool_calls=parse_tool_calls(message.get("tool_calls")),
        model=str(data.get("model") or "") or None,
        finish_reason=choice0.get("finish_reason"),
        meta={"usage": data["usage"]} if isinstance(data.get("usage"), dict) else {},
    )


class OpenAICompatibleProvider:
    """Chat completions over any OpenAI-compatible ``/v1/chat/completions`` endpoint.

    The HTTP call is blocking (``requests``) and runs in a worker thread.
    Rate limits, 5xx responses, timeouts and connection errors surface as
    :class:`TransientExternalError`; anything else as
    :class:`ModelUnavailableError`.
    """

    def __init__(self, *, base_url: str, api_key: str | None, timeout_seconds: float = 60.0) -> None:
        self.base_url = _normalize_openai_base_url(base_url)
        if not self.base_url:
            raise ConfigurationError("A base URL is required for the completion provider.")
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds)

    @property
    def url(self) -> str:
        return f"{self.base_url}/v1/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None,
        params: ModelParams,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": False,
            **params.request_fields(),
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"
        return payload

    def _post(self, payload: dict[str, Any]) -> Completion:
        # Some compatible servers still only accept the legacy max_tokens field.
        legacy = dict(payload)
        if "max_completion_tokens" in legacy:
            legacy["max_tokens"] = legacy.pop("max_completion_tokens")
        candidates = [("full", payload), ("legacy_max_tokens", legacy)]

        started = time.monotonic()
        last_status: int | None = None
        last_text = ""
        for label, candidate in candidates:
            try:
                response = requests.post(self.url, json=candidate, headers=self._headers(), timeout=self.timeout_seconds)
                response.raise_for_status()
                data = response.json()
            except requests.exceptions.HTTPError as exc:
                response_obj = getattr(exc, "response", None)
                last_status = getattr(response_obj, "status_code", None)
                last_text = _truncate_text(str(getattr(response_obj, "text", "") or ""))
                if last_status in _TRANSIENT_STATUS:
                    raise TransientExternalError(
                        f"Completion request failed with HTTP {last_status}", status_code=last_status
                    ) from exc
                if last_status in {400, 422} and label == "full":
                    logger.info("Completion request rejected (%s): %s; retrying with %s", last_status, last_text, "legacy_max_tokens")
                    continue
                raise ModelUnavailableError(f"Completion request failed with HTTP {last_status}") from exc
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                raise TransientExternalError(f"Completion request failed: {type(exc).__name__}") from exc
            except (requests.exceptions.RequestException, ValueError) as exc:
                raise ModelUnavailableError(f"Completion request failed: {type(exc).__name__}: {exc}") from exc

            completion = parse_completion(data)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.debug(
                "Completion ok (model=%s, tool_calls=%s, elapsed_ms=%s, attempt=%s)",
                completion.model,
                len(completion.tool_calls),
                elapsed_ms,
                label,
            )
            return completion

        logger.warning("Completion request failed (%s, status=%s): %s", self.url, last_status, last_text)
        raise ModelUnavailableError(f"Completion request failed with HTTP {last_status}")

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None,
        params: ModelParams,
    ) -> Completion:
        payload = self.build_payload(system_prompt, messages, tools, params)
        try:
            # requests enforces its own timeout; the outer one covers slow body reads.
            return await asyncio.wait_for(asyncio.to_thread(self._post, payload), timeout=self.timeout_seconds * 2)
        except asyncio.TimeoutError as exc:
            raise TransientExternalError("Completion request timed out") from exc


Responder = Callable[[str, Sequence[dict[str, Any]], Sequence[dict[str, Any]] | None, ModelParams], Completion]


@dataclass
class RecordedCall:
    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None
    params: ModelParams


class StubProvider:
    """Offline provider for local runs and tests.

    Scripted completions (or exceptions) are returned in order; once the
    script is empty the ``responder`` decides, defaulting to a canned answer.
    Every call is recorded on ``calls``.
    """

    def __init__(
        self,
        script: Iterable[Completion | Exception | str] = (),
        *,
        responder: Responder | None = None,
    ) -> None:
        self._script: deque[Completion | Exception | str] = deque(script)
        self._responder = responder or _default_responder
        self.calls: list[RecordedCall] = []

    def push(self, *items: Completion | Exception | str) -> None:
        self._script.extend(items)

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None,
        params: ModelParams,
    ) -> Completion:
        self.calls.append(RecordedCall(system_prompt, [dict(m) for m in messages], list(tools) if tools else None, params))
        await asyncio.sleep(0)
        if self._script:
            item = self._script.popleft()
            if isinstance(item, Exception):
                raise item
            if isinstance(item, str):
                return Completion(text=item, model=params.model)
            return item
        return self._responder(system_prompt, messages, tools, params)


def _default_responder(
    system_prompt: str,
    messages: Sequence[dict[str, Any]],
    tools: Sequence[dict[str, Any]] | None,
    params: ModelParams,
) -> Completion:
    if '"needs_search"' in system_prompt:
        return Completion(
            text=json.dumps({"kind": "Question", "urgency": "Normal", "needs_search": False, "search_terms": []}),
            model=params.model,
        )
    return Completion(text="Thanks, I've noted this; someone from the team will follow up.", model=params.model)


def build_provider(settings: Settings) -> CompletionProvider:
    if settings.llm_provider == "stub":
        logger.warning("Using the stub completion provider; replies are canned.")
        return StubProvider()
    if settings.llm_provider == "openai":
        return OpenAICompatibleProvider(
            base_url=settings.llm_base_url,
            api_key=settings.openai_api_key,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    raise ConfigurationError(f"Unknown completion provider: {settings.llm_provider!r}")
