from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from triage_bot.config.settings import ModelParams
from triage_bot.errors import ModelUnavailableError, TransientExternalError
from triage_bot.llm import prompts
from triage_bot.llm.backoff import ExponentialBackoffParams, retry_transient
from triage_bot.llm.service import CompletionProvider
from triage_bot.logging import get_logger
from triage_bot.types import Classification, IssueKind, MessageRecord, Urgency


logger = get_logger(__name__)

UNCLASSIFIED = Classification(IssueKind.other, Urgency.normal, needs_search=False, degraded=True)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_MAX_TERMS = 8


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_classification(text: str) -> Classification:
    """Parse the model's JSON answer; raise ``ValueError`` if there is none."""

    raw = _FENCE_RE.sub("", (text or "").strip())
    start, end = raw.find("{"), raw.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("no JSON object in classification answer")
    data = json.loads(raw[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("classification answer is not an object")

    terms_raw = data.get("search_terms") or []
    if isinstance(terms_raw, str):
        terms_raw = [terms_raw]
    terms = tuple(str(term).strip() for term in terms_raw if str(term).strip())[:_MAX_TERMS]
    needs_search = _is_truthy(data.get("needs_search")) and bool(terms)
    return Classification(
        kind=IssueKind.parse(data.get("kind")),
        urgency=Urgency.parse(data.get("urgency")),
        needs_search=needs_search,
        search_terms=terms if needs_search else (),
    )


class ClassificationStage:
    """Cheap, low-temperature triage of one message.

    Never raises for model problems: retries transient failures with
    backoff, then falls back to ``Other / Normal`` marked degraded.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        params: ModelParams,
        *,
        max_retries: int = 3,
        backoff: ExponentialBackoffParams | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.params = params
        self.max_retries = max_retries
        self.backoff = backoff or ExponentialBackoffParams()
        self._sleep = sleep

    async def classify(
        self,
        message: str,
        channel_directive: str,
        recent_history: Sequence[MessageRecord] = (),
    ) -> Classification:
        system_prompt = prompts.classification_system_prompt(channel_directive)
        messages = [{"role": "user", "content": prompts.classification_user_prompt(message, recent_history)}]

        try:
            completion = await retry_transient(
                lambda: self.provider.complete(system_prompt, messages, None, self.params),
                max_retries=self.max_retries,
                params=self.backoff,
                label="classification",
                sleep=self._sleep,
            )
        except TransientExternalError as exc:
            logger.warning("Classification gave up after %s retries: %s", self.max_retries, exc)
            return UNCLASSIFIED
        except ModelUnavailableError as exc:
            logger.warning("Classification model unavailable: %s", exc)
            return UNCLASSIFIED

        try:
            return parse_classification(completion.text)
        except ValueError as exc:
            logger.warning("Unparseable classification answer (%s): %.200s", exc, completion.text)
            return UNCLASSIFIED
