from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from triage_bot.config.settings import ModelParams
from triage_bot.errors import ModelUnavailableError, ToolError, TransientExternalError
from triage_bot.llm import prompts
from triage_bot.llm.backoff import ExponentialBackoffParams, retry_transient
from triage_bot.llm.service import Completion, CompletionProvider, ToolCall
from triage_bot.logging import get_logger
from triage_bot.store.base import ContextStore
from triage_bot.tools.builtin import ToolContext, unlocks_restricted_tools
from triage_bot.tools.gateway import ToolCatalog, ToolGateway
from triage_bot.types import (
    AssistantResult,
    ChannelState,
    Classification,
    ContextFact,
    InboundEvent,
    MessageRecord,
    PendingMutations,
    ToolInvocationRecord,
    ToolResult,
)


logger = get_logger(__name__)

_BUDGET_NOTE = (
    "The tool budget for this message is spent. Do not call more tools; "
    "answer now with what you have, and say what you could not confirm."
)


def _truncate_text(value: str, *, limit: int = 4000) -> str:
    text = value or ""
    return text if len(text) <= limit else text[:limit] + "..."


class AssistantStage:
    """Tool-augmented reasoning loop for one message.

    Each model turn may request several tool calls; they run concurrently
    (bounded per run) and their results are appended in request order. The
    loop stops when the model answers without tools or when
    ``max_tool_iterations`` tool invocations have been spent, in which case
    the model gets one last tool-free turn and the result is marked
    exhausted.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        gateway: ToolGateway,
        params: ModelParams,
        *,
        max_tool_iterations: int = 10,
        max_concurrent_tool_calls: int = 4,
        tool_timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff: ExponentialBackoffParams | None = None,
        addendum: str | None = None,
        mention_addendum: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be >= 1")
        self.provider = provider
        self.gateway = gateway
        self.params = params
        self.max_tool_iterations = int(max_tool_iterations)
        self.max_concurrent_tool_calls = max(1, int(max_concurrent_tool_calls))
        self.tool_timeout_seconds = float(tool_timeout_seconds)
        self.max_retries = max_retries
        self.backoff = backoff or ExponentialBackoffParams()
        self.addendum = addendum
        self.mention_addendum = mention_addendum
        self._sleep = sleep

    async def _complete(
        self, system_prompt: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None
    ) -> Completion:
        return await retry_transient(
            lambda: self.provider.complete(system_prompt, messages, tools, self.params),
            max_retries=self.max_retries,
            params=self.backoff,
            label="assistant completion",
            sleep=self._sleep,
        )

    async def _invoke_one(
        self,
        call: ToolCall,
        offered: ToolCatalog,
        context: ToolContext,
        semaphore: asyncio.Semaphore,
    ) -> ToolResult | ToolError:
        if offered.get(call.name) is None:
            return ToolError(call.name, "unknown_tool", f"Tool {call.name!r} is not available here.")
        if call.arguments_error:
            return ToolError(call.name, "invalid_arguments", call.arguments_error)
        async with semaphore:
            return await self.gateway.invoke(call.name, call.arguments, self.tool_timeout_seconds, context=context)

    async def run_tool_calls(
        self,
        calls: Sequence[ToolCall],
        offered: ToolCatalog,
        context: ToolContext,
    ) -> list[ToolResult | ToolError]:
        """Run one turn's calls concurrently; results keep request order."""

        semaphore = asyncio.Semaphore(self.max_concurrent_tool_calls)
        return list(await asyncio.gather(*(self._invoke_one(call, offered, context, semaphore) for call in calls)))

    async def respond(
        self,
        message: InboundEvent,
        channel_state: ChannelState,
        classification: Classification,
        tool_catalog: ToolCatalog,
        *,
        facts: Sequence[ContextFact] = (),
        history: Sequence[MessageRecord] = (),
        search_results: Sequence[MessageRecord] = (),
        store: ContextStore | None = None,
        mutations: PendingMutations | None = None,
    ) -> AssistantResult:
        """Answer ``message``.

        Raises :class:`ModelUnavailableError` (or the final
        :class:`TransientExternalError`) only when the very first model turn
        fails; later failures return the partial result with ``model_error``
        set.
        """

        mutations = mutations if mutations is not None else PendingMutations()
        context = ToolContext(
            channel_id=message.channel_id,
            author=message.author,
            mutations=mutations,
            store=store,
            message_ts=message.ts,
        )
        offered = tool_catalog.offered(include_restricted=unlocks_restricted_tools(message.text))
        tools = offered.openai_tools() or None

        system_prompt = prompts.assistant_system_prompt(
            directive=channel_state.directive,
            oncall_map=channel_state.oncall_map,
            mentioned=message.mentions_bot,
            addendum=self.addendum,
            mention_addendum=self.mention_addendum,
        )
        conversation: list[dict[str, Any]] = [
            {
                "role": "user",
                "content": prompts.assistant_context_message(
                    author=message.author,
                    classification=classification,
                    facts=facts,
                    history=history,
                    search_results=search_results,
                ),
            },
            {"role": "user", "content": message.text},
        ]

        records: list[ToolInvocationRecord] = []
        iterations = 0
        turns = 0
        partial = ""

        def result(reply: str, **extra: Any) -> AssistantResult:
            no_action = prompts.is_no_action(reply)
            return AssistantResult(
                reply="" if no_action else reply.strip(),
                mutations=mutations,
                tool_invocations=records,
                iterations=iterations,
                no_action=no_action,
                **extra,
            )

        while True:
            try:
                completion = await self._complete(system_prompt, conversation, tools)
            except (ModelUnavailableError, TransientExternalError) as exc:
                if turns == 0:
                    raise
                logger.warning("Assistant model failed after %s turn(s): %s", turns, exc)
                return result(partial, model_error=str(exc))
            turns += 1
            if completion.text.strip():
                partial = completion.text

            if not completion.tool_calls:
                return result(completion.text)

            remaining = self.max_tool_iterations - iterations
            calls = list(completion.tool_calls[:remaining])
            conversation.append(
                Completion(text=completion.text, tool_calls=tuple(calls)).assistant_message()
            )
            outcomes = await self.run_tool_calls(calls, offered, context)
            iterations += len(calls)

            for call, outcome in zip(calls, outcomes):
                records.append(
                    ToolInvocationRecord(
                        tool_name=call.name,
                        arguments=dict(call.arguments),
                        result=outcome.content if isinstance(outcome, ToolResult) else None,
                        error=None if isinstance(outcome, ToolResult) else f"{outcome.kind}: {outcome.message}",
                        duration_ms=outcome.duration_ms,
                    )
                )
                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": _truncate_text(json.dumps(outcome.to_payload(), ensure_ascii=False), limit=20_000),
                    }
                )

            if iterations >= self.max_tool_iterations:
                logger.info(
                    "Tool budget of %s spent in %s (%s turn(s))", self.max_tool_iterations, message.channel_id, turns
                )
                conversation.append({"role": "user", "content": _BUDGET_NOTE})
                try:
                    final = await self._complete(system_prompt, conversation, None)
                except (ModelUnavailableError, TransientExternalError) as exc:
                    logger.warning("Final turn after budget failed: %s", exc)
                    return result(partial, exhausted=True)
                return result(final.text.strip() or partial, exhausted=True)
