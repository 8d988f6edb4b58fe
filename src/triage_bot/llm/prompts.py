"""Prompt text and builders for the two pipeline stages."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence

from triage_bot.types import Classification, ContextFact, MessageRecord


NO_ACTION = "NO_ACTION"

DEFAULT_DIRECTIVE = """\
# Prime Directive

You are a triage bot lurking in a team support channel. You help when you can
and get out of the way when you can't. You are not a replacement for a human.

For a new request you should, when the context makes it possible:
1. tag the on-call owner for the affected area,
2. give a short summary of the issue,
3. point at related threads, docs or incidents you were shown,
4. give a high-confidence recommendation or ask a clarifying question,
5. say so plainly when you cannot help, tagging someone who might.

Announcements and chatter that do not ask for help need no reply.
Use Slack markdown (bold, italics, links, @-mentions) sparingly.
"""

ASSISTANT_ADDENDUM = f"""\
# Working rules

- You may call the tools you are offered. Tool results come back as JSON with
  an "ok" flag; a failed tool is information, not a reason to stop.
- Channel state (facts, directive, on-call owners, tags, reactions) only
  changes through the matching tools. Calling them records the change; it is
  applied after you answer.
- Reply with exactly {NO_ACTION} if the message needs no reply.
- Otherwise your final message is posted verbatim in the thread.
"""

MENTION_ADDENDUM = """\
# @-mention

You were mentioned directly, usually inside a thread. Help as best you can.
If the user asks you to remember something about the channel, record it as a
fact. If they ask you to replace how you behave in this channel, update the
channel directive instead. If unsure which they mean, ask.
"""

CLASSIFICATION_PROMPT = """\
You triage messages posted to a support channel. Classify the latest message
and decide whether searching earlier channel messages would help answer it.

Respond with a single JSON object and nothing else:
{"kind": "Bug|Feature|Question|Incident|Other",
 "urgency": "Low|Normal|High|Critical",
 "needs_search": true|false,
 "search_terms": ["short", "keyword", "phrases"]}

Use "Incident" for outages or production impact that is happening now.
search_terms must be empty when needs_search is false.
"""


def _format_history(history: Sequence[MessageRecord]) -> str:
    lines = []
    for record in history:
        thread = f" (thread {record.thread_ts})" if record.thread_ts and record.thread_ts != record.ts else ""
        lines.append(f"[{record.ts}] {record.author}{thread}: {record.text}")
    return "\n".join(lines)


def _format_facts(facts: Iterable[ContextFact]) -> str:
    return "\n".join(f"- (#{fact.fact_id}) {fact.text}" for fact in facts)


def classification_system_prompt(channel_directive: str) -> str:
    return f"{CLASSIFICATION_PROMPT}\n# Channel directive (for context)\n{channel_directive.strip()}\n"


def classification_user_prompt(message: str, recent_history: Sequence[MessageRecord]) -> str:
    parts = []
    if recent_history:
        parts.append("Recent channel messages:\n" + _format_history(recent_history))
    parts.append("Latest message:\n" + message.strip())
    return "\n\n".join(parts)


def assistant_system_prompt(
    *,
    directive: str,
    oncall_map: Mapping[str, str],
    mentioned: bool = False,
    addendum: str | None = None,
    mention_addendum: str | None = None,
) -> str:
    sections = [directive.strip(), (addendum or ASSISTANT_ADDENDUM).strip()]
    if mentioned:
        sections.append((mention_addendum or MENTION_ADDENDUM).strip())
    if oncall_map:
        owners = "\n".join(f"- {topic}: {identity}" for topic, identity in sorted(oncall_map.items()))
        sections.append("# On-call owners\n" + owners)
    return "\n\n".join(sections) + "\n"


def assistant_context_message(
    *,
    author: str,
    classification: Classification,
    facts: Sequence[ContextFact],
    history: Sequence[MessageRecord],
    search_results: Sequence[MessageRecord] = (),
) -> str:
    """Render retrieved context as one user-role preamble."""

    parts = [f"Classification: {json.dumps(classification.to_dict())}", f"Author: {author}"]
    if facts:
        parts.append("Channel facts:\n" + _format_facts(facts))
    if search_results:
        parts.append("Related earlier messages:\n" + _format_history(search_results))
    if history:
        parts.append("Recent channel messages:\n" + _format_history(history))
    return "\n\n".join(parts)


def is_no_action(text: str | None) -> bool:
    return (text or "").strip().strip("`").strip().upper() == NO_ACTION
