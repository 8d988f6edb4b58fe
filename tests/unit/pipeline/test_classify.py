import json

import pytest

from triage_bot.config.settings import ModelParams
from triage_bot.errors import ModelUnavailableError, TransientExternalError
from triage_bot.llm.backoff import ExponentialBackoffParams
from triage_bot.llm.service import StubProvider
from triage_bot.pipeline.classify import UNCLASSIFIED, ClassificationStage, parse_classification
from triage_bot.types import IssueKind, MessageRecord, Urgency


PARAMS = ModelParams("gpt-4.1", 0.0, "low", 256)


async def _no_sleep(delay):
    return None


def _stage(script, **kwargs):
    provider = StubProvider(script)
    stage = ClassificationStage(
        provider, PARAMS, backoff=ExponentialBackoffParams(base_seconds=0.01), sleep=_no_sleep, **kwargs
    )
    return stage, provider


def test_parse_classification_accepts_fenced_json():
    text = '```json\n{"kind": "bug", "urgency": "HIGH", "needs_search": true, "search_terms": ["ci", " ", "build"]}\n```'
    classification = parse_classification(text)
    assert classification.kind == IssueKind.bug
    assert classification.urgency == Urgency.high
    assert classification.needs_search is True
    assert classification.search_terms == ("ci", "build")
    assert classification.degraded is False


def test_parse_classification_needs_terms_to_search():
    classification = parse_classification('{"kind": "Question", "needs_search": true, "search_terms": []}')
    assert classification.needs_search is False
    assert classification.urgency == Urgency.normal


def test_parse_classification_maps_unknown_labels_to_defaults():
    classification = parse_classification('{"kind": "Rant", "urgency": "meh"}')
    assert (classification.kind, classification.urgency) == (IssueKind.other, Urgency.normal)
    with pytest.raises(ValueError):
        parse_classification("I think it's a bug")


@pytest.mark.asyncio
async def test_classify_sends_directive_and_history():
    answer = json.dumps({"kind": "Incident", "urgency": "Critical", "needs_search": False, "search_terms": []})
    stage, provider = _stage([answer])
    history = [MessageRecord("C1", "1.0", "U9", "api is down for everyone")]

    classification = await stage.classify("checkout returns 500s", "Payments channel.", history)

    assert classification.kind == IssueKind.incident
    call = provider.calls[0]
    assert "Payments channel." in call.system_prompt
    assert "api is down for everyone" in call.messages[0]["content"]
    assert call.tools is None
    assert call.params is PARAMS


@pytest.mark.asyncio
async def test_classify_retries_transient_failures():
    answer = json.dumps({"kind": "Question", "urgency": "Low"})
    stage, provider = _stage([TransientExternalError("429", status_code=429), answer])
    classification = await stage.classify("how do I rotate keys?", "d")
    assert classification.kind == IssueKind.question
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_classify_falls_back_when_model_is_down_or_garbled():
    stage, _ = _stage([TransientExternalError("busy")] * 3, max_retries=2)
    assert await stage.classify("x", "d") == UNCLASSIFIED

    stage, _ = _stage([ModelUnavailableError("bad key")])
    assert (await stage.classify("x", "d")).degraded is True

    stage, _ = _stage(["not json at all"])
    fallback = await stage.classify("x", "d")
    assert (fallback.kind, fallback.urgency, fallback.degraded) == (IssueKind.other, Urgency.normal, True)
