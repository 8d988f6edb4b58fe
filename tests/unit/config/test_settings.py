import pytest

from triage_bot.config.settings import ModelParams, Settings, is_reasoning_model
from triage_bot.errors import ConfigurationError


def test_defaults_follow_dev_profile():
    settings = Settings.from_env({})
    assert settings.profile == "dev"
    assert settings.llm_provider == "stub"
    assert settings.search_model.model == "gpt-4.1"
    assert settings.search_model.temperature == 0.0
    assert settings.assistant_model.model == "o3"
    assert settings.assistant_model.reasoning_effort == "medium"
    assert settings.assistant_model.max_output_tokens == 65536
    assert settings.max_tool_iterations == 10
    assert settings.trace_runs is True


def test_prod_profile_requires_api_key_for_openai():
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        Settings.from_env({"TRIAGE_BOT_PROFILE": "prod"})

    settings = Settings.from_env({"TRIAGE_BOT_PROFILE": "prod", "OPENAI_API_KEY": "sk-test"})
    assert settings.llm_provider == "openai"
    assert settings.trace_runs is False


def test_out_of_range_values_are_rejected():
    with pytest.raises(ConfigurationError, match="TRIAGE_BOT_ASSISTANT_AGENT_TEMPERATURE"):
        Settings.from_env({"TRIAGE_BOT_ASSISTANT_AGENT_TEMPERATURE": "2.5"})
    with pytest.raises(ConfigurationError, match="integer"):
        Settings.from_env({"TRIAGE_BOT_MAX_TOOL_ITERATIONS": "ten"})
    with pytest.raises(ConfigurationError, match="one of"):
        Settings.from_env({"TRIAGE_BOT_AUTO_RESPOND": "sometimes"})


def test_channel_directives_parse_as_json_object():
    settings = Settings.from_env({"TRIAGE_BOT_CHANNEL_DIRECTIVES": '{"C1": "Be brief.", "C2": ""}'})
    assert settings.channel_directives == {"C1": "Be brief."}

    with pytest.raises(ConfigurationError):
        Settings.from_env({"TRIAGE_BOT_CHANNEL_DIRECTIVES": '["C1"]'})


def test_reasoning_models_send_effort_instead_of_temperature():
    assert is_reasoning_model("o3")
    assert is_reasoning_model("openai/o4-mini")
    assert not is_reasoning_model("gpt-4.1")
    assert not is_reasoning_model("olmo")

    reasoning = ModelParams("o3", 0.7, "high", 100).request_fields()
    assert reasoning == {"model": "o3", "max_completion_tokens": 100, "reasoning_effort": "high"}

    sampling = ModelParams("gpt-4.1", 0.2, "low", 100).request_fields()
    assert sampling["temperature"] == 0.2
    assert "reasoning_effort" not in sampling


def test_require_slack_needs_both_tokens():
    settings = Settings.from_env({"SLACK_BOT_TOKEN": "xoxb-1"})
    with pytest.raises(ConfigurationError):
        settings.require_slack()
    settings = settings.with_overrides(slack_app_token="xapp-1")
    assert settings.require_slack() == ("xoxb-1", "xapp-1")
