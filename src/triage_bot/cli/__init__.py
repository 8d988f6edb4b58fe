from triage_bot.config.settings import Settings
from triage_bot.errors import ConfigurationError


def settings_or_exit(**overrides) -> Settings:
    """Load settings, turning configuration problems into a clean CLI exit."""

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc
    return settings.with_overrides(**overrides) if overrides else settings
