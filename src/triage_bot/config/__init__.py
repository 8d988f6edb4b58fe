from triage_bot.config.settings import ModelParams, Settings

__all__ = ["ModelParams", "Settings"]
