"""Slack support-channel triage bot."""

__version__ = "0.1.0"
