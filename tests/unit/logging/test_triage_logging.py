"""Tests for logging utilities."""

import logging

from triage_bot.logging import get_logger, reset_logger
from triage_bot.logging.config import level_from_name, load_log_level, save_log_level


def test_reset_logger_allows_reconfiguration(tmp_path):
    log1 = tmp_path / "first.log"
    log2 = tmp_path / "second.log"

    logger = get_logger("triage-test", log_file_path=log1, console=False)
    logger.info("first message")
    for handler in logger.handlers:
        handler.flush()
    assert "first message" in log1.read_text()

    reset_logger("triage-test")
    assert logging.getLogger("triage-test").handlers == []

    logger2 = get_logger("triage-test", log_file_path=log2, console=False)
    logger2.info("second message")
    for handler in logger2.handlers:
        handler.flush()

    assert "second message" in log2.read_text()
    assert "second message" not in log1.read_text()
    reset_logger("triage-test")


def test_saved_level_is_used_for_new_loggers(tmp_path):
    config_file = tmp_path / "logging.json"
    save_log_level("debug", config_file)
    assert load_log_level(config_file) == logging.DEBUG


def test_env_level_overrides_saved_level(tmp_path, monkeypatch):
    config_file = tmp_path / "logging.json"
    save_log_level("ERROR", config_file)
    monkeypatch.setenv("TRIAGE_BOT_LOG_LEVEL", "warning")
    assert load_log_level(config_file) == logging.WARNING


def test_level_from_name_rejects_unknown_names():
    assert level_from_name("INFO") == logging.INFO
    assert level_from_name(15) == 15
    assert level_from_name("chatty") is None
    assert level_from_name(None) is None
