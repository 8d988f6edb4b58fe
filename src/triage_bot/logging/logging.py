# triage_bot/logging/logging.py
import os
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Names of loggers that already carry our handlers
_CONFIGURED = set()

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUPS = 3


def log_dir(path=None):
    if path is not None:
        return Path(path)
    return Path(os.environ.get("TRIAGE_BOT_LOG_DIR", Path.home() / ".triage-bot" / "logs"))


def log_file(path=None, directory=None):
    if path is not None:
        return Path(path)
    return log_dir(directory) / "triage-bot.log"


def _default_level():
    # Imported lazily so that config helpers can log without a cycle.
    from triage_bot.logging.config import load_log_level

    level = load_log_level()
    return logging.INFO if level is None else level


def _handlers(file_path, console):
    file_path.parent.mkdir(parents=True, exist_ok=True)
    handlers = [RotatingFileHandler(file_path, maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    return handlers


def get_logger(name="triage_bot", level=None, log_file_path=None, directory=None, console=True, propagate=False):
    """Return ``name`` wired to the rotating bot log (and stderr unless ``console`` is off).

    Handlers are attached once per name; later calls return the same logger
    untouched, so ``level`` only applies on first use. The level falls back to
    the one saved by ``triage-bot logging set-level`` and then INFO.
    """
    logger = logging.getLogger(name)
    if name in _CONFIGURED:
        return logger

    logger.setLevel(_default_level() if level is None else level)
    logger.propagate = propagate
    formatter = logging.Formatter(fmt=DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)
    for handler in _handlers(log_file(log_file_path, directory), console):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    _CONFIGURED.add(name)
    return logger


def reset_logger(name=None):
    """Detach our handlers so the next :func:`get_logger` call reconfigures.

    With no ``name`` every logger created through :func:`get_logger` is reset.
    """
    names = list(_CONFIGURED) if name is None else [name]
    for n in names:
        logger = logging.getLogger(n)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        _CONFIGURED.discard(n)


def get_configured_level(name="triage_bot"):
    return logging.getLevelName(logging.getLogger(name).getEffectiveLevel())
