import os
import sys
from pathlib import Path

import pytest

# Ensure the src directory (and shared fakes) are on the path for imports
root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(root / "src"))
sys.path.insert(0, str(root / "tests"))

log_dir = root / "logs"
log_dir.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("TRIAGE_BOT_LOG_DIR", str(log_dir))


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("TRIAGE_BOT_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("TRIAGE_BOT_DB_PATH", str(tmp_path / "triage-bot.db"))
    for key in ("TRIAGE_BOT_PROFILE", "TRIAGE_BOT_LLM_PROVIDER", "OPENAI_API_KEY", "TRIAGE_BOT_LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)
