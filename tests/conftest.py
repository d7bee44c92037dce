import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    """Each test starts with fresh module-level caches and no external services."""
    from src.tutorchat.infrastructure import chat_store, events, goal_directory
    from src.tutorchat.security import rate_limit
    from src.tutorchat.services import tutor_ai

    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("TUTORCHAT_CHAT_STORE_IMPL", raising=False)
    monkeypatch.delenv("TUTORCHAT_RATE_LIMIT_DISABLED", raising=False)
    monkeypatch.delenv("TUTORCHAT_GOAL_DIRECTORY_IMPL", raising=False)
    monkeypatch.delenv("TUTORCHAT_USER_DIRECTORY_IMPL", raising=False)
    chat_store.reset_history_store()
    goal_directory.reset_goal_directory()
    events.reset_publisher()
    rate_limit.reset_rate_limits()
    tutor_ai._BREAKER_STATE.update({"fails": 0, "opened_at": 0.0})
    yield
    chat_store.reset_history_store()
    goal_directory.reset_goal_directory()
    events.reset_publisher()
    rate_limit.reset_rate_limits()
