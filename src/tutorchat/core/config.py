from __future__ import annotations

"""Runtime configuration for the chat gateway.

All knobs come from environment variables so the same build can run in dev,
CI and production. Values that fail to parse, or are out of range, fall back
to their defaults rather than aborting startup.
"""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


@dataclass(frozen=True)
class ChatGatewayConfig:
    history_window: int = 10
    history_default_limit: int = 50
    history_max_limit: int = 100
    chunk_words: int = 3
    chunk_max_chars: int = 80
    chunk_delay_ms: int = 30
    generation_timeout_seconds: float = 60.0
    generation_retries: int = 1
    max_message_chars: int = 4000
    typing_timeout_seconds: float = 3.0

    @staticmethod
    def from_env() -> "ChatGatewayConfig":
        return ChatGatewayConfig(
            history_window=_env_int("TUTORCHAT_HISTORY_WINDOW", 10),
            history_default_limit=_env_int("TUTORCHAT_HISTORY_DEFAULT_LIMIT", 50, minimum=1),
            history_max_limit=_env_int("TUTORCHAT_HISTORY_MAX_LIMIT", 100, minimum=1),
            chunk_words=_env_int("TUTORCHAT_CHUNK_WORDS", 3, minimum=1),
            chunk_max_chars=_env_int("TUTORCHAT_CHUNK_MAX_CHARS", 80, minimum=1),
            chunk_delay_ms=_env_int("TUTORCHAT_CHUNK_DELAY_MS", 30),
            generation_timeout_seconds=_env_float("TUTORCHAT_GENERATION_TIMEOUT", 60.0, minimum=0.1),
            generation_retries=_env_int("TUTORCHAT_GENERATION_RETRIES", 1),
            max_message_chars=_env_int("TUTORCHAT_MAX_MESSAGE_CHARS", 4000, minimum=1),
            typing_timeout_seconds=_env_float("TUTORCHAT_TYPING_TIMEOUT", 3.0, minimum=0.1),
        )
