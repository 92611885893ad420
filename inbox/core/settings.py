"""Engine settings resolved from the environment.

Values are read once via :meth:`EngineSettings.from_env`; ``.env`` files are
honoured through ``python-dotenv`` the same way the HTTP app loads them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class EngineSettings:
    database_url: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_lang: str | None = None
    ai_draft_timeout_seconds: float = 20.0
    ai_history_limit: int = 20
    dispatch_max_attempts: int = 3
    dispatch_backoff_seconds: float = 0.5
    sweep_interval_seconds: float = 60.0
    preview_length: int = 100
    webhook_rate_limit: str = "120/minute"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openai_lang=os.getenv("OPENAI_LANG") or None,
            ai_draft_timeout_seconds=_env_float("AI_DRAFT_TIMEOUT_SECONDS", 20.0),
            ai_history_limit=_env_int("AI_HISTORY_LIMIT", 20),
            dispatch_max_attempts=max(1, _env_int("DISPATCH_MAX_ATTEMPTS", 3)),
            dispatch_backoff_seconds=_env_float("DISPATCH_BACKOFF_SECONDS", 0.5),
            sweep_interval_seconds=_env_float("SWEEP_INTERVAL_SECONDS", 60.0),
            preview_length=_env_int("PREVIEW_LENGTH", 100),
            webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", "120/minute"),
        )
