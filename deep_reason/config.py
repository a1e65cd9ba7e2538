"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "deep-reason"
    debug: bool = False
    log_level: str = "INFO"

    # Sessions
    session_idle_timeout_seconds: float = 1800.0
    session_retention_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    session_lock_blocking: bool = True
    max_turns_per_session: int = 50

    # Dispatch to the reasoning engine
    dispatch_time_budget_seconds: float = 60.0

    # Memory budget
    session_memory_budget: int = 8000
    memory_keep_recent_turns: int = 4
    memory_max_summary_chars: int = 2000
    memory_max_checkpoints: int = 5
    memory_total_budget: int = 200_000

    # Hypothesis tournaments
    tournament_max_hypotheses: int = 5
    tournament_max_rounds: int = 3
    tournament_parallel_sessions: int = 3
    tournament_max_consecutive_failures: int = 3
    tournament_retry_backoff_seconds: float = 1.0
    tournament_max_backoff_seconds: float = 30.0
    tournament_retention_seconds: float = 3600.0

    # Durability: JSON state file loaded on startup and written on shutdown
    snapshot_path: str | None = None

    # Gemini LLM
    gemini_model: str = "gemini-2.0-flash"
    gemini_temperature: float = 0.2
    gemini_max_output_tokens: int = 2048

    model_config = {"env_prefix": "DEEP_REASON_"}


settings = Settings()
