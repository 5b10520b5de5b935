"""Configuration loading from environment variables with validation."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Anchor all paths to the project root (two levels up from src/quizpipe)
_PROJECT_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUIZPIPE_",
        case_sensitive=False,
    )

    # Anthropic (loaded separately, no prefix)
    anthropic_api_key: str = ""

    # Model settings
    model: str = "claude-sonnet-4-20250514"
    escalation_model: str | None = "claude-opus-4-20250514"
    escalate_after_failures: int = 2
    max_tokens: int = 4096
    temperature: float = 0.4
    request_timeout_seconds: float = 120.0
    prompt_version: str = "v1"

    # Storage
    db_path: Path = _PROJECT_DIR / "data" / "quizpipe.db"

    # Logging
    log_level: str = "INFO"

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8000

    # Worker behaviour
    acquire_timeout_seconds: float = 30.0
    worker_poll_seconds: float = 0.5

    # Token accounting (advisory)
    tpm_ceiling: int | None = None
    min_tokens_per_request: int = 1500
    token_ema_alpha: float = 0.2

    # Per-model requests per UTC day; unset means no daily cap
    rpd_ceiling: int | None = None

    # Seed values for the AppSettings row (id = 1)
    default_rpm_cap: int = 10
    default_worker_concurrency: int = 5
    default_queue_provider: str = "memory"
    default_rate_limit_safety_factor: float = 0.8
    default_token_estimate_initial: int = 2000


def get_settings() -> Settings:
    """Load settings from environment and .env file."""
    # Load .env from the project root regardless of cwd
    load_dotenv(_PROJECT_DIR / ".env")
    api_key = os.getenv("ANTHROPIC_API_KEY", "")
    return Settings(anthropic_api_key=api_key)
