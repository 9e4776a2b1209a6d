"""
TaskPulse — Centralized configuration.

Loads all settings from .env and validates the keys the worker cannot run
without. Every other module imports the `settings` singleton from here.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from taskpulse/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/taskpulse.db"

    # Fallback for users without a stored timezone
    DEFAULT_TIMEZONE: str = "America/Sao_Paulo"

    # Web Push (VAPID). Push is disabled when either key is empty.
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_SUBJECT: str = "mailto:admin@example.com"

    # Scheduler
    SCHEDULER_CATCH_UP: bool = True

    # Brief text polishing, provider-agnostic (openai, groq, anthropic)
    BRIEF_USE_LLM: bool = False
    LLM_PROVIDER: str = "groq"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""

    # Prefix for links inside notifications, e.g. "https://app.example.com"
    APP_BASE_URL: str = ""

    LOG_LEVEL: str = "INFO"

    @field_validator("SCHEDULER_CATCH_UP", "BRIEF_USE_LLM", mode="before")
    @classmethod
    def parse_bool(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in _TRUTHY


def _load_settings() -> Settings:
    """Load settings from environment, validating the default timezone."""
    default_tz = os.getenv("DEFAULT_TIMEZONE", "America/Sao_Paulo")
    try:
        ZoneInfo(default_tz)
    except (ZoneInfoNotFoundError, ValueError):
        print(f"ERROR: DEFAULT_TIMEZONE {default_tz!r} is not a valid IANA zone", file=sys.stderr)
        sys.exit(1)

    return Settings(
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/taskpulse.db"),
        DEFAULT_TIMEZONE=default_tz,
        VAPID_PUBLIC_KEY=os.getenv("VAPID_PUBLIC_KEY", ""),
        VAPID_PRIVATE_KEY=os.getenv("VAPID_PRIVATE_KEY", ""),
        VAPID_SUBJECT=os.getenv("VAPID_SUBJECT", "mailto:admin@example.com"),
        SCHEDULER_CATCH_UP=os.getenv("SCHEDULER_CATCH_UP", "true"),
        BRIEF_USE_LLM=os.getenv("BRIEF_USE_LLM", "false"),
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "groq"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        APP_BASE_URL=os.getenv("APP_BASE_URL", ""),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


# Singleton, imported by all other modules as:
#   from taskpulse.config import settings
settings = _load_settings()
