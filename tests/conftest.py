"""Shared test fixtures and configuration.

Sets fake environment variables before any taskpulse import so config
loads deterministically, and provides SQLite stores on a temp DB file.
"""

import os

# Patch env vars BEFORE any taskpulse imports
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("DEFAULT_TIMEZONE", "America/Sao_Paulo")
os.environ.setdefault("VAPID_PUBLIC_KEY", "")
os.environ.setdefault("VAPID_PRIVATE_KEY", "")
os.environ.setdefault("SCHEDULER_CATCH_UP", "true")
os.environ.setdefault("BRIEF_USE_LLM", "false")
os.environ.setdefault("APP_BASE_URL", "")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path shared by all stores in a test."""
    return str(tmp_path / "test_taskpulse.db")


@pytest.fixture
def template_db(tmp_db_path):
    from taskpulse.data.db import TemplateDB
    return TemplateDB(db_path=tmp_db_path)


@pytest.fixture
def note_db(tmp_db_path):
    from taskpulse.data.db import NoteDB
    return NoteDB(db_path=tmp_db_path)


@pytest.fixture
def settings_db(tmp_db_path):
    from taskpulse.data.db import SettingsDB
    return SettingsDB(db_path=tmp_db_path)


@pytest.fixture
def send_log_db(tmp_db_path):
    from taskpulse.data.db import SendLogDB
    return SendLogDB(db_path=tmp_db_path)
