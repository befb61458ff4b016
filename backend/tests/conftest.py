"""
Shared pytest fixtures for backend tests.
Uses a temp-file SQLite database for isolation.
"""
import pytest
import sqlite3
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database

SCHEMA = """
    CREATE TABLE projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        completed INTEGER DEFAULT 0,
        due_date TEXT,
        project_id TEXT,
        recurrence TEXT,
        goal_type TEXT,
        goal_target REAL,
        goal_unit TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE tags (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL
    );

    CREATE TABLE task_tags (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
        PRIMARY KEY (task_id, tag_id)
    );

    CREATE TABLE progress_logs (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        date TEXT NOT NULL,
        value REAL NOT NULL DEFAULT 0,
        PRIMARY KEY (task_id, date)
    );
"""


@pytest.fixture
def test_db(monkeypatch, tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because database.py opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")
    monkeypatch.setattr(database, "DATABASE_PATH", db_path)
    monkeypatch.setattr(database, "init_db", lambda: None)

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()

    yield db_path


class FakeChannel:
    """Notification channel that records messages; fails for any message containing a marker."""

    def __init__(self, fail_on: str = None):
        self.fail_on = fail_on
        self.messages: list[str] = []

    async def send(self, message: str):
        from telegram import DeliveryOutcome
        self.messages.append(message)
        if self.fail_on and self.fail_on in message:
            return DeliveryOutcome(delivered=False, detail="rejected")
        return DeliveryOutcome(delivered=True, detail="sent")


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def app_client(test_db, monkeypatch, fake_channel):
    """
    Create a test client for the FastAPI app.
    Skips alembic and the background reminder loop; reminders go to a fake channel.
    """
    from fastapi.testclient import TestClient
    import main

    monkeypatch.setattr(main.settings.reminders, "loop_enabled", False)
    monkeypatch.setattr(main.settings, "cron_secret", "s3cret")
    monkeypatch.setattr(main.evaluator, "channel", fake_channel)
    main.evaluator.ledger.clear()

    with TestClient(main.app) as client:
        yield client
