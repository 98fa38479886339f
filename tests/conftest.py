"""
Pytest fixtures for CalTime.

Every test gets its own sqlite database; external services (Google, the AI
endpoint, Mailgun) are replaced per test with monkeypatch.
"""

import pytest

import config
import storage
from google_calendar import CalendarEvent


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Point storage at a fresh database file with a throwaway token key."""
    monkeypatch.setattr(config, "DB_PATH", tmp_path / "caltime.db")
    monkeypatch.setattr(config, "ENCRYPTION_KEY", "00112233445566778899aabbccddeeff" * 2)
    storage.ensure_db()
    return config.DB_PATH


@pytest.fixture
def user():
    u = storage.create_user("me@example.com", "Me")
    storage.save_report_settings(u["id"], storage.ReportSettingsPatch())
    return u


@pytest.fixture
def make_event():
    """Factory for timed CalendarEvents; defaults to a one-hour event."""

    def _make(
        event_id: str,
        title: str = "Meeting",
        start: str = "2024-01-15T10:00:00+09:00",
        end: str = "2024-01-15T11:00:00+09:00",
        attendees: list[str] | None = None,
        calendar_name: str = "Work",
        all_day: bool = False,
    ) -> CalendarEvent:
        return CalendarEvent(
            id=event_id,
            title=title,
            start=start,
            end=end,
            attendees=list(attendees or []),
            calendar_id="primary",
            calendar_name=calendar_name,
            all_day=all_day,
        )

    return _make


@pytest.fixture
def categories(user):
    """Three user categories: Meetings, Routine, Design (in that order)."""
    return [
        storage.create_category(user["id"], "Meetings", "#3b82f6"),
        storage.create_category(user["id"], "Routine", "#22c55e"),
        storage.create_category(user["id"], "Design", "#ec4899"),
    ]
