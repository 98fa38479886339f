from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import httplib2
import pytest

import google_calendar
import reports
import storage
from categorization import TierOutcome
from reports import (
    build_report,
    event_minutes,
    format_minutes,
    is_due,
    parse_period_bound,
    render_report_html,
    summarize,
    trailing_week,
)

PERIOD = {"start": "2024-01-15", "end": "2024-01-21"}
CATS = [
    {"id": "c1", "name": "Meetings", "color": "#3b82f6"},
    {"id": "c2", "name": "Focus", "color": "#22c55e"},
]


class TestSummarize:
    def test_zero_total_has_zero_percentages(self, make_event):
        events = [make_event("e1"), make_event("e2")]
        report = summarize(events, {}, CATS, PERIOD)
        assert report["totalMinutes"] == 0
        assert report["eventCount"] == 2
        assert [c["percentage"] for c in report["categories"]] == [0, 0]
        assert report["dailyData"] == []

    def test_events_sorted_by_start(self, make_event):
        events = [
            make_event("late", start="2024-01-16T09:00:00+09:00", end="2024-01-16T10:00:00+09:00"),
            # 02:00Z is after 10:00+09:00 (01:00Z) although it sorts first as text
            make_event("utc", start="2024-01-15T02:00:00Z", end="2024-01-15T03:00:00Z"),
            make_event("early", start="2024-01-15T10:00:00+09:00", end="2024-01-15T11:00:00+09:00"),
        ]
        report = summarize(events, {}, CATS, PERIOD)
        assert [e["id"] for e in report["events"]] == ["early", "utc", "late"]

    def test_top_attendees(self, make_event):
        events = [
            make_event("e1", start="2024-01-15T10:00:00Z", end="2024-01-15T10:30:00Z", attendees=["a@x.com", "b@x.com"]),
            make_event("e2", start="2024-01-15T11:00:00Z", end="2024-01-15T12:00:00Z", attendees=["a@x.com"]),
        ]
        report = summarize(events, {"e1": "c1", "e2": "c1"}, CATS, PERIOD)

        assert report["totalMinutes"] == 90
        top = report["topAttendees"]
        assert [(a["email"], a["minutes"]) for a in top] == [("a@x.com", 90), ("b@x.com", 30)]
        assert top[0]["name"] == "a"
        assert top[0]["percentage"] == pytest.approx(100.0)
        assert top[1]["percentage"] == pytest.approx(100 / 3)

    def test_attendees_counted_for_uncategorized_events(self, make_event):
        events = [make_event("e1", attendees=["a@x.com"])]
        report = summarize(events, {}, CATS, PERIOD)
        assert report["topAttendees"] == [{"email": "a@x.com", "name": "a", "minutes": 60, "percentage": 0}]

    def test_attendee_ties_keep_encounter_order_and_top_ten(self, make_event):
        emails = [f"p{i}@x.com" for i in range(12)]
        report = summarize([make_event("e1", attendees=emails)], {}, CATS, PERIOD)
        assert [a["email"] for a in report["topAttendees"]] == emails[:10]

    def test_category_and_daily_totals(self, make_event):
        events = [
            make_event("e1", start="2024-01-15T10:00:00+09:00", end="2024-01-15T11:00:00+09:00"),
            make_event("e2", start="2024-01-15T13:00:00+09:00", end="2024-01-15T13:30:00+09:00"),
            make_event("e3", start="2024-01-16T10:00:00+09:00", end="2024-01-16T12:00:00+09:00"),
            make_event("e4", start="2024-01-16T14:00:00+09:00", end="2024-01-16T15:00:00+09:00"),
        ]
        report = summarize(events, {"e1": "c1", "e2": "c2", "e3": "c1", "e4": "c_deleted"}, CATS, PERIOD)

        assert report["totalMinutes"] == 210
        assert report["eventCount"] == 4
        assert [(c["id"], c["minutes"]) for c in report["categories"]] == [("c1", 180), ("c2", 30)]
        assert sum(c["percentage"] for c in report["categories"]) == pytest.approx(100.0)
        assert report["dailyData"] == [
            {"date": "2024-01-15", "categories": {"c1": 60, "c2": 30}},
            {"date": "2024-01-16", "categories": {"c1": 120}},
        ]
        e4 = next(e for e in report["events"] if e["id"] == "e4")
        assert e4["categoryId"] is None

    def test_event_minutes_rounds_to_nearest(self, make_event):
        assert event_minutes(make_event("e1", start="2024-01-15T10:00:00Z", end="2024-01-15T10:01:30Z")) == 2
        assert event_minutes(make_event("e2", start="2024-01-15T10:00:00Z", end="2024-01-15T10:00:29Z")) == 0


class TestBuildReport:
    def test_excludes_all_day_and_survives_backfill_failure(self, monkeypatch, user, categories, make_event):
        meetings = categories[0]
        storage.upsert_auto_assignment(user["id"], "e1", meetings["id"])
        events = [
            make_event("e1"),
            make_event("e2", title="Unknown"),
            make_event("holiday", start="2024-01-15", end="2024-01-16", all_day=True),
        ]
        monkeypatch.setattr(reports, "fetch_user_events", lambda user_id, t0, t1: events)

        def broken_backfill(*args):
            raise RuntimeError("boom")

        monkeypatch.setattr(reports, "categorize_events", broken_backfill)

        report = build_report(user["id"], "2024-01-15", "2024-01-21")

        assert report["eventCount"] == 2
        assert report["totalMinutes"] == 60
        assert report["period"] == {"start": "2024-01-15", "end": "2024-01-21"}

    def test_backfills_uncategorized_events(self, monkeypatch, user, categories, make_event):
        focus = categories[1]
        seen = {}
        monkeypatch.setattr(reports, "fetch_user_events", lambda user_id, t0, t1: [make_event("e1")])

        def fake_backfill(user_id, events, cats):
            seen["ids"] = [ev.id for ev in events]
            return TierOutcome(assignments={"e1": focus["id"]})

        monkeypatch.setattr(reports, "categorize_events", fake_backfill)

        report = build_report(user["id"], "2024-01-15", "2024-01-21")

        assert seen["ids"] == ["e1"]
        assert report["events"][0]["categoryName"] == "Routine"

    def test_calendar_outage_yields_an_empty_report(self, monkeypatch, user, categories):
        fresh = (storage.utc_now() + timedelta(hours=1)).isoformat()
        account = storage.create_linked_account(user["id"], "me@example.com", "tok", "r", fresh, True)
        storage.add_selected_calendars(account, [{"id": "primary", "summary": "Me"}], enabled=True)
        svc = MagicMock()
        svc.events.return_value.list.return_value.execute.side_effect = httplib2.ServerNotFoundError("dns")
        monkeypatch.setattr(google_calendar, "_calendar_service", lambda token: svc)

        report = build_report(user["id"], "2024-01-15", "2024-01-21")

        assert report["eventCount"] == 0
        assert report["totalMinutes"] == 0

    def test_fetch_window_uses_user_timezone(self, monkeypatch, user):
        bounds = {}

        def fake_fetch(user_id, t0, t1):
            bounds["window"] = (t0, t1)
            return []

        monkeypatch.setattr(reports, "fetch_user_events", fake_fetch)
        build_report(user["id"], "2024-01-15", "2024-01-21")

        t0, t1 = bounds["window"]
        assert t0 == datetime(2024, 1, 14, 15, 0, tzinfo=timezone.utc)
        assert t1 == datetime(2024, 1, 21, 15, 0, tzinfo=timezone.utc)


class TestPeriods:
    def test_parse_period_bound(self):
        tz = ZoneInfo("UTC")
        assert parse_period_bound("2024-01-15", tz, is_end=False) == datetime(2024, 1, 15, tzinfo=tz)
        assert parse_period_bound("2024-01-21", tz, is_end=True) == datetime(2024, 1, 22, tzinfo=tz)
        assert parse_period_bound("2024-01-15T10:00:00Z", tz, is_end=True) == datetime(
            2024, 1, 15, 10, tzinfo=timezone.utc
        )

    def test_trailing_week(self):
        now = datetime(2024, 1, 14, 5, 0, tzinfo=timezone.utc)
        assert trailing_week(ZoneInfo("UTC"), now) == ("2024-01-07", "2024-01-13")

    def test_is_due_uses_local_sunday_based_weekday(self):
        now = datetime(2024, 1, 14, 0, 0, tzinfo=timezone.utc)  # Sunday 09:00 in Tokyo
        tokyo = ZoneInfo("Asia/Tokyo")
        assert is_due(0, 9, tokyo, now)
        assert not is_due(0, 0, tokyo, now)
        assert not is_due(1, 9, tokyo, now)


class TestHtml:
    def test_format_minutes(self):
        assert format_minutes(45) == "45m"
        assert format_minutes(120) == "2h"
        assert format_minutes(90) == "1h 30m"

    def test_render(self, make_event):
        cats = [{"id": "c1", "name": "<b>R&D</b>", "color": "#3b82f6"}]
        report = summarize(
            [make_event("e1", start="2024-01-15T10:00:00Z", end="2024-01-15T11:30:00Z")], {"e1": "c1"}, cats, PERIOD
        )
        out = render_report_html(report)
        assert out.startswith("<!DOCTYPE html>")
        assert "&lt;b&gt;R&amp;D&lt;/b&gt;" in out
        assert "<b>R&D</b>" not in out
        assert "1h 30m" in out
        assert "100.0%" in out
        assert "2024-01-15 - 2024-01-21" in out
