import html
import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import config
import storage
from categorization import categorize_events
from google_calendar import CalendarEvent, fetch_user_events
from mailer import send_email

log = logging.getLogger(__name__)

TOP_ATTENDEES = 10


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or config.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(config.DEFAULT_TIMEZONE)


def user_tz(user_id: str) -> ZoneInfo:
    settings = storage.get_report_settings(user_id)
    return _zone((settings or {}).get("timezone"))


def parse_period_bound(value: str, tz: ZoneInfo, is_end: bool) -> datetime:
    """
    Accept YYYY-MM-DD or an ISO timestamp. A bare date means local midnight;
    for the end bound it covers the whole day (next local midnight).
    """
    value = value.strip()
    if len(value) == 10:
        day = date.fromisoformat(value)
        if is_end:
            day += timedelta(days=1)
        return datetime.combine(day, time.min, tzinfo=tz)
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def trailing_week(tz: ZoneInfo, now: datetime | None = None) -> tuple[str, str]:
    """The 7 full local days before today, as inclusive YYYY-MM-DD bounds."""
    today = (now or storage.utc_now()).astimezone(tz).date()
    return (today - timedelta(days=7)).isoformat(), (today - timedelta(days=1)).isoformat()


def event_minutes(ev: CalendarEvent) -> int:
    seconds = (ev.end_at - ev.start_at).total_seconds()
    return max(0, math.floor(seconds / 60 + 0.5))


def _percentage(minutes: int, total: int) -> float:
    return minutes / total * 100 if total > 0 else 0.0


def summarize(
    events: list[CalendarEvent],
    assignments: dict[str, str],
    categories: list[dict[str, Any]],
    period: dict[str, str],
) -> dict[str, Any]:
    """
    Aggregate timed events into report data.

    Only events assigned to one of `categories` feed the category totals and
    the daily breakdown. Attendee minutes cover every event; each attendee is
    credited the full duration.
    """
    category_by_id = {c["id"]: c for c in categories}
    category_minutes: dict[str, int] = {}
    daily: dict[str, dict[str, int]] = {}
    attendee_minutes: dict[str, int] = {}

    for ev in events:
        minutes = event_minutes(ev)
        category_id = assignments.get(ev.id)
        if category_id in category_by_id:
            category_minutes[category_id] = category_minutes.get(category_id, 0) + minutes
            day = daily.setdefault(ev.start.split("T")[0], {})
            day[category_id] = day.get(category_id, 0) + minutes
        for email in ev.attendees:
            attendee_minutes[email] = attendee_minutes.get(email, 0) + minutes

    total = sum(category_minutes.values())

    # sorted() is stable, so ties keep encounter order
    ranked = sorted(attendee_minutes.items(), key=lambda kv: kv[1], reverse=True)[:TOP_ATTENDEES]
    top_attendees = [
        {"email": email, "name": email.split("@")[0], "minutes": minutes, "percentage": _percentage(minutes, total)}
        for email, minutes in ranked
    ]

    out_events = []
    for ev in sorted(events, key=lambda e: e.start_at):
        cat = category_by_id.get(assignments.get(ev.id, ""))
        out_events.append(
            {
                "id": ev.id,
                "title": ev.title,
                "start": ev.start,
                "end": ev.end,
                "attendees": ev.attendees,
                "calendarName": ev.calendar_name,
                "categoryId": cat["id"] if cat else None,
                "categoryName": cat["name"] if cat else None,
                "categoryColor": cat["color"] if cat else None,
            }
        )

    return {
        "period": period,
        "totalMinutes": total,
        "eventCount": len(events),
        "categories": [
            {
                "id": c["id"],
                "name": c["name"],
                "color": c["color"],
                "minutes": category_minutes.get(c["id"], 0),
                "percentage": _percentage(category_minutes.get(c["id"], 0), total),
            }
            for c in categories
        ],
        "dailyData": [{"date": d, "categories": daily[d]} for d in sorted(daily)],
        "events": out_events,
        "topAttendees": top_attendees,
    }


def build_report(user_id: str, start: str, end: str) -> dict[str, Any]:
    tz = user_tz(user_id)
    time_min = parse_period_bound(start, tz, is_end=False)
    time_max = parse_period_bound(end, tz, is_end=True)

    events = [ev for ev in fetch_user_events(user_id, time_min, time_max) if not ev.all_day]
    categories = storage.list_categories(user_id)
    assignments = storage.get_assignments(user_id)

    uncategorized = [ev for ev in events if ev.id not in assignments]
    if uncategorized and categories:
        try:
            backfill = categorize_events(user_id, uncategorized, categories)
            assignments.update(backfill.assignments)
        except Exception:
            log.exception("Report backfill failed for user %s; continuing with existing assignments", user_id)

    return summarize(events, assignments, categories, {"start": start, "end": end})


# ─────────────────────────────────────────────────────────────
# HTML
# ─────────────────────────────────────────────────────────────

def format_minutes(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    if hours == 0:
        return f"{mins}m"
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


_CELL = "padding: 8px; border-bottom: 1px solid #e5e7eb;"

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6;
           color: #1f2937; max-width: 600px; margin: 0 auto; padding: 20px; }}
    h1 {{ color: #3b82f6; font-size: 24px; margin-bottom: 8px; }}
    .period {{ color: #6b7280; font-size: 14px; margin-bottom: 24px; }}
    .total {{ background-color: #f3f4f6; padding: 16px; border-radius: 8px; margin-bottom: 24px; }}
    .total-label {{ font-size: 14px; color: #6b7280; }}
    .total-value {{ font-size: 32px; font-weight: bold; }}
    table {{ width: 100%; border-collapse: collapse; }}
    th {{ text-align: left; padding: 8px; border-bottom: 2px solid #e5e7eb; font-weight: 600; }}
    .footer {{ margin-top: 32px; padding-top: 16px; border-top: 1px solid #e5e7eb; font-size: 12px; color: #9ca3af; }}
  </style>
</head>
<body>
  <h1>Weekly Time Report</h1>
  <p class="period">{start} - {end}</p>
  <div class="total">
    <div class="total-label">Total time</div>
    <div class="total-value">{total}</div>
  </div>
  <table>
    <thead>
      <tr><th>Category</th><th style="text-align: right;">Time</th><th style="text-align: right;">Share</th></tr>
    </thead>
    <tbody>
{rows}
    </tbody>
  </table>
  <div class="footer"><p>Sent automatically by {app_name}.</p></div>
</body>
</html>
"""


def render_report_html(report: dict[str, Any]) -> str:
    rows = []
    for cat in report["categories"]:
        dot = (
            '<span style="display: inline-block; width: 12px; height: 12px; border-radius: 50%; '
            f'background-color: {html.escape(cat["color"])}; margin-right: 8px;"></span>'
        )
        rows.append(
            "      <tr>"
            f'<td style="{_CELL}">{dot}{html.escape(cat["name"])}</td>'
            f'<td style="{_CELL} text-align: right;">{format_minutes(cat["minutes"])}</td>'
            f'<td style="{_CELL} text-align: right;">{cat["percentage"]:.1f}%</td>'
            "</tr>"
        )
    return _HTML_TEMPLATE.format(
        start=html.escape(report["period"]["start"]),
        end=html.escape(report["period"]["end"]),
        total=format_minutes(report["totalMinutes"]),
        rows="\n".join(rows),
        app_name=html.escape(config.APP_NAME),
    )


# ─────────────────────────────────────────────────────────────
# Weekly email
# ─────────────────────────────────────────────────────────────

def weekly_subject(report: dict[str, Any]) -> str:
    return f"Weekly Time Report ({report['period']['start']} - {report['period']['end']})"


def is_due(send_day: int, send_hour: int, tz: ZoneInfo, now: datetime) -> bool:
    local = now.astimezone(tz)
    weekday = (local.weekday() + 1) % 7  # 0 = Sunday
    return weekday == send_day and local.hour == send_hour


def send_weekly_reports(now: datetime | None = None, force: bool = False) -> int:
    """
    Email the trailing-week report to every user whose send day/hour matches
    the current local time. A failure for one user is logged and the loop
    moves on. Returns the number of emails sent.
    """
    now = now or storage.utc_now()
    sent = 0
    for user in storage.list_report_recipients():
        try:
            tz = _zone(user["timezone"])
            if not force and not is_due(int(user["send_day"]), int(user["send_hour"]), tz, now):
                continue
            start, end = trailing_week(tz, now)
            report = build_report(user["id"], start, end)
            send_email(user["email"], weekly_subject(report), render_report_html(report))
            sent += 1
        except Exception:
            log.exception("Weekly report failed for user %s", user["id"])
    log.info("Weekly report run finished: %d sent", sent)
    return sent
