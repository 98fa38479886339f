import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import requests

import config
from google_calendar import CalendarEvent

log = logging.getLogger(__name__)

COLORS = [
    "#ef4444", "#f97316", "#f59e0b", "#eab308", "#84cc16",
    "#22c55e", "#10b981", "#14b8a6", "#06b6d4", "#0ea5e9",
    "#3b82f6", "#6366f1", "#8b5cf6", "#a855f7", "#d946ef",
    "#ec4899", "#f43f5e",
]

CLASSIFY_TEMPERATURE = 0.3
GENERATE_TEMPERATURE = 0.7
GENERATE_SAMPLE_SIZE = 50

RETRY_BASE_SECONDS = 1.0
RETRYABLE_STATUS = {408, 429}


class AIClassificationError(Exception):
    """The classification service gave no usable answer for a whole batch."""


@dataclass
class ClassificationResult:
    assignments: dict[str, str] = field(default_factory=dict)  # event id -> category id
    missing: list[str] = field(default_factory=list)


def _attendee_count(ev: CalendarEvent) -> int:
    return len(ev.attendees) or 1


def _chat_json(messages: list[dict], temperature: float) -> dict[str, Any]:
    """POST a chat completion asking for a JSON object and return the parsed object."""
    if not config.OPENAI_API_KEY:
        raise AIClassificationError("OPENAI_API_KEY not set")
    url = f"{config.OPENAI_BASE_URL}/chat/completions"
    payload = {
        "model": config.OPENAI_MODEL,
        "messages": messages,
        "temperature": temperature,
        "response_format": {"type": "json_object"},
    }
    attempts = max(1, config.AI_MAX_ATTEMPTS)
    last_error = ""
    r = None
    for attempt in range(attempts):
        if attempt:
            delay = RETRY_BASE_SECONDS * (2 ** (attempt - 1))
            log.warning("AI request failed (%s); retry %d/%d in %.1fs", last_error, attempt, attempts - 1, delay)
            time.sleep(delay)
        try:
            r = requests.post(
                url,
                headers={"Authorization": f"Bearer {config.OPENAI_API_KEY}", "Content-Type": "application/json"},
                json=payload,
                timeout=config.AI_TIMEOUT,
            )
        except requests.exceptions.Timeout:
            last_error = "timeout"
            r = None
            continue
        except requests.exceptions.ConnectionError as exc:
            last_error = f"connection error: {str(exc)[:150]}"
            r = None
            continue
        except requests.exceptions.RequestException as exc:
            raise AIClassificationError(f"AI request failed: {str(exc)[:150]}") from exc
        if r.status_code in RETRYABLE_STATUS or r.status_code >= 500:
            last_error = f"HTTP {r.status_code}"
            r = None
            continue
        break

    if r is None:
        raise AIClassificationError(f"AI request failed after {attempts} attempts: {last_error}")
    if r.status_code != 200:
        raise AIClassificationError(f"AI API error {r.status_code}: {r.text[:200]}")

    try:
        data = r.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise AIClassificationError(f"Unexpected AI response shape: {exc}") from exc
    if not isinstance(content, str) or not content.strip():
        raise AIClassificationError("AI returned an empty response")
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise AIClassificationError(f"AI returned malformed JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise AIClassificationError("AI returned JSON that is not an object")
    return parsed


def _classify_prompt(events: list[CalendarEvent], categories: list[dict], rules: list[dict]) -> str:
    lines = ["Assign each calendar event below to exactly one of the given categories.", "", "## Categories"]
    lines += [f"- {c['id']}: {c['name']}" for c in categories]
    if rules:
        lines += ["", "## Rules (hints, apply first)"]
        lines += [
            f"- {r['rule_type']}: {r['rule_value']} -> category id {r['category_id']} ({r.get('category_name', '')})"
            for r in rules
        ]
    lines += ["", "## Events"]
    lines += [
        f'- {ev.id}: "{ev.title}" (attendees: {_attendee_count(ev)}, calendar: {ev.calendar_name or ev.calendar_id})'
        for ev in events
    ]
    lines += [
        "",
        "## Output (JSON)",
        '{"results": [{"eventId": "<event id>", "categoryId": "<category id>"}]}',
        "",
        "Return a result for every event. Use only the category ids listed above.",
    ]
    return "\n".join(lines)


def classify_events(events: list[CalendarEvent], categories: list[dict], rules: list[dict]) -> ClassificationResult:
    """
    One request for the whole batch. Returned pairs are validated: unknown
    event ids and category ids outside `categories` are dropped, and input
    events without a valid answer are reported in `missing`.
    """
    if not events:
        return ClassificationResult()
    prompt = _classify_prompt(events, categories, rules)
    parsed = _chat_json([{"role": "user", "content": prompt}], CLASSIFY_TEMPERATURE)

    results = parsed.get("results")
    if not isinstance(results, list):
        raise AIClassificationError("AI response has no results list")

    wanted = {ev.id for ev in events}
    valid_categories = {c["id"] for c in categories}
    out = ClassificationResult()
    for item in results:
        if not isinstance(item, dict):
            continue
        event_id = item.get("eventId")
        category_id = item.get("categoryId")
        if event_id not in wanted or event_id in out.assignments:
            continue
        if category_id not in valid_categories:
            log.warning("AI picked unknown category %r for event %s", category_id, event_id)
            continue
        out.assignments[event_id] = category_id
    out.missing = [ev.id for ev in events if ev.id not in out.assignments]
    if out.missing:
        log.warning("AI left %d of %d events unresolved", len(out.missing), len(events))
    return out


def generate_categories(events: list[CalendarEvent]) -> list[dict[str, str]]:
    """Suggest 5-10 categories from a sample of event titles; colors come from COLORS by position."""
    sample = events[:GENERATE_SAMPLE_SIZE]
    lines = [
        "You analyse calendar events to understand how someone spends their time.",
        "Suggest 5-10 categories that fit the events below.",
        "",
        "## Events (sample)",
    ]
    lines += [
        f"- {ev.title} (attendees: {_attendee_count(ev)}, calendar: {ev.calendar_name})" for ev in sample
    ]
    lines += [
        "",
        "## Output (JSON)",
        '{"categories": [{"name": "<category name>", "description": "<which events belong here>"}]}',
        "",
        "Typical categories: 1on1, Team meeting, External meeting, Focus work, Travel, Private.",
    ]
    parsed = _chat_json([{"role": "user", "content": "\n".join(lines)}], GENERATE_TEMPERATURE)

    raw = parsed.get("categories")
    if not isinstance(raw, list):
        raise AIClassificationError("AI response has no categories list")
    out: list[dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        out.append(
            {
                "name": name,
                "description": str(item.get("description") or ""),
                "color": COLORS[len(out) % len(COLORS)],
            }
        )
    if not out:
        raise AIClassificationError("AI suggested no categories")
    return out
