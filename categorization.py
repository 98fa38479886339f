"""
Event categorization.

Events are resolved by three tiers, each one only seeing what the previous
tiers left open:

1. category rules (keyword / exact / prefix, first match wins)
2. the per-user title cache (normalized title -> category)
3. the AI classifier

Resolved events are stored as automatic assignments (never touching manual
ones) and their titles are written back to the cache.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import timedelta

import config
import storage
from ai_classifier import AIClassificationError, classify_events
from google_calendar import NO_TITLE, CalendarEvent, fetch_user_events

log = logging.getLogger(__name__)

RULE_TYPES = ("keyword", "exact", "prefix")

# Applied in order to the lowercased title.
_TITLE_NOISE = [
    re.compile(r"\d{2,4}[/\-]\d{1,2}[/\-]\d{1,2}"),  # 2024/01/15, 24-1-5
    re.compile(r"(?<![\d:])\d{1,2}[/\-]\d{1,2}(?![\d:])"),  # 01/15, 1-5
    re.compile(r"\d{1,2}:\d{2}(?:\s*[-~]\s*\d{1,2}:\d{2})?"),  # 10:00, 10:00-11:00, 9:30 ~ 10:00
    re.compile(r"week\s*\d+"),
    re.compile(r"第\d+週"),
    re.compile(r"\(\d+\)"),
]
_WHITESPACE = re.compile(r"\s+")


class NoCategoriesError(Exception):
    pass


def normalize_title(title: str) -> str:
    """Canonical form of an event title used as the title-cache key."""
    s = (title or "").lower().strip()
    while True:
        prev = s
        for pattern in _TITLE_NOISE:
            s = pattern.sub("", s)
        s = _WHITESPACE.sub(" ", s).strip()
        # removing one marker can expose another, e.g. "((3))"
        if s == prev:
            return s


def rule_matches(rule_type: str, rule_value: str, title: str) -> bool:
    value = rule_value.lower()
    title = title.lower()
    if rule_type == "keyword":
        return value in title
    if rule_type == "exact":
        return title == value
    if rule_type == "prefix":
        return title.startswith(value)
    return False


def apply_rules(events: list[CalendarEvent], rules: list[dict]) -> dict[str, str]:
    """Map event id -> category id for events matched by a rule; unmatched events are absent."""
    matches: dict[str, str] = {}
    for ev in events:
        for rule in rules:
            if rule_matches(rule["rule_type"], rule["rule_value"], ev.title):
                matches[ev.id] = rule["category_id"]
                break
    return matches


def _cache_key(ev: CalendarEvent) -> str:
    if ev.title == NO_TITLE:
        return ""
    return normalize_title(ev.title)


def match_cached_titles(events: list[CalendarEvent], cache: dict[str, str]) -> dict[str, str]:
    matches: dict[str, str] = {}
    for ev in events:
        key = _cache_key(ev)
        if key and key in cache:
            matches[ev.id] = cache[key]
    return matches


@dataclass
class TierOutcome:
    assignments: dict[str, str] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)


@dataclass
class CategorizationOutcome:
    results: list[tuple[str, str]] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _remember_title(user_id: str, ev: CalendarEvent, category_id: str) -> None:
    key = _cache_key(ev)
    if not key:
        return
    try:
        storage.write_title_cache(user_id, key, category_id)
    except sqlite3.Error as exc:
        log.warning("Title cache write failed for event %s: %s", ev.id, exc)


def categorize_events(user_id: str, events: list[CalendarEvent], categories: list[dict]) -> TierOutcome:
    """
    Run rules, title cache and AI over `events` and store what they resolve.

    An AI failure leaves the remaining events unresolved. Events the caller
    already knows to be manually assigned must not be passed in.
    """
    unique: dict[str, CalendarEvent] = {}
    for ev in events:
        unique.setdefault(ev.id, ev)
    pending = list(unique.values())
    outcome = TierOutcome()
    if not pending:
        return outcome

    rules = storage.list_rules(user_id)
    by_rule = apply_rules(pending, rules)
    pending = [ev for ev in pending if ev.id not in by_rule]

    by_cache = match_cached_titles(pending, storage.load_title_cache(user_id))
    pending = [ev for ev in pending if ev.id not in by_cache]

    by_ai: dict[str, str] = {}
    if pending:
        try:
            classified = classify_events(pending, categories, rules)
        except AIClassificationError as exc:
            log.warning("AI classification failed for %d events of user %s: %s", len(pending), user_id, exc)
            outcome.unresolved = [ev.id for ev in pending]
        else:
            by_ai = classified.assignments
            outcome.unresolved = classified.missing

    log.info(
        "Categorized user %s: rules=%d cache=%d ai=%d unresolved=%d",
        user_id,
        len(by_rule),
        len(by_cache),
        len(by_ai),
        len(outcome.unresolved),
    )

    for resolved in (by_rule, by_cache, by_ai):
        for event_id, category_id in resolved.items():
            storage.upsert_auto_assignment(user_id, event_id, category_id)
            _remember_title(user_id, unique[event_id], category_id)
            outcome.assignments[event_id] = category_id
    return outcome


def categorize(user_id: str, event_ids: list[str]) -> CategorizationOutcome:
    """
    Categorize the given events of a user.

    Manual assignments pass through unchanged. The others are looked up in
    the trailing CATEGORIZE_WINDOW_DAYS of the user's calendars; ids not
    found there are returned in `skipped`.
    """
    categories = storage.list_categories(user_id)
    if not categories:
        raise NoCategoriesError("No categories defined")

    event_ids = list(dict.fromkeys(event_ids))
    outcome = CategorizationOutcome()
    if not event_ids:
        return outcome

    manual = storage.get_manual_assignments(user_id, event_ids)
    remaining = [eid for eid in event_ids if eid not in manual]

    auto: dict[str, str] = {}
    if remaining:
        now = storage.utc_now()
        fetched = fetch_user_events(user_id, now - timedelta(days=config.CATEGORIZE_WINDOW_DAYS), now)
        by_id: dict[str, CalendarEvent] = {}
        for ev in fetched:
            by_id.setdefault(ev.id, ev)
        targets = [by_id[eid] for eid in remaining if eid in by_id]
        outcome.skipped = [eid for eid in remaining if eid not in by_id]
        if outcome.skipped:
            log.info("%d requested events are outside the categorization window", len(outcome.skipped))
        tiers = categorize_events(user_id, targets, categories)
        auto = tiers.assignments
        outcome.unresolved = tiers.unresolved

    for eid in event_ids:
        if eid in manual:
            outcome.results.append((eid, manual[eid]))
        elif eid in auto:
            outcome.results.append((eid, auto[eid]))
    return outcome
