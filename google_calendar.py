"""
Google Calendar access: token refresh, calendar/event listing and the per-user
fan-out across linked accounts.
"""

import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httplib2
import requests
from google.auth.exceptions import GoogleAuthError, TransportError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

import config
import storage

log = logging.getLogger(__name__)

USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
NO_TITLE = "(No title)"

# what a Calendar API call can raise besides bad payloads
FETCH_ERRORS = (HttpError, httplib2.HttpLib2Error, TransportError, OSError)


class ExternalFetchError(Exception):
    """Events for a calendar or a whole linked account could not be fetched."""


class TokenRefreshError(ExternalFetchError):
    pass


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: str  # RFC3339 for timed events, YYYY-MM-DD for all-day events
    end: str
    attendees: list[str] = field(default_factory=list)
    calendar_id: str = ""
    calendar_name: str = ""
    all_day: bool = False

    @property
    def start_at(self) -> datetime:
        return parse_event_time(self.start)

    @property
    def end_at(self) -> datetime:
        return parse_event_time(self.end)


def parse_event_time(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_event(item: dict[str, Any], calendar_id: str, calendar_name: str) -> CalendarEvent | None:
    s = item.get("start", {}) or {}
    e = item.get("end", {}) or {}
    if "dateTime" in s and "dateTime" in e:
        start, end, all_day = s["dateTime"], e["dateTime"], False
    elif "date" in s and "date" in e:
        start, end, all_day = s["date"], e["date"], True
    else:
        return None
    attendees = [a["email"] for a in (item.get("attendees") or []) if a.get("email")]
    return CalendarEvent(
        id=item.get("id", ""),
        title=(item.get("summary") or "").strip() or NO_TITLE,
        start=start,
        end=end,
        attendees=attendees,
        calendar_id=calendar_id,
        calendar_name=calendar_name,
        all_day=all_day,
    )


# ─────────────────────────────────────────────────────────────
# Tokens
# ─────────────────────────────────────────────────────────────

# entries drop out once no caller holds the lock
_refresh_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_refresh_locks_guard = threading.Lock()


def _account_lock(account_id: str) -> threading.Lock:
    with _refresh_locks_guard:
        lock = _refresh_locks.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _refresh_locks[account_id] = lock
        return lock


def _needs_refresh(access_token: str, expires_at: str) -> bool:
    if not access_token or not expires_at:
        return True
    try:
        expiry = parse_event_time(expires_at)
    except ValueError:
        return True
    margin = timedelta(seconds=config.TOKEN_REFRESH_MARGIN_SECONDS)
    return expiry - storage.utc_now() <= margin


def _refresh_access_token(refresh_token: str) -> tuple[str, datetime]:
    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=config.GOOGLE_TOKEN_URI,
        client_id=config.GOOGLE_CLIENT_ID,
        client_secret=config.GOOGLE_CLIENT_SECRET,
        scopes=config.GOOGLE_SCOPES,
    )
    creds.refresh(GoogleAuthRequest())
    # google-auth keeps expiry as naive UTC
    if creds.expiry:
        expiry = creds.expiry.replace(tzinfo=timezone.utc)
    else:
        expiry = storage.utc_now() + timedelta(hours=1)
    return creds.token, expiry


def get_valid_access_token(account: dict[str, Any]) -> str:
    """
    Return a usable access token for a linked account, refreshing it when it
    expires within the configured margin.

    Only one refresh per account runs at a time; a caller that waited on the
    lock re-reads the stored token and reuses a refresh done meanwhile.
    """
    account_id = account["id"]
    if not _needs_refresh(account.get("access_token", ""), account.get("token_expires_at", "")):
        return account["access_token"]

    with _account_lock(account_id):
        current = storage.get_linked_account(account_id) or account
        if not _needs_refresh(current.get("access_token", ""), current.get("token_expires_at", "")):
            return current["access_token"]
        if not current.get("refresh_token"):
            raise TokenRefreshError(f"Account {account_id} has no refresh token; reconnect required")
        try:
            token, expiry = _refresh_access_token(current["refresh_token"])
        except GoogleAuthError as exc:
            raise TokenRefreshError(f"Token refresh failed for account {account_id}: {exc}") from exc
        storage.update_account_access_token(account_id, token, expiry.isoformat())
        log.info("Refreshed Google access token for account %s (expires %s)", account_id, expiry.isoformat())
        return token


# ─────────────────────────────────────────────────────────────
# Google APIs
# ─────────────────────────────────────────────────────────────

def _calendar_service(access_token: str):
    return build("calendar", "v3", credentials=Credentials(token=access_token), cache_discovery=False)


def list_calendars(access_token: str) -> list[dict[str, str]]:
    svc = _calendar_service(access_token)
    out: list[dict[str, str]] = []
    page_token = None
    try:
        while True:
            resp = svc.calendarList().list(pageToken=page_token).execute(num_retries=2)
            for item in resp.get("items", []):
                out.append({"id": item.get("id", ""), "summary": item.get("summary", "") or ""})
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
    except FETCH_ERRORS as exc:
        raise ExternalFetchError(f"Failed to list calendars: {exc}") from exc
    return out


def list_events(access_token: str, calendar_id: str, time_min: datetime, time_max: datetime,
                calendar_name: str = "") -> list[CalendarEvent]:
    svc = _calendar_service(access_token)
    items: list[dict[str, Any]] = []
    page_token = None
    try:
        while True:
            resp = (
                svc.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=time_min.isoformat(),
                    timeMax=time_max.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                )
                .execute(num_retries=2)
            )
            items.extend(resp.get("items", []))
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
    except FETCH_ERRORS as exc:
        raise ExternalFetchError(f"Failed to list events for calendar {calendar_id}: {exc}") from exc

    events: list[CalendarEvent] = []
    for item in items:
        ev = _parse_event(item, calendar_id, calendar_name)
        if ev is not None:
            events.append(ev)
    return events


def fetch_userinfo(access_token: str) -> dict[str, Any]:
    r = requests.get(
        USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=config.HTTP_TIMEOUT,
    )
    r.raise_for_status()
    return r.json()


# ─────────────────────────────────────────────────────────────
# Per-user fan-out
# ─────────────────────────────────────────────────────────────

def _fetch_account_events(account: dict[str, Any], time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
    token = get_valid_access_token(account)
    events: list[CalendarEvent] = []
    for calendar_id, calendar_name in account["calendars"]:
        try:
            events.extend(list_events(token, calendar_id, time_min, time_max, calendar_name=calendar_name))
        except ExternalFetchError as exc:
            log.warning("Skipping calendar %s of account %s: %s", calendar_id, account["id"], exc)
    return events


def fetch_user_events(user_id: str, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
    """Events from every enabled calendar of the user; a failing account contributes nothing."""
    accounts: dict[str, dict[str, Any]] = {}
    for row in storage.list_enabled_calendars(user_id):
        account = accounts.setdefault(
            row["account_id"],
            {
                "id": row["account_id"],
                "access_token": row["access_token"],
                "refresh_token": row["refresh_token"],
                "token_expires_at": row["token_expires_at"],
                "calendars": [],
            },
        )
        account["calendars"].append((row["calendar_id"], row["calendar_name"]))
    if not accounts:
        return []

    ordered = list(accounts.values())
    events: list[CalendarEvent] = []
    with ThreadPoolExecutor(max_workers=max(1, min(config.FETCH_WORKERS, len(ordered)))) as pool:
        futures = [pool.submit(_fetch_account_events, acc, time_min, time_max) for acc in ordered]
        for account, future in zip(ordered, futures):
            try:
                events.extend(future.result())
            except ExternalFetchError as exc:
                log.warning("Skipping linked account %s for user %s: %s", account["id"], user_id, exc)
            except Exception:
                log.exception("Skipping linked account %s for user %s after an unexpected error", account["id"], user_id)
    return events
