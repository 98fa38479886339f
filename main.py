import logging
import secrets
from datetime import timedelta, timezone
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from google.auth.exceptions import GoogleAuthError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import RedirectResponse

import config
import storage
from ai_classifier import AIClassificationError, generate_categories
from categorization import RULE_TYPES, NoCategoriesError, categorize
from google_calendar import ExternalFetchError, fetch_user_events, fetch_userinfo, list_calendars
from mailer import EmailDeliveryError, send_email
from reports import (
    build_report,
    parse_period_bound,
    render_report_html,
    send_weekly_reports,
    trailing_week,
    user_tz,
    weekly_subject,
)

log = logging.getLogger(__name__)

app = FastAPI(title=config.APP_NAME)
if not config.SESSION_SECRET:
    log.warning("SESSION_SECRET not set; using a random key, sessions will not survive a restart")
app.add_middleware(
    SessionMiddleware,
    secret_key=config.SESSION_SECRET or secrets.token_hex(32),
    https_only=False,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def current_user(request: Request) -> dict[str, Any]:
    user_id = request.session.get("user_id")
    user = storage.get_user(user_id) if user_id else None
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def _require_google_config() -> None:
    if not (config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET):
        raise HTTPException(
            status_code=400,
            detail="Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
        )
    if not config.SESSION_SECRET:
        raise HTTPException(
            status_code=400,
            detail="SESSION_SECRET not set. Add it to .env so the OAuth state survives the redirect.",
        )
    if not config.ENCRYPTION_KEY:
        raise HTTPException(
            status_code=400,
            detail="ENCRYPTION_KEY not set. Add 64 hex characters to .env so tokens can be stored encrypted.",
        )


def _oauth_flow(state: str | None = None):
    from google_auth_oauthlib.flow import Flow

    return Flow.from_client_config(
        {
            "web": {
                "client_id": config.GOOGLE_CLIENT_ID,
                "client_secret": config.GOOGLE_CLIENT_SECRET,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": config.GOOGLE_TOKEN_URI,
            }
        },
        scopes=config.GOOGLE_SCOPES,
        redirect_uri=config.GOOGLE_REDIRECT_URI,
        state=state,
    )


def _frontend_redirect(path: str) -> RedirectResponse:
    return RedirectResponse(url=f"{config.FRONTEND_URL}{path}")


# ─────────────────────────────────────────────────────────────
# Health & dev
# ─────────────────────────────────────────────────────────────

@app.get("/api/health")
def api_health() -> dict[str, str]:
    return {"status": "ok", "timestamp": storage.utc_now().isoformat()}


@app.get("/api/dev/env_status")
def api_dev_env_status() -> dict[str, Any]:
    """
    Dev-only helper: returns booleans, never secrets.
    Useful to confirm .env is being loaded.
    """
    return {
        "has_SESSION_SECRET": bool(config.SESSION_SECRET),
        "has_ENCRYPTION_KEY": bool(config.ENCRYPTION_KEY),
        "has_GOOGLE_CLIENT_ID": bool(config.GOOGLE_CLIENT_ID),
        "has_GOOGLE_CLIENT_SECRET": bool(config.GOOGLE_CLIENT_SECRET),
        "google_redirect_uri": config.GOOGLE_REDIRECT_URI,
        "has_OPENAI_API_KEY": bool(config.OPENAI_API_KEY),
        "mailgun_configured": bool(config.MAILGUN_API_KEY and config.MAILGUN_DOMAIN),
    }


# ─────────────────────────────────────────────────────────────
# Auth (Google OAuth login + linked accounts)
# ─────────────────────────────────────────────────────────────

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

# oauthlib raises a Warning when Google grants a different scope set
CALLBACK_ERRORS = (OAuth2Error, GoogleAuthError, requests.exceptions.RequestException, ValueError, Warning)


def _start_oauth(request: Request, mode: str) -> RedirectResponse:
    _require_google_config()
    flow = _oauth_flow()
    authorization_url, state = flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
    )
    request.session["oauth_state"] = state
    request.session["oauth_mode"] = mode
    return RedirectResponse(authorization_url)


def _import_calendars(account_id: str, access_token: str, enabled: bool) -> None:
    try:
        calendars = list_calendars(access_token)
    except ExternalFetchError as exc:
        log.warning("Could not import calendars for account %s: %s", account_id, exc)
        return
    storage.add_selected_calendars(account_id, calendars, enabled=enabled)
    log.info("Imported %d calendars for account %s", len(calendars), account_id)


@auth_router.get("/login")
def auth_login(request: Request) -> RedirectResponse:
    return _start_oauth(request, "login")


@auth_router.get("/link")
def auth_link(request: Request, user: dict = Depends(current_user)) -> RedirectResponse:
    return _start_oauth(request, "link")


@auth_router.get("/callback")
def auth_callback(
    request: Request, code: str | None = None, state: str | None = None, error: str | None = None
) -> RedirectResponse:
    _require_google_config()
    if error:
        return _frontend_redirect(f"/login?error={quote(error)}")
    if not code or not state:
        return _frontend_redirect("/login?error=missing_params")
    expected_state = request.session.pop("oauth_state", None)
    mode = request.session.pop("oauth_mode", "login")
    if not expected_state or state != expected_state:
        return _frontend_redirect("/login?error=invalid_state")

    flow = _oauth_flow(state=state)
    try:
        flow.fetch_token(code=code)
        creds = flow.credentials
        info = fetch_userinfo(creds.token)
    except CALLBACK_ERRORS as exc:
        log.warning("Google sign-in failed during token exchange: %s", exc)
        return _frontend_redirect("/login?error=auth_failed")
    # google-auth keeps expiry as naive UTC
    if creds.expiry:
        expires_at = creds.expiry.replace(tzinfo=timezone.utc).isoformat()
    else:
        expires_at = (storage.utc_now() + timedelta(hours=1)).isoformat()
    email = info.get("email", "")
    if not email:
        return _frontend_redirect("/login?error=auth_failed")

    if mode == "link":
        user_id = request.session.get("user_id")
        if not user_id or not storage.get_user(user_id):
            return _frontend_redirect("/settings?error=not_logged_in")
        if storage.find_linked_account(user_id, email):
            return _frontend_redirect("/settings?error=already_linked")
        account_id = storage.create_linked_account(
            user_id, email, creds.token or "", creds.refresh_token or "", expires_at, is_primary=False
        )
        _import_calendars(account_id, creds.token, enabled=False)
        log.info("Linked Google account %s to user %s", email, user_id)
        return _frontend_redirect("/settings?linked=true")

    user = storage.get_user_by_email(email)
    if user is None:
        user = storage.create_user(email, info.get("name", ""))
        account_id = storage.create_linked_account(
            user["id"], email, creds.token or "", creds.refresh_token or "", expires_at, is_primary=True
        )
        _import_calendars(account_id, creds.token, enabled=True)
        storage.save_report_settings(user["id"], storage.ReportSettingsPatch())
        log.info("Created user %s (%s)", user["id"], email)
    else:
        storage.update_primary_account_tokens(user["id"], creds.token or "", creds.refresh_token or "", expires_at)

    request.session["user_id"] = user["id"]
    return _frontend_redirect("/auth/callback")


@auth_router.get("/me")
def auth_me(request: Request) -> dict[str, Any]:
    user_id = request.session.get("user_id")
    user = storage.get_user(user_id) if user_id else None
    return {"user": user}


class LinkedAccountOut(CamelModel):
    id: str
    google_email: str
    is_primary: bool


@auth_router.get("/accounts")
def auth_accounts(user: dict = Depends(current_user)) -> dict[str, list[LinkedAccountOut]]:
    accounts = storage.list_linked_accounts(user["id"])
    return {
        "accounts": [
            LinkedAccountOut(id=a["id"], google_email=a["google_email"], is_primary=bool(a["is_primary"]))
            for a in accounts
        ]
    }


@auth_router.delete("/link/{account_id}")
def auth_unlink(account_id: str, user: dict = Depends(current_user)) -> dict[str, bool]:
    account = storage.get_linked_account(account_id)
    if not account or account["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Account not found")
    if account["is_primary"]:
        raise HTTPException(status_code=400, detail="Cannot unlink the primary account")
    storage.delete_linked_account(user["id"], account_id)
    return {"success": True}


@auth_router.post("/logout")
def auth_logout(request: Request) -> dict[str, bool]:
    request.session.clear()
    return {"success": True}


app.include_router(auth_router)


# ─────────────────────────────────────────────────────────────
# Calendars
# ─────────────────────────────────────────────────────────────

calendars_router = APIRouter(prefix="/api/calendars", tags=["calendars"])


class CalendarOut(CamelModel):
    id: str
    calendar_id: str
    name: str
    is_enabled: bool
    account_email: str


class CalendarUpdate(CamelModel):
    enabled: bool


@calendars_router.get("")
def api_calendars(user: dict = Depends(current_user)) -> dict[str, list[CalendarOut]]:
    return {
        "calendars": [
            CalendarOut(
                id=c["id"],
                calendar_id=c["calendar_id"],
                name=c["calendar_name"],
                is_enabled=bool(c["is_enabled"]),
                account_email=c["google_email"],
            )
            for c in storage.list_calendars(user["id"])
        ]
    }


@calendars_router.put("/{calendar_id}")
def api_update_calendar(calendar_id: str, req: CalendarUpdate, user: dict = Depends(current_user)) -> dict[str, bool]:
    if not storage.set_calendar_enabled(user["id"], calendar_id, req.enabled):
        raise HTTPException(status_code=404, detail="Calendar not found")
    return {"success": True}


app.include_router(calendars_router)


# ─────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────

events_router = APIRouter(prefix="/api/events", tags=["events"])


class EventOut(CamelModel):
    id: str
    title: str
    start: str
    end: str
    calendar_id: str
    calendar_name: str
    attendee_count: int
    category_id: str | None = None
    category_name: str | None = None
    category_color: str | None = None


class EventCategoryIn(CamelModel):
    category_id: str


def _period(user_id: str, start: str | None, end: str | None):
    if not start or not end:
        raise HTTPException(status_code=400, detail="start and end parameters are required")
    tz = user_tz(user_id)
    try:
        return parse_period_bound(start, tz, is_end=False), parse_period_bound(end, tz, is_end=True)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {exc}") from exc


@events_router.get("")
def api_events(
    start: str | None = None, end: str | None = None, user: dict = Depends(current_user)
) -> dict[str, list[EventOut]]:
    time_min, time_max = _period(user["id"], start, end)
    events = fetch_user_events(user["id"], time_min, time_max)
    categories = {c["id"]: c for c in storage.list_categories(user["id"])}
    assignments = storage.get_assignments(user["id"])

    out: list[EventOut] = []
    for ev in sorted(events, key=lambda e: e.start_at):
        cat = categories.get(assignments.get(ev.id, ""))
        out.append(
            EventOut(
                id=ev.id,
                title=ev.title,
                start=ev.start,
                end=ev.end,
                calendar_id=ev.calendar_id,
                calendar_name=ev.calendar_name,
                attendee_count=len(ev.attendees),
                category_id=cat["id"] if cat else None,
                category_name=cat["name"] if cat else None,
                category_color=cat["color"] if cat else None,
            )
        )
    return {"events": out}


@events_router.put("/{event_id}/category")
def api_set_event_category(event_id: str, req: EventCategoryIn, user: dict = Depends(current_user)) -> dict[str, bool]:
    if not storage.get_category(user["id"], req.category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    storage.set_manual_assignment(user["id"], event_id, req.category_id)
    return {"success": True}


app.include_router(events_router)


# ─────────────────────────────────────────────────────────────
# Categories & rules
# ─────────────────────────────────────────────────────────────

categories_router = APIRouter(prefix="/api/categories", tags=["categories"])


class CategoryOut(CamelModel):
    id: str
    name: str
    color: str
    sort_order: int
    is_system: bool


class CategoryCreate(CamelModel):
    name: str = ""
    color: str = "#6b7280"


class CategoryUpdate(CamelModel):
    name: str | None = None
    color: str | None = None


class RuleOut(CamelModel):
    id: str
    rule_type: str
    rule_value: str


class RuleCreate(CamelModel):
    rule_type: str | None = None
    rule_value: str | None = None


def _category_out(c: dict[str, Any]) -> CategoryOut:
    return CategoryOut(
        id=c["id"],
        name=c["name"],
        color=c["color"],
        sort_order=int(c["sort_order"]),
        is_system=bool(c["is_system"]),
    )


def _owned_category(user_id: str, category_id: str) -> dict[str, Any]:
    cat = storage.get_category(user_id, category_id)
    if not cat:
        raise HTTPException(status_code=404, detail="Category not found")
    return cat


@categories_router.get("")
def api_categories(user: dict = Depends(current_user)) -> dict[str, list[CategoryOut]]:
    return {"categories": [_category_out(c) for c in storage.list_categories(user["id"])]}


@categories_router.post("")
def api_create_category(req: CategoryCreate, user: dict = Depends(current_user)) -> dict[str, CategoryOut]:
    name = (req.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    cat = storage.create_category(user["id"], name, req.color)
    return {"category": _category_out(cat)}


@categories_router.post("/generate")
def api_generate_categories(user: dict = Depends(current_user)) -> dict[str, list[CategoryOut]]:
    now = storage.utc_now()
    events = fetch_user_events(user["id"], now - timedelta(days=config.CATEGORIZE_WINDOW_DAYS), now)
    if not events:
        raise HTTPException(status_code=400, detail="No events found")
    try:
        suggestions = generate_categories(events)
    except AIClassificationError as exc:
        log.warning("Category generation failed for user %s: %s", user["id"], exc)
        raise HTTPException(status_code=502, detail=f"Category generation failed: {exc}") from exc
    created = storage.replace_system_categories(user["id"], suggestions)
    return {"categories": [_category_out(c) for c in created]}


@categories_router.put("/{category_id}")
def api_update_category(category_id: str, req: CategoryUpdate, user: dict = Depends(current_user)) -> dict[str, CategoryOut]:
    _owned_category(user["id"], category_id)
    name = req.name
    if name is not None:
        name = name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Category name cannot be empty")
    storage.update_category(user["id"], category_id, storage.CategoryPatch(name=name, color=req.color))
    return {"category": _category_out(_owned_category(user["id"], category_id))}


@categories_router.delete("/{category_id}")
def api_delete_category(category_id: str, user: dict = Depends(current_user)) -> dict[str, bool]:
    if not storage.delete_category(user["id"], category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    return {"success": True}


@categories_router.get("/{category_id}/rules")
def api_category_rules(category_id: str, user: dict = Depends(current_user)) -> dict[str, list[RuleOut]]:
    _owned_category(user["id"], category_id)
    return {"rules": [RuleOut(**r) for r in storage.list_category_rules(category_id)]}


@categories_router.post("/{category_id}/rules")
def api_add_rule(category_id: str, req: RuleCreate, user: dict = Depends(current_user)) -> dict[str, RuleOut]:
    _owned_category(user["id"], category_id)
    value = (req.rule_value or "").strip()
    if not req.rule_type or not value:
        raise HTTPException(status_code=400, detail="ruleType and ruleValue are required")
    if req.rule_type not in RULE_TYPES:
        raise HTTPException(status_code=400, detail=f"ruleType must be one of {', '.join(RULE_TYPES)}")
    rule_id = storage.add_rule(category_id, req.rule_type, value)
    return {"rule": RuleOut(id=rule_id, rule_type=req.rule_type, rule_value=value)}


@categories_router.delete("/{category_id}/rules/{rule_id}")
def api_delete_rule(category_id: str, rule_id: str, user: dict = Depends(current_user)) -> dict[str, bool]:
    _owned_category(user["id"], category_id)
    storage.delete_rule(category_id, rule_id)
    return {"success": True}


app.include_router(categories_router)


# ─────────────────────────────────────────────────────────────
# Categorize
# ─────────────────────────────────────────────────────────────

class CategorizeIn(CamelModel):
    event_ids: list[str] = []


@app.post("/api/categorize")
def api_categorize(req: CategorizeIn, user: dict = Depends(current_user)) -> dict[str, Any]:
    if not req.event_ids:
        return {"results": []}
    try:
        outcome = categorize(user["id"], req.event_ids)
    except NoCategoriesError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "results": [{"eventId": eid, "categoryId": cid} for eid, cid in outcome.results],
        "unresolved": outcome.unresolved,
        "skipped": outcome.skipped,
    }


# ─────────────────────────────────────────────────────────────
# Report
# ─────────────────────────────────────────────────────────────

report_router = APIRouter(prefix="/api/report", tags=["report"])


@report_router.get("")
def api_report(start: str | None = None, end: str | None = None, user: dict = Depends(current_user)) -> dict[str, Any]:
    _period(user["id"], start, end)
    return build_report(user["id"], start, end)


@report_router.get("/preview")
def api_report_preview(user: dict = Depends(current_user)) -> dict[str, str]:
    start, end = trailing_week(user_tz(user["id"]))
    return {"html": render_report_html(build_report(user["id"], start, end))}


@report_router.post("/send")
def api_report_send(user: dict = Depends(current_user)) -> dict[str, bool]:
    start, end = trailing_week(user_tz(user["id"]))
    report = build_report(user["id"], start, end)
    try:
        send_email(user["email"], weekly_subject(report), render_report_html(report))
    except EmailDeliveryError as exc:
        log.warning("Report email to %s failed: %s", user["email"], exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"success": True}


app.include_router(report_router)


# ─────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────

settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


class SettingsOut(CamelModel):
    report_enabled: bool
    report_day: int
    report_hour: int
    timezone: str


class SettingsUpdate(CamelModel):
    report_enabled: bool | None = None
    report_day: int | None = None
    report_hour: int | None = None
    timezone: str | None = None


def _settings_out(user_id: str) -> SettingsOut:
    s = storage.get_report_settings(user_id)
    if not s:
        return SettingsOut(report_enabled=True, report_day=0, report_hour=0, timezone=config.DEFAULT_TIMEZONE)
    return SettingsOut(
        report_enabled=bool(s["is_enabled"]),
        report_day=int(s["send_day"]),
        report_hour=int(s["send_hour"]),
        timezone=s["timezone"],
    )


@settings_router.get("")
def api_settings(user: dict = Depends(current_user)) -> SettingsOut:
    return _settings_out(user["id"])


@settings_router.put("")
def api_update_settings(req: SettingsUpdate, user: dict = Depends(current_user)) -> SettingsOut:
    if req.report_day is not None and not 0 <= req.report_day <= 6:
        raise HTTPException(status_code=400, detail="reportDay must be between 0 (Sunday) and 6")
    if req.report_hour is not None and not 0 <= req.report_hour <= 23:
        raise HTTPException(status_code=400, detail="reportHour must be between 0 and 23")
    if req.timezone is not None:
        try:
            ZoneInfo(req.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Unknown timezone") from exc
    storage.save_report_settings(
        user["id"],
        storage.ReportSettingsPatch(
            is_enabled=req.report_enabled,
            send_day=req.report_day,
            send_hour=req.report_hour,
            timezone=req.timezone,
        ),
    )
    return _settings_out(user["id"])


app.include_router(settings_router)


# ─────────────────────────────────────────────────────────────
# Startup & scheduler
# ─────────────────────────────────────────────────────────────

def _weekly_report_job() -> None:
    send_weekly_reports()


def _start_scheduler() -> None:
    scheduler = BackgroundScheduler()
    scheduler.add_job(_weekly_report_job, "cron", minute=0)
    scheduler.start()


@app.on_event("startup")
def on_startup() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    storage.ensure_db()
    if config.SCHEDULER_ENABLED:
        _start_scheduler()
