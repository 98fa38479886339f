import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

import config
from token_crypto import TokenCryptoError, decrypt_token, encrypt_token

log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(config.DB_PATH, timeout=15)
    conn.row_factory = sqlite3.Row
    return conn


def ensure_db() -> None:
    config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(config.DB_PATH) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              email TEXT NOT NULL UNIQUE,
              name TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS linked_accounts (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              google_email TEXT NOT NULL,
              access_token TEXT NOT NULL DEFAULT '',
              refresh_token TEXT NOT NULL DEFAULT '',
              token_expires_at TEXT NOT NULL DEFAULT '',
              is_primary INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              UNIQUE(user_id, google_email)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS selected_calendars (
              id TEXT PRIMARY KEY,
              linked_account_id TEXT NOT NULL,
              calendar_id TEXT NOT NULL,
              calendar_name TEXT NOT NULL DEFAULT '',
              is_enabled INTEGER NOT NULL DEFAULT 1,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              name TEXT NOT NULL,
              color TEXT NOT NULL DEFAULT '#6b7280',
              sort_order INTEGER NOT NULL DEFAULT 0,
              is_system INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS category_rules (
              id TEXT PRIMARY KEY,
              category_id TEXT NOT NULL,
              rule_type TEXT NOT NULL,              -- keyword | exact | prefix
              rule_value TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS event_categories (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              event_id TEXT NOT NULL,
              category_id TEXT NOT NULL,
              is_manual INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(user_id, event_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS event_title_cache (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              normalized_title TEXT NOT NULL,
              category_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(user_id, normalized_title)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS report_settings (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL UNIQUE,
              is_enabled INTEGER NOT NULL DEFAULT 1,
              send_day INTEGER NOT NULL DEFAULT 0,  -- 0 = Sunday
              send_hour INTEGER NOT NULL DEFAULT 0,
              timezone TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.commit()


# ─────────────────────────────────────────────────────────────
# Users & linked Google accounts
# ─────────────────────────────────────────────────────────────

def get_user(user_id: str) -> dict[str, Any] | None:
    with get_db() as conn:
        row = conn.execute("SELECT id, email, name FROM users WHERE id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def get_user_by_email(email: str) -> dict[str, Any] | None:
    with get_db() as conn:
        row = conn.execute("SELECT id, email, name FROM users WHERE email = ?", (email,)).fetchone()
    return dict(row) if row else None


def create_user(email: str, name: str) -> dict[str, Any]:
    user_id = new_id("usr")
    now = utc_now().isoformat()
    with get_db() as conn:
        conn.execute(
            "INSERT INTO users (id, email, name, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, email, name or "", now, now),
        )
        conn.commit()
    return {"id": user_id, "email": email, "name": name or ""}


def _with_plain_tokens(row: dict[str, Any]) -> dict[str, Any]:
    """Decrypt token columns in place; an unreadable token reads as missing."""
    for col in ("access_token", "refresh_token"):
        try:
            row[col] = decrypt_token(row[col])
        except TokenCryptoError as exc:
            log.warning("Unreadable %s for linked account %s: %s", col, row.get("id") or row.get("account_id"), exc)
            row[col] = ""
    return row


def create_linked_account(
    user_id: str,
    google_email: str,
    access_token: str,
    refresh_token: str,
    token_expires_at: str,
    is_primary: bool,
) -> str:
    account_id = new_id("acc")
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO linked_accounts
              (id, user_id, google_email, access_token, refresh_token, token_expires_at, is_primary, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account_id,
                user_id,
                google_email,
                encrypt_token(access_token),
                encrypt_token(refresh_token),
                token_expires_at,
                int(is_primary),
                utc_now().isoformat(),
            ),
        )
        conn.commit()
    return account_id


def find_linked_account(user_id: str, google_email: str) -> dict[str, Any] | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT id, is_primary FROM linked_accounts WHERE user_id = ? AND google_email = ?",
            (user_id, google_email),
        ).fetchone()
    return dict(row) if row else None


def get_linked_account(account_id: str) -> dict[str, Any] | None:
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT id, user_id, google_email, access_token, refresh_token, token_expires_at, is_primary
            FROM linked_accounts
            WHERE id = ?
            """,
            (account_id,),
        ).fetchone()
    return _with_plain_tokens(dict(row)) if row else None


def list_linked_accounts(user_id: str) -> list[dict[str, Any]]:
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT id, google_email, is_primary
            FROM linked_accounts
            WHERE user_id = ?
            ORDER BY is_primary DESC, created_at ASC
            """,
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def update_primary_account_tokens(user_id: str, access_token: str, refresh_token: str, token_expires_at: str) -> None:
    sealed_refresh = encrypt_token(refresh_token)
    with get_db() as conn:
        conn.execute(
            """
            UPDATE linked_accounts
            SET access_token = ?,
                refresh_token = CASE WHEN ? != '' THEN ? ELSE refresh_token END,
                token_expires_at = ?
            WHERE user_id = ? AND is_primary = 1
            """,
            (encrypt_token(access_token), sealed_refresh, sealed_refresh, token_expires_at, user_id),
        )
        conn.commit()


def update_account_access_token(account_id: str, access_token: str, token_expires_at: str) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE linked_accounts SET access_token = ?, token_expires_at = ? WHERE id = ?",
            (encrypt_token(access_token), token_expires_at, account_id),
        )
        conn.commit()


def delete_linked_account(user_id: str, account_id: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM selected_calendars WHERE linked_account_id = ?", (account_id,))
        conn.execute("DELETE FROM linked_accounts WHERE id = ? AND user_id = ?", (account_id, user_id))
        conn.commit()


# ─────────────────────────────────────────────────────────────
# Selected calendars
# ─────────────────────────────────────────────────────────────

def add_selected_calendars(account_id: str, calendars: Iterable[dict[str, str]], enabled: bool) -> None:
    now = utc_now().isoformat()
    with get_db() as conn:
        for cal in calendars:
            conn.execute(
                """
                INSERT INTO selected_calendars (id, linked_account_id, calendar_id, calendar_name, is_enabled, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (new_id("cal"), account_id, cal["id"], cal.get("summary", "") or "", int(enabled), now),
            )
        conn.commit()


def list_calendars(user_id: str) -> list[dict[str, Any]]:
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT sc.id, sc.calendar_id, sc.calendar_name, sc.is_enabled, la.google_email
            FROM selected_calendars sc
            JOIN linked_accounts la ON sc.linked_account_id = la.id
            WHERE la.user_id = ?
            ORDER BY la.is_primary DESC, sc.calendar_name
            """,
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def list_enabled_calendars(user_id: str) -> list[dict[str, Any]]:
    """Enabled calendars joined with the credentials of the account that owns them."""
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT sc.calendar_id, sc.calendar_name, la.id AS account_id,
                   la.access_token, la.refresh_token, la.token_expires_at
            FROM selected_calendars sc
            JOIN linked_accounts la ON sc.linked_account_id = la.id
            WHERE la.user_id = ? AND sc.is_enabled = 1
            ORDER BY la.is_primary DESC, la.created_at ASC, sc.rowid ASC
            """,
            (user_id,),
        )
        return [_with_plain_tokens(dict(r)) for r in cur.fetchall()]


def set_calendar_enabled(user_id: str, selected_calendar_id: str, enabled: bool) -> bool:
    with get_db() as conn:
        cur = conn.execute(
            """
            UPDATE selected_calendars SET is_enabled = ?
            WHERE id = ?
              AND linked_account_id IN (SELECT id FROM linked_accounts WHERE user_id = ?)
            """,
            (int(enabled), selected_calendar_id, user_id),
        )
        conn.commit()
        return cur.rowcount > 0


# ─────────────────────────────────────────────────────────────
# Categories & rules
# ─────────────────────────────────────────────────────────────

@dataclass
class CategoryPatch:
    name: str | None = None
    color: str | None = None


def list_categories(user_id: str) -> list[dict[str, Any]]:
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT id, name, color, sort_order, is_system
            FROM categories
            WHERE user_id = ?
            ORDER BY sort_order ASC, rowid ASC
            """,
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def get_category(user_id: str, category_id: str) -> dict[str, Any] | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT id, name, color, sort_order, is_system FROM categories WHERE id = ? AND user_id = ?",
            (category_id, user_id),
        ).fetchone()
    return dict(row) if row else None


def create_category(user_id: str, name: str, color: str, is_system: bool = False) -> dict[str, Any]:
    cid = new_id("cat")
    with get_db() as conn:
        max_order = conn.execute(
            "SELECT COALESCE(MAX(sort_order), 0) FROM categories WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
        sort_order = int(max_order) + 1
        conn.execute(
            """
            INSERT INTO categories (id, user_id, name, color, sort_order, is_system, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (cid, user_id, name, color, sort_order, int(is_system), utc_now().isoformat()),
        )
        conn.commit()
    return {"id": cid, "name": name, "color": color, "sort_order": sort_order, "is_system": int(is_system)}


def update_category(user_id: str, category_id: str, patch: CategoryPatch) -> bool:
    with get_db() as conn:
        cur = conn.execute(
            """
            UPDATE categories
            SET name = COALESCE(?, name),
                color = COALESCE(?, color)
            WHERE id = ? AND user_id = ?
            """,
            (patch.name, patch.color, category_id, user_id),
        )
        conn.commit()
        return cur.rowcount > 0


def _delete_categories(conn: sqlite3.Connection, user_id: str, category_ids: list[str]) -> None:
    for cid in category_ids:
        conn.execute("DELETE FROM category_rules WHERE category_id = ?", (cid,))
        conn.execute("DELETE FROM event_categories WHERE user_id = ? AND category_id = ?", (user_id, cid))
        conn.execute("DELETE FROM event_title_cache WHERE user_id = ? AND category_id = ?", (user_id, cid))
        conn.execute("DELETE FROM categories WHERE id = ? AND user_id = ?", (cid, user_id))


def delete_category(user_id: str, category_id: str) -> bool:
    with get_db() as conn:
        row = conn.execute(
            "SELECT id FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id)
        ).fetchone()
        if not row:
            return False
        _delete_categories(conn, user_id, [category_id])
        conn.commit()
    return True


def replace_system_categories(user_id: str, suggestions: list[dict[str, str]]) -> list[dict[str, Any]]:
    """Drop every AI-generated category (and what hangs off it) and insert the new suggestions."""
    now = utc_now().isoformat()
    created: list[dict[str, Any]] = []
    with get_db() as conn:
        cur = conn.execute("SELECT id FROM categories WHERE user_id = ? AND is_system = 1", (user_id,))
        _delete_categories(conn, user_id, [r["id"] for r in cur.fetchall()])
        for i, s in enumerate(suggestions):
            cid = new_id("cat")
            conn.execute(
                """
                INSERT INTO categories (id, user_id, name, color, sort_order, is_system, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                """,
                (cid, user_id, s["name"], s["color"], i, now),
            )
            created.append({"id": cid, "name": s["name"], "color": s["color"], "sort_order": i, "is_system": 1})
        conn.commit()
    return created


def list_rules(user_id: str) -> list[dict[str, Any]]:
    """All rules for a user in insertion order, with the owning category name."""
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT cr.category_id, cr.rule_type, cr.rule_value, c.name AS category_name
            FROM category_rules cr
            JOIN categories c ON cr.category_id = c.id
            WHERE c.user_id = ?
            ORDER BY cr.rowid ASC
            """,
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def list_category_rules(category_id: str) -> list[dict[str, Any]]:
    with get_db() as conn:
        cur = conn.execute(
            "SELECT id, rule_type, rule_value FROM category_rules WHERE category_id = ? ORDER BY rowid ASC",
            (category_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def add_rule(category_id: str, rule_type: str, rule_value: str) -> str:
    rule_id = new_id("rule")
    with get_db() as conn:
        conn.execute(
            "INSERT INTO category_rules (id, category_id, rule_type, rule_value, created_at) VALUES (?, ?, ?, ?, ?)",
            (rule_id, category_id, rule_type, rule_value, utc_now().isoformat()),
        )
        conn.commit()
    return rule_id


def delete_rule(category_id: str, rule_id: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM category_rules WHERE id = ? AND category_id = ?", (rule_id, category_id))
        conn.commit()


# ─────────────────────────────────────────────────────────────
# Event assignments & title cache
# ─────────────────────────────────────────────────────────────

def get_manual_assignments(user_id: str, event_ids: list[str]) -> dict[str, str]:
    if not event_ids:
        return {}
    placeholders = ",".join("?" for _ in event_ids)
    with get_db() as conn:
        cur = conn.execute(
            f"""
            SELECT event_id, category_id FROM event_categories
            WHERE user_id = ? AND is_manual = 1 AND event_id IN ({placeholders})
            """,
            (user_id, *event_ids),
        )
        return {r["event_id"]: r["category_id"] for r in cur.fetchall()}


def get_assignments(user_id: str) -> dict[str, str]:
    with get_db() as conn:
        cur = conn.execute("SELECT event_id, category_id FROM event_categories WHERE user_id = ?", (user_id,))
        return {r["event_id"]: r["category_id"] for r in cur.fetchall()}


def upsert_auto_assignment(user_id: str, event_id: str, category_id: str) -> None:
    """Insert or overwrite an automatic assignment; a manual row for the event is left alone."""
    now = utc_now().isoformat()
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO event_categories (id, user_id, event_id, category_id, is_manual, created_at, updated_at)
            VALUES (?, ?, ?, ?, 0, ?, ?)
            ON CONFLICT(user_id, event_id) DO UPDATE SET
              category_id = excluded.category_id,
              updated_at = excluded.updated_at
            WHERE event_categories.is_manual = 0
            """,
            (new_id("ec"), user_id, event_id, category_id, now, now),
        )
        conn.commit()


def set_manual_assignment(user_id: str, event_id: str, category_id: str) -> None:
    now = utc_now().isoformat()
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO event_categories (id, user_id, event_id, category_id, is_manual, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(user_id, event_id) DO UPDATE SET
              category_id = excluded.category_id,
              is_manual = 1,
              updated_at = excluded.updated_at
            """,
            (new_id("ec"), user_id, event_id, category_id, now, now),
        )
        conn.commit()


def load_title_cache(user_id: str) -> dict[str, str]:
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT normalized_title, category_id FROM event_title_cache
            WHERE user_id = ?
            ORDER BY updated_at DESC, rowid DESC
            """,
            (user_id,),
        )
        cache: dict[str, str] = {}
        for r in cur.fetchall():
            cache.setdefault(r["normalized_title"], r["category_id"])
        return cache


def write_title_cache(user_id: str, normalized_title: str, category_id: str) -> None:
    now = utc_now().isoformat()
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO event_title_cache (id, user_id, normalized_title, category_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, normalized_title) DO UPDATE SET
              category_id = excluded.category_id,
              updated_at = excluded.updated_at
            """,
            (new_id("etc"), user_id, normalized_title, category_id, now, now),
        )
        conn.commit()


# ─────────────────────────────────────────────────────────────
# Report settings
# ─────────────────────────────────────────────────────────────

@dataclass
class ReportSettingsPatch:
    is_enabled: bool | None = None
    send_day: int | None = None
    send_hour: int | None = None
    timezone: str | None = None


def get_report_settings(user_id: str) -> dict[str, Any] | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT is_enabled, send_day, send_hour, timezone FROM report_settings WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    return dict(row) if row else None


def save_report_settings(user_id: str, patch: ReportSettingsPatch) -> None:
    """Apply only the fields present in `patch`; a missing row is created from defaults first."""
    is_enabled = None if patch.is_enabled is None else int(patch.is_enabled)
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO report_settings (id, user_id, is_enabled, send_day, send_hour, timezone, created_at)
            VALUES (?, ?, 1, 0, 0, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (new_id("rs"), user_id, config.DEFAULT_TIMEZONE, utc_now().isoformat()),
        )
        conn.execute(
            """
            UPDATE report_settings
            SET is_enabled = COALESCE(?, is_enabled),
                send_day = COALESCE(?, send_day),
                send_hour = COALESCE(?, send_hour),
                timezone = COALESCE(?, timezone)
            WHERE user_id = ?
            """,
            (is_enabled, patch.send_day, patch.send_hour, patch.timezone, user_id),
        )
        conn.commit()


def list_report_recipients() -> list[dict[str, Any]]:
    with get_db() as conn:
        cur = conn.execute(
            """
            SELECT u.id, u.email, rs.send_day, rs.send_hour, rs.timezone
            FROM users u
            JOIN report_settings rs ON u.id = rs.user_id
            WHERE rs.is_enabled = 1
            ORDER BY u.created_at ASC, u.rowid ASC
            """
        )
        return [dict(r) for r in cur.fetchall()]
