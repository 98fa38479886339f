import os
from pathlib import Path

from dotenv import load_dotenv

APP_NAME = "CalTime"
BASE_DIR = Path(__file__).parent

# Load local env (secrets live in .env; file itself is ignored)
load_dotenv(dotenv_path=BASE_DIR / ".env", override=False)

DB_PATH = Path(os.getenv("DB_PATH", str(BASE_DIR / "caltime.db")))

# Sessions (login + OAuth state)
SESSION_SECRET = os.getenv("SESSION_SECRET", "")

# AES-256-GCM key for OAuth tokens at rest, 64 hex characters
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")
API_URL = os.getenv("API_URL", "http://127.0.0.1:8000").rstrip("/")

# Google OAuth (Calendar, read-only)
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", f"{API_URL}/api/auth/callback")
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

GOOGLE_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/calendar.readonly",
]

# Refresh access tokens this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "300"))

# OpenAI-compatible chat completions endpoint used for classification
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
AI_TIMEOUT = int(os.getenv("AI_TIMEOUT", "60"))
AI_MAX_ATTEMPTS = int(os.getenv("AI_MAX_ATTEMPTS", "3"))

# Mailgun (weekly report email)
MAILGUN_API_KEY = os.getenv("MAILGUN_API_KEY", "")
MAILGUN_DOMAIN = os.getenv("MAILGUN_DOMAIN", "")
MAILGUN_BASE_URL = os.getenv("MAILGUN_BASE_URL", "https://api.mailgun.net/v3").rstrip("/")

# Categorization only looks this far back when resolving requested event ids
CATEGORIZE_WINDOW_DAYS = int(os.getenv("CATEGORIZE_WINDOW_DAYS", "30"))

FETCH_WORKERS = int(os.getenv("FETCH_WORKERS", "4"))
HTTP_TIMEOUT = int(os.getenv("HTTP_TIMEOUT", "20"))

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Asia/Tokyo")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("true", "1", "yes", "on")
