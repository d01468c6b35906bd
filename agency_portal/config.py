import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Defaults to a local SQLite file so the app boots without Postgres in development.
# postgresql:// URLs are served by psycopg (v3); see database.normalize_database_url
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agency_portal.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# OAuth token encryption key (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
# Derived from SECRET_KEY when not set
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Public base URL of the portal, used for task links inside calendar events
APP_BASE_URL = os.getenv("APP_BASE_URL", FRONTEND_URL)

# Google Calendar OAuth Configuration
# Note: GOOGLE_REDIRECT_URI should point to FRONTEND (not backend API)
# OAuth flow: Google → Frontend → Frontend sends code to Backend API
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", f"{FRONTEND_URL}/auth/google-calendar")

# Calendar sync
# Initial state of the process-wide kill switch; toggled at runtime via /calendar-sync/enable|disable
CALENDAR_SYNC_ENABLED = os.getenv("CALENDAR_SYNC_ENABLED", "true").lower() != "false"
# Timezone used when a task does not carry its own
APP_TIMEZONE = os.getenv("APP_TIMEZONE", "America/Vancouver")
CALENDAR_EVENT_DURATION_MINUTES = int(os.getenv("CALENDAR_EVENT_DURATION_MINUTES", "60"))
# Refresh access tokens this many seconds before they expire
CALENDAR_TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv("CALENDAR_TOKEN_REFRESH_MARGIN_SECONDS", "300"))
CALENDAR_PROVIDER_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_PROVIDER_TIMEOUT_SECONDS", "30"))

# Bearer token for the /calendar-sync admin routes; routes are closed when unset
CALENDAR_ADMIN_TOKEN = os.getenv("CALENDAR_ADMIN_TOKEN")
