"""
config.py
---------
Central configuration for the Outing planner.
All secrets loaded from environment variables — never hard-coded.

Services take their tunables as constructor arguments that default to the
constants below, so tests can override any of them without touching the
environment.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the backend directory (if it exists) so env vars in that file
# are picked up by os.getenv() below.
_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path, override=True)


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
# JSONL mirror of every trace event, one file per run
TRACE_LOG_DIR: str = os.getenv(
    "TRACE_LOG_DIR", str(Path(__file__).resolve().parent / "logs")
)

# ── LLM ──────────────────────────────────────────────────────────────────────
LLM_MODEL_NAME: str = os.getenv("LLM_MODEL_NAME", "gemini-1.5-flash")
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
# Stub mode returns a canned non-JSON answer; every stage degrades gracefully.
USE_STUB_LLM: bool = _flag("USE_STUB_LLM", "true")
LLM_TIMEOUT_SECONDS: int = int(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

# ── Venue ─────────────────────────────────────────────────────────────────────
# Generative plans speak HH:MM in venue-local time; all instants are tz-aware.
VENUE_TIMEZONE: str = os.getenv("VENUE_TIMEZONE", "Asia/Singapore")
VENUE_CITY: str = os.getenv("VENUE_CITY", "Singapore")
DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "SGD")
DEFAULT_LAT: float = float(os.getenv("DEFAULT_LAT", "1.3521"))
DEFAULT_LNG: float = float(os.getenv("DEFAULT_LNG", "103.8198"))

# ── Discovery ─────────────────────────────────────────────────────────────────
# Eventfinda REST API, HTTP Basic auth. Demo events are served when unset.
EVENTFINDA_USERNAME: str = os.getenv("EVENTFINDA_USERNAME", "")
EVENTFINDA_PASSWORD: str = os.getenv("EVENTFINDA_PASSWORD", "")
EVENTFINDA_API_BASE: str = os.getenv("EVENTFINDA_API_BASE", "https://api.eventfinda.sg/v2")

# Eventbrite listing pages are fetched through the Bright Data request API.
BRIGHT_DATA_API_KEY: str = os.getenv("BRIGHT_DATA_API_KEY", "")
BRIGHT_DATA_ZONE: str = os.getenv("BRIGHT_DATA_ZONE", "web_unlocker1")
BRIGHT_DATA_API_URL: str = os.getenv("BRIGHT_DATA_API_URL", "https://api.brightdata.com/request")
EVENTBRITE_BASE_URL: str = os.getenv("EVENTBRITE_BASE_URL", "https://www.eventbrite.sg")

DISCOVERY_MAX_RESULTS: int = int(os.getenv("DISCOVERY_MAX_RESULTS", "10"))
DISCOVERY_MAX_RETRIES: int = int(os.getenv("DISCOVERY_MAX_RETRIES", "3"))
DISCOVERY_BASE_DELAY_S: float = float(os.getenv("DISCOVERY_BASE_DELAY_S", "1.1"))
HTTP_TIMEOUT_S: int = int(os.getenv("HTTP_TIMEOUT_S", "30"))

# ── Trace bus ─────────────────────────────────────────────────────────────────
TRACE_TTL_S: float = float(os.getenv("TRACE_TTL_S", "600"))                 # 10 min
TRACE_SWEEP_INTERVAL_S: float = float(os.getenv("TRACE_SWEEP_INTERVAL_S", "120"))

# ── Approval gate ─────────────────────────────────────────────────────────────
APPROVAL_TTL_S: float = float(os.getenv("APPROVAL_TTL_S", "1800"))          # 30 min
APPROVAL_SWEEP_INTERVAL_S: float = float(os.getenv("APPROVAL_SWEEP_INTERVAL_S", "300"))

# ── Trace streaming ───────────────────────────────────────────────────────────
SSE_HEARTBEAT_S: float = float(os.getenv("SSE_HEARTBEAT_S", "15"))

# ── Reconciler ────────────────────────────────────────────────────────────────
MAX_ITINERARY_ITEMS: int = int(os.getenv("MAX_ITINERARY_ITEMS", "4"))
DAY_CUTOFF: str = os.getenv("DAY_CUTOFF", "23:00")
MAX_GAP_MINUTES: int = int(os.getenv("MAX_GAP_MINUTES", "45"))
MAX_PLAN_SPAN_HOURS: float = float(os.getenv("MAX_PLAN_SPAN_HOURS", "8"))

# ── Booking ───────────────────────────────────────────────────────────────────
USE_STUB_BROWSER: bool = _flag("USE_STUB_BROWSER", "true")
BROWSER_HEADLESS: bool = _flag("BROWSER_HEADLESS", "true")
BROWSER_NAV_TIMEOUT_MS: int = int(os.getenv("BROWSER_NAV_TIMEOUT_MS", "30000"))
BOOKING_MAX_CHECKOUT_STEPS: int = int(os.getenv("BOOKING_MAX_CHECKOUT_STEPS", "6"))
# Base settle delay between browser steps (seconds); 0 disables waits.
BOOKING_SETTLE_S: float = float(os.getenv("BOOKING_SETTLE_S", "2.0"))
SCREENSHOT_DIR: str = os.getenv("SCREENSHOT_DIR", "/tmp")

# ── Run context ───────────────────────────────────────────────────────────────
# Finished runs stay queryable for this long before being discarded.
CONTEXT_RETENTION_S: float = float(os.getenv("CONTEXT_RETENTION_S", "300"))
USE_REDIS_CONTEXT: bool = _flag("USE_REDIS_CONTEXT", "false")

# ── PostgreSQL ────────────────────────────────────────────────────────────────
# Schema defined in db/schema.sql
# Apply with: python scripts/run_migrations.py
USE_POSTGRES: bool = _flag("USE_POSTGRES", "false")
POSTGRES_HOST: str     = os.getenv("POSTGRES_HOST",     "localhost")
POSTGRES_PORT: int     = int(os.getenv("POSTGRES_PORT", "5432"))
POSTGRES_DB: str       = os.getenv("POSTGRES_DB",       "outing")
POSTGRES_USER: str     = os.getenv("POSTGRES_USER",     "outing_user")
POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "outing_pass")
POSTGRES_MIN_CONN: int = int(os.getenv("POSTGRES_MIN_CONN", "1"))
POSTGRES_MAX_CONN: int = int(os.getenv("POSTGRES_MAX_CONN", "10"))

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_HOST: str        = os.getenv("REDIS_HOST",     "localhost")
REDIS_PORT: int        = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB: int          = int(os.getenv("REDIS_DB",   "0"))
REDIS_PASSWORD: str    = os.getenv("REDIS_PASSWORD", "")
RUN_STATE_TTL: int     = int(os.getenv("RUN_STATE_TTL", "3600"))      # 1 hour
