import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables early so defaults below can be overridden by a local `.env`.
load_dotenv()

ROOT_DIR = Path(__file__).resolve().parent.parent


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return float(default)


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or default).strip() == "1"


# ── Server ───────────────────────────────────────────────────────
PORT = _env_int("PORT", 8080)
BASE_URL = os.getenv("BASE_URL", f"http://localhost:{PORT}")
DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "chatsphere.db")
REDIS_URL = os.getenv("REDIS_URL", "")
# SQLite lock/backoff tuning (ms). Keep small so endpoints don't hang under contention.
SQLITE_BUSY_TIMEOUT_MS = _env_int("SQLITE_BUSY_TIMEOUT_MS", 3000)
HEALTH_DB_TIMEOUT_SECONDS = _env_float("HEALTH_DB_TIMEOUT_SECONDS", 2.0)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# Verbose logging flag (payload dumps, per-frame traces)
LOG_VERBOSE = _env_flag("LOG_VERBOSE")

# ── Auth ─────────────────────────────────────────────────────────
DISABLE_AUTH = _env_flag("DISABLE_AUTH")
AUTH_SECRET = os.getenv("AUTH_SECRET", "") or os.getenv("SECRET_KEY", "")
ACCESS_TOKEN_TTL_SECONDS = _env_int("ACCESS_TOKEN_TTL_SECONDS", 24 * 3600)
JWT_ISSUER = os.getenv("JWT_ISSUER", "chatsphere")
ACCESS_COOKIE_NAME = "access_token"
ADMIN_USERNAME = (os.getenv("ADMIN_USERNAME", "") or "").strip()
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "") or ""

# ── Media / uploads ──────────────────────────────────────────────
MEDIA_DIR = Path(os.getenv("MEDIA_DIR") or str(ROOT_DIR / "media"))
UPLOAD_MAX_BYTES = _env_int("UPLOAD_MAX_BYTES", 25 * 1024 * 1024)

# ── WhatsApp Cloud API ───────────────────────────────────────────
WHATSAPP_ACCESS_TOKEN = (os.getenv("WHATSAPP_ACCESS_TOKEN", "") or "").strip()
WHATSAPP_PHONE_NUMBER_ID = (os.getenv("WHATSAPP_PHONE_NUMBER_ID", "") or "").strip()
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v19.0")
WHATSAPP_HTTP_TIMEOUT_SECONDS = _env_float("WHATSAPP_HTTP_TIMEOUT_SECONDS", 12.0)
VERIFY_TOKEN = os.getenv("VERIFY_TOKEN", "")
META_APP_SECRET = (os.getenv("META_APP_SECRET", "") or "").strip()

# Message template catalog used when none is stored: a JSON list, or a single named template.
META_TEMPLATE_CATALOG = os.getenv("META_TEMPLATE_CATALOG", "")
META_TEMPLATE_NAME = (os.getenv("META_TEMPLATE_NAME", "") or "").strip()
META_TEMPLATE_LANGUAGE = (os.getenv("META_TEMPLATE_LANGUAGE", "") or "").strip()
META_TEMPLATE_COMPONENTS = os.getenv("META_TEMPLATE_COMPONENTS", "")

# Webhook ingress queue to ensure we ACK Meta quickly and process in background.
WEBHOOK_QUEUE_MAXSIZE = _env_int("WEBHOOK_QUEUE_MAXSIZE", 1000)
WEBHOOK_WORKERS = _env_int("WEBHOOK_WORKERS", 2)
# Safety timeout for processing a single webhook event (seconds). If exceeded, we log and drop that event.
WEBHOOK_PROCESSING_TIMEOUT_SECONDS = _env_float("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", 60.0)

# Fan out push events across instances through Redis pub/sub when Redis is configured.
ENABLE_WS_PUBSUB = _env_flag("ENABLE_WS_PUBSUB", "1")

# ── Inbox policy ─────────────────────────────────────────────────
MAX_PINNED_CONVERSATIONS = _env_int("MAX_PINNED_CONVERSATIONS", 10)
ACTIVITY_MAX_IDLE_SECONDS = _env_int("ACTIVITY_MAX_IDLE_SECONDS", 5 * 60)

# ── Console runtime ──────────────────────────────────────────────
CONSOLE_BASE_URL = os.getenv("CONSOLE_BASE_URL", BASE_URL)
CONSOLE_STORAGE_DIR = Path(os.getenv("CONSOLE_STORAGE_DIR") or str(Path.home() / ".chatsphere"))
CONSOLE_RECONNECT_DELAY_MS = _env_int("CONSOLE_RECONNECT_DELAY_MS", 3000)
CALL_LOG_MAX_ENTRIES = _env_int("CALL_LOG_MAX_ENTRIES", 200)
