"""
Application configuration from environment variables.

Load with python-dotenv in main so env vars are available before imports.
Validates critical secrets at module load; missing values raise RuntimeError.
Provider OAuth apps are optional here; connecting an unconfigured provider
fails at request time instead.
"""
import os

# --- Required (raise if missing) ---
JWT_SECRET = os.getenv("JWT_SECRET")
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")

for name, val in [
    ("JWT_SECRET", JWT_SECRET),
    ("TOKEN_ENCRYPTION_KEY", TOKEN_ENCRYPTION_KEY),
]:
    if not val or not str(val).strip():
        raise RuntimeError(f"Required env var {name} is missing or empty")

JWT_ALGORITHM = "HS256"
JWT_COOKIE_NAME = os.getenv("JWT_COOKIE_NAME", "session")
JWT_COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 7 days


def _int_env(key: str, default: int, minimum: int = 1) -> int:
    try:
        return max(minimum, int(os.getenv(key, str(default))))
    except ValueError:
        return default


def _float_env(key: str, default: float) -> float:
    try:
        return max(0.0, float(os.getenv(key, str(default))))
    except ValueError:
        return default


def _bool_env(key: str, default: str = "false") -> bool:
    return os.getenv(key, default).lower() in ("1", "true", "yes")


# --- Provider OAuth apps ---
GOOGLE_DRIVE_CLIENT_ID = os.getenv("GOOGLE_DRIVE_CLIENT_ID", "")
GOOGLE_DRIVE_CLIENT_SECRET = os.getenv("GOOGLE_DRIVE_CLIENT_SECRET", "")
GOOGLE_DRIVE_REDIRECT_URI = os.getenv("GOOGLE_DRIVE_REDIRECT_URI", "")

DROPBOX_APP_KEY = os.getenv("DROPBOX_APP_KEY", "")
DROPBOX_APP_SECRET = os.getenv("DROPBOX_APP_SECRET", "")
DROPBOX_REDIRECT_URI = os.getenv("DROPBOX_REDIRECT_URI", "")

# OAuth CSRF: cookie name for state parameter, short-lived
OAUTH_STATE_COOKIE_NAME = os.getenv("OAUTH_STATE_COOKIE_NAME", "storage_oauth_state")
OAUTH_STATE_MAX_AGE = 600  # 10 minutes

# Frontend URL for post-connect redirect
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
SECURE_COOKIES = _bool_env("SECURE_COOKIES")

# --- Uploads ---
# Payloads at or above this size go through the resumable/chunked path
RESUMABLE_THRESHOLD_BYTES = _int_env("RESUMABLE_THRESHOLD_BYTES", 10 * 1024 * 1024)
# Google requires chunk sizes in multiples of 256 KiB
UPLOAD_CHUNK_SIZE_BYTES = _int_env("UPLOAD_CHUNK_SIZE_BYTES", 8 * 1024 * 1024)
MAX_UPLOAD_BYTES = _int_env("MAX_UPLOAD_BYTES", 500 * 1024 * 1024)

# Folder created once per (user, provider) that anchors the user's file tree
ROOT_FOLDER_NAME = os.getenv("ROOT_FOLDER_NAME", "RawBox")

# --- Tokens ---
TOKEN_REFRESH_MARGIN_SECONDS = _int_env("TOKEN_REFRESH_MARGIN_SECONDS", 300, minimum=0)

# --- Cache TTLs (seconds) ---
PHOTOS_CACHE_TTL = _int_env("PHOTOS_CACHE_TTL", 3600)
FILE_URL_CACHE_TTL = _int_env("FILE_URL_CACHE_TTL", 3600)
PROVIDERS_CACHE_TTL = _int_env("PROVIDERS_CACHE_TTL", 3600)

# --- Retry policy shared by adapters and the sync engine ---
RETRY_MAX_ATTEMPTS = _int_env("RETRY_MAX_ATTEMPTS", 3)
RETRY_INITIAL_DELAY = _float_env("RETRY_INITIAL_DELAY", 1.0)
RETRY_MAX_DELAY = _float_env("RETRY_MAX_DELAY", 30.0)
RETRY_MULTIPLIER = _float_env("RETRY_MULTIPLIER", 2.0)

# --- Rate governor ---
PROVIDER_QUOTAS = {
    "google-drive": {"requests_per_hour": 1000, "requests_per_day": 10000},
    "dropbox": {"requests_per_hour": 500, "requests_per_day": 5000},
}
DEFAULT_QUOTA = {"requests_per_hour": 100, "requests_per_day": 1000}
QUOTA_WARNING_PERCENT = 80.0
# Best-effort sync polling may only use this share of a provider's quota
SYNC_QUOTA_SHARE = _float_env("SYNC_QUOTA_SHARE", 0.5)
BACKOFF_BASE_SECONDS = _int_env("BACKOFF_BASE_SECONDS", 60)
BACKOFF_MAX_SECONDS = _int_env("BACKOFF_MAX_SECONDS", 3600)

# --- Sync ---
SYNC_ENABLED = _bool_env("SYNC_ENABLED", "true")
SYNC_INTERVAL_MINUTES = _int_env("SYNC_INTERVAL_MINUTES", 60)

# --- Sharing ---
SHARE_LINK_MAX_DAYS = _int_env("SHARE_LINK_MAX_DAYS", 365)

# Request timeouts (connect, read) in seconds
PROVIDER_REQUEST_TIMEOUT = (5, 60)
PROVIDER_UPLOAD_TIMEOUT = (5, 300)  # chunk and multipart uploads

# Database URL (SQLite default; use Postgres URL in production)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gallery_storage.db")

# Cache store for cache-aside reads and shared rate counters
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Skip create_all at startup (set in production when using Alembic migrations)
SKIP_DB_INIT = _bool_env("SKIP_DB_INIT")

# Environment: development | production (affects .env loading)
ENV = os.getenv("ENV", "development").lower()
