import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SCANTRACK_DB_PATH", BASE_DIR / "database" / "scantrack.db"))
ADMIN_USERNAME = os.getenv("SCANTRACK_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("SCANTRACK_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("SCANTRACK_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("SCANTRACK_AUTH_TOKEN_TTL_SECONDS", "43200"))

LOG_LEVEL = os.getenv("SCANTRACK_LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FILE = os.getenv("SCANTRACK_LOG_FILE", "").strip() or None


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_seconds(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return max(0.0, float(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SCANTRACK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SCANTRACK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SCANTRACK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SCANTRACK_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("SCANTRACK_ENABLE_DEBUG_ENDPOINTS"), False)

# Scanner lifecycle timings (seconds)
SCANNER_IDLE_TIMEOUT_SECONDS = _parse_seconds(
    os.getenv("SCANTRACK_SCANNER_IDLE_TIMEOUT_SECONDS"), 60.0
)
SCANNER_ERROR_COOLDOWN_SECONDS = _parse_seconds(
    os.getenv("SCANTRACK_SCANNER_ERROR_COOLDOWN_SECONDS"), 3.0
)
SCANNER_CONFIRM_REARM_SECONDS = _parse_seconds(
    os.getenv("SCANTRACK_SCANNER_CONFIRM_REARM_SECONDS"), 1.0
)
SCANNER_RESET_DELAY_SECONDS = _parse_seconds(
    os.getenv("SCANTRACK_SCANNER_RESET_DELAY_SECONDS"), 0.5
)

# Only write a participant's location if it still holds the value read at decision time.
LOCATION_COMPARE_AND_SWAP = _parse_bool(os.getenv("SCANTRACK_LOCATION_COMPARE_AND_SWAP"), False)
