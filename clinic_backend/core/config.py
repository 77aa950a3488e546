import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL")

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:4200"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _get_int(os.getenv("JWT_EXPIRES_MINUTES"), 60)

# Shift rosters are wall-clock times in this zone; everything else is stored in UTC.
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")

SLOT_INTERVAL_MINUTES = _get_int(os.getenv("SLOT_INTERVAL_MINUTES"), 15)
MIN_SHIFT_MINUTES = _get_int(os.getenv("MIN_SHIFT_MINUTES"), 180)
MAX_SHIFT_MINUTES = _get_int(os.getenv("MAX_SHIFT_MINUTES"), 480)
ENFORCE_SHIFT_DURATION = _get_bool(os.getenv("ENFORCE_SHIFT_DURATION"), default=False)

ROSTER_FETCH_WORKERS = _get_int(os.getenv("ROSTER_FETCH_WORKERS"), 4)
SLOT_RESOLUTION_TIMEOUT_SECONDS = _get_int(os.getenv("SLOT_RESOLUTION_TIMEOUT_SECONDS"), 10)
CALENDAR_CACHE_TTL_SECONDS = _get_int(os.getenv("CALENDAR_CACHE_TTL_SECONDS"), 60)
CALENDAR_CACHE_MAX_ENTRIES = _get_int(os.getenv("CALENDAR_CACHE_MAX_ENTRIES"), 256)

MAX_APPOINTMENT_NOTES_LENGTH = 600


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")

    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL must be set.")

    if SLOT_INTERVAL_MINUTES <= 0:
        raise RuntimeError("SLOT_INTERVAL_MINUTES must be positive.")

    if MIN_SHIFT_MINUTES > MAX_SHIFT_MINUTES:
        raise RuntimeError("MIN_SHIFT_MINUTES cannot exceed MAX_SHIFT_MINUTES.")
