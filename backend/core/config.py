import os



def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
APP_DEBUG = _get_bool(os.getenv("APP_DEBUG"), default=False)

CORS_ALLOWED_ORIGINS = _get_list(
    os.getenv("CORS_ALLOWED_ORIGINS"),
    default=["http://localhost:8081", "http://localhost:3000"],
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

GOOGLE_CALENDAR_API_BASE = os.getenv(
    "GOOGLE_CALENDAR_API_BASE",
    "https://www.googleapis.com/calendar/v3",
)
GOOGLE_CALENDAR_TEMPLATE_URL = os.getenv(
    "GOOGLE_CALENDAR_TEMPLATE_URL",
    "https://calendar.google.com/calendar/render",
)
CALENDAR_HTTP_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_HTTP_TIMEOUT_SECONDS", "10"))
CALENDAR_EVENT_PRODID = os.getenv("CALENDAR_EVENT_PRODID", "-//Zenith Legal//Appointments//EN")
CALENDAR_EVENT_UID_PREFIX = os.getenv("CALENDAR_EVENT_UID_PREFIX", "zenith")
SYNC_ERROR_DETAIL_LIMIT = int(os.getenv("SYNC_ERROR_DETAIL_LIMIT", "500"))

APPOINTMENT_REMINDER_OFFSET_MINUTES = int(os.getenv("APPOINTMENT_REMINDER_OFFSET_MINUTES", "15"))
APPOINTMENT_HIDE_AFTER_HOURS = int(os.getenv("APPOINTMENT_HIDE_AFTER_HOURS", "24"))

DEVICE_CALENDAR_ALARM_OFFSET_MINUTES = int(os.getenv("DEVICE_CALENDAR_ALARM_OFFSET_MINUTES", "15"))
DEVICE_CALENDAR_STORAGE_PREFIX = os.getenv(
    "DEVICE_CALENDAR_STORAGE_PREFIX",
    "zenith.device_calendar.events.v1",
)

def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
