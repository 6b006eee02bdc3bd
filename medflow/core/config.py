import json
import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_json(value: str | None) -> dict | None:
    if not value or not value.strip():
        return None
    parsed = json.loads(value)
    if not isinstance(parsed, dict):
        raise RuntimeError("APPOINTMENT_TRANSITIONS must be a JSON object.")
    return parsed

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./medflow.db")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

APPOINTMENT_CANCELLATION_WINDOW_HOURS = float(os.getenv("APPOINTMENT_CANCELLATION_WINDOW_HOURS", "24"))
APPOINTMENT_ENFORCE_TERMINAL_STATES = _get_bool(os.getenv("APPOINTMENT_ENFORCE_TERMINAL_STATES"), default=True)
APPOINTMENT_TRANSITIONS = _get_json(os.getenv("APPOINTMENT_TRANSITIONS"))

NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
REMINDER_HOURS_AHEAD = int(os.getenv("REMINDER_HOURS_AHEAD", "24"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if APPOINTMENT_CANCELLATION_WINDOW_HOURS < 0:
        raise RuntimeError("APPOINTMENT_CANCELLATION_WINDOW_HOURS cannot be negative.")
