import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./cards.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: tuple[str, ...] = field(
        default_factory=lambda: _env_list("CORS_ORIGINS", "http://localhost:8081")
    )
    pin_length: int = int(os.getenv("PIN_LENGTH", "6"))
    otp_length: int = int(os.getenv("OTP_LENGTH", "6"))
    otp_ttl_minutes: int = int(os.getenv("OTP_TTL_MINUTES", "5"))
    otp_debug: bool = _env_bool("OTP_DEBUG", False)
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "10"))
    throttle_backend: str = os.getenv("THROTTLE_BACKEND", "memory").strip().lower()
    throttle_max_failures: int = int(os.getenv("THROTTLE_MAX_FAILURES", "5"))
    throttle_lockout_minutes: int = int(os.getenv("THROTTLE_LOCKOUT_MINUTES", "15"))
    notifier_backend: str = os.getenv("NOTIFIER_BACKEND", "log").strip().lower()
    notifier_timeout_seconds: float = float(
        os.getenv("NOTIFIER_TIMEOUT_SECONDS", "10")
    )
    otp_email_sender: str = (
        os.getenv("OTP_EMAIL_SENDER")
        or os.getenv("GMAIL_SENDER")
        or os.getenv("FROM_EMAIL", "")
    )
    otp_email_subject: str = os.getenv(
        "OTP_EMAIL_SUBJECT", "Your card activation code"
    )
    gmail_token_file: str = os.getenv("GMAIL_TOKEN_FILE", "")
    gmail_credentials_file: str = os.getenv(
        "GMAIL_CREDENTIALS_FILE", os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
    )
    twilio_account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    twilio_phone_number: str = os.getenv(
        "TWILIO_PHONE_NUMBER", os.getenv("PHONE_NUMBER", "")
    )
    default_country_code: str = os.getenv("DEFAULT_COUNTRY_CODE", "+1")


settings = Settings()
