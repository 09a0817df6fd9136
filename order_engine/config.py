import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    paystack_secret_key: str
    paystack_base_url: str
    currency: str
    processor_timeout: float
    max_identifier_attempts: int
    log_level: str
    sms_enabled: bool
    sms_api_url: str
    sms_client_id: str
    sms_client_secret: str
    sms_sender_id: str


def _flag(value: str) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    currency = (os.getenv("PAYMENT_CURRENCY") or "GHS").strip().upper()
    if len(currency) != 3:
        raise RuntimeError("PAYMENT_CURRENCY must be a 3-letter ISO 4217 code")

    return Settings(
        database_url=database_url,
        jwt_secret=os.getenv("JWT_SECRET", ""),
        paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
        paystack_base_url=os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/"),
        currency=currency,
        processor_timeout=float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "30")),
        max_identifier_attempts=int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        sms_enabled=_flag(os.getenv("SMS_ENABLED", "false")),
        sms_api_url=os.getenv("SMS_API_URL", "https://sms.hubtel.com/v1/messages/send"),
        sms_client_id=os.getenv("SMS_CLIENT_ID", ""),
        sms_client_secret=os.getenv("SMS_CLIENT_SECRET", ""),
        sms_sender_id=os.getenv("SMS_SENDER_ID", "CommerceGH"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
