import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip().upper() for part in value.split(",") if part.strip())


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker / result backend) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")
    TELNYX_MESSAGING_PROFILE_ID = os.environ.get("TELNYX_MESSAGING_PROFILE_ID")

    # --- Message rendering ---
    OFFICE_PHONE_NUMBER = os.environ.get("OFFICE_PHONE_NUMBER")
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/New_York")
    # "all" = every active template applies to every event,
    # "court" = only templates without a court or matching the event's court
    TEMPLATE_SCOPE = os.environ.get("TEMPLATE_SCOPE", "all")

    # --- Dispatch ---
    DISPATCH_BATCH_SIZE = int(os.environ.get("DISPATCH_BATCH_SIZE", "50"))
    DISPATCH_INTERVAL_SECONDS = float(os.environ.get("DISPATCH_INTERVAL_SECONDS", "60"))
    RETRY_BASE_SECONDS = float(os.environ.get("RETRY_BASE_SECONDS", "60"))
    RETRY_MAX_DELAY_SECONDS = float(os.environ.get("RETRY_MAX_DELAY_SECONDS", "3600"))
    MAX_SEND_ATTEMPTS = int(os.environ.get("MAX_SEND_ATTEMPTS", "5"))
    PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "15"))

    # --- Stale claim recovery ---
    DISPATCH_TIMEOUT_SECONDS = float(os.environ.get("DISPATCH_TIMEOUT_SECONDS", "300"))
    STALE_SWEEP_INTERVAL_SECONDS = float(os.environ.get("STALE_SWEEP_INTERVAL_SECONDS", "120"))

    # --- Delivery reconciliation ---
    RECONCILE_INTERVAL_SECONDS = float(os.environ.get("RECONCILE_INTERVAL_SECONDS", "300"))
    RECONCILE_GRACE_SECONDS = float(os.environ.get("RECONCILE_GRACE_SECONDS", "120"))
    RECONCILE_BATCH_SIZE = int(os.environ.get("RECONCILE_BATCH_SIZE", "100"))

    # --- Confirmations ---
    CONFIRMATION_KEYWORDS = _csv(os.environ.get("CONFIRMATION_KEYWORDS", "YES,Y,CONFIRM,C,OK"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
