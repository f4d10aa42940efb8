"""Process configuration, read once from the environment (and ``.env``)."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DATABASE_URL = f"sqlite+aiosqlite:///{BASE_DIR / 'db' / 'database.db'}"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    # Values pasted into .env files often keep their quotes
    raw = raw.strip().strip("'\"")
    return raw or default


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    public_base_url: str = "http://127.0.0.1:8000"

    swish_api_url: str = "https://cpc.getswish.net/swish-cpcapi/api/v1"
    swish_payee_alias: str = "1231181189"
    swish_cert_path: Optional[str] = None
    swish_key_path: Optional[str] = None
    swish_ca_path: Optional[str] = None
    swish_callback_cert_path: Optional[str] = None
    swish_test_mode: bool = False
    gateway_timeout: float = 10.0
    currency: str = "SEK"

    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_timeout: float = 10.0
    mail_from: str = "info@studioclay.se"

    job_max_retries: int = 3
    job_backoff_base: float = 30.0
    job_batch_size: int = 10
    job_poll_interval: float = 5.0
    job_stale_after: float = 300.0
    job_delivery_timeout: float = 30.0
    job_processor_token: Optional[str] = None
    run_job_worker: bool = True

    gift_card_valid_days: int = 365
    invoice_due_days: int = 10

    telegram_bot_token: Optional[str] = None
    telegram_admin_chat_id: Optional[int] = None

    log_level: str = "INFO"

    @property
    def callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/payments/swish/callback"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        chat_id = _env_str("TELEGRAM_ADMIN_CHAT_ID")
        return cls(
            database_url=_env_str("DATABASE_URL", DEFAULT_DATABASE_URL),
            public_base_url=_env_str("PUBLIC_BASE_URL", cls.public_base_url),
            swish_api_url=_env_str("SWISH_API_URL", cls.swish_api_url),
            swish_payee_alias=_env_str("SWISH_PAYEE_ALIAS", cls.swish_payee_alias),
            swish_cert_path=_env_str("SWISH_CERT_PATH"),
            swish_key_path=_env_str("SWISH_KEY_PATH"),
            swish_ca_path=_env_str("SWISH_CA_PATH"),
            swish_callback_cert_path=_env_str("SWISH_CALLBACK_CERT_PATH"),
            swish_test_mode=_env_bool("SWISH_TEST_MODE", False),
            gateway_timeout=_env_float("GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout),
            currency=_env_str("CURRENCY", cls.currency),
            smtp_host=_env_str("SMTP_HOST", cls.smtp_host),
            smtp_port=_env_int("SMTP_PORT", cls.smtp_port),
            smtp_username=_env_str("SMTP_USERNAME"),
            smtp_password=_env_str("SMTP_PASSWORD"),
            smtp_use_tls=_env_bool("SMTP_USE_TLS", cls.smtp_use_tls),
            smtp_timeout=_env_float("SMTP_TIMEOUT_SECONDS", cls.smtp_timeout),
            mail_from=_env_str("MAIL_FROM", cls.mail_from),
            job_max_retries=_env_int("JOB_MAX_RETRIES", cls.job_max_retries),
            job_backoff_base=_env_float("JOB_BACKOFF_BASE_SECONDS", cls.job_backoff_base),
            job_batch_size=_env_int("JOB_BATCH_SIZE", cls.job_batch_size),
            job_poll_interval=_env_float("JOB_POLL_INTERVAL_SECONDS", cls.job_poll_interval),
            job_stale_after=_env_float("JOB_STALE_AFTER_SECONDS", cls.job_stale_after),
            job_delivery_timeout=_env_float("JOB_DELIVERY_TIMEOUT_SECONDS", cls.job_delivery_timeout),
            job_processor_token=_env_str("JOB_PROCESSOR_TOKEN"),
            run_job_worker=_env_bool("RUN_JOB_WORKER", cls.run_job_worker),
            gift_card_valid_days=_env_int("GIFT_CARD_VALID_DAYS", cls.gift_card_valid_days),
            invoice_due_days=_env_int("INVOICE_DUE_DAYS", cls.invoice_due_days),
            telegram_bot_token=_env_str("TELEGRAM_BOT_TOKEN"),
            telegram_admin_chat_id=int(chat_id) if chat_id else None,
            log_level=_env_str("LOG_LEVEL", cls.log_level),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
