"""Environment-driven settings for the payment service."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class Settings:
    database_url: str = f"sqlite+aiosqlite:///{BASE_DIR / 'database.db'}"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    create_tables: bool = True

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 30.0
    currency: str = "INR"

    receipt_storage_path: str = str(BASE_DIR / "receipts")
    receipt_base_url: str = ""
    company_name: str = "VidyalayaOne"
    company_address: str = "Your Company Address Here"
    company_email: str = "contact@vidyalayaone.com"
    company_phone: str = "+91-9999999999"

    school_service_url: str = ""
    school_service_timeout: float = 30.0
    school_plan_on_payment: str = "basic"

    telegram_bot_token: Optional[str] = None
    telegram_admin_chat_id: Optional[int] = None

    webhook_max_retries: int = 3
    webhook_retry_batch_size: int = 10
    webhook_retry_interval_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment and an optional ``.env``."""
        load_dotenv()
        chat_id = os.getenv("TELEGRAM_ADMIN_CHAT_ID")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            api_prefix=os.getenv("API_PREFIX", cls.api_prefix),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            create_tables=os.getenv("CREATE_TABLES", "1") not in ("0", "false", "False"),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            razorpay_api_url=os.getenv("RAZORPAY_API_URL", cls.razorpay_api_url),
            gateway_timeout_seconds=_float_env("GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout_seconds),
            currency=os.getenv("PAYMENT_CURRENCY", cls.currency),
            receipt_storage_path=os.getenv("RECEIPT_STORAGE_PATH", cls.receipt_storage_path),
            receipt_base_url=os.getenv("RECEIPT_BASE_URL", ""),
            company_name=os.getenv("COMPANY_NAME", cls.company_name),
            company_address=os.getenv("COMPANY_ADDRESS", cls.company_address),
            company_email=os.getenv("COMPANY_EMAIL", cls.company_email),
            company_phone=os.getenv("COMPANY_PHONE", cls.company_phone),
            school_service_url=os.getenv("SCHOOL_SERVICE_URL", ""),
            school_service_timeout=_float_env("SCHOOL_SERVICE_TIMEOUT", cls.school_service_timeout),
            school_plan_on_payment=os.getenv("SCHOOL_PLAN_ON_PAYMENT", cls.school_plan_on_payment),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_admin_chat_id=int(chat_id) if chat_id else None,
            webhook_max_retries=_int_env("WEBHOOK_MAX_RETRIES", cls.webhook_max_retries),
            webhook_retry_batch_size=_int_env("WEBHOOK_RETRY_BATCH_SIZE", cls.webhook_retry_batch_size),
            webhook_retry_interval_seconds=_float_env(
                "WEBHOOK_RETRY_INTERVAL_SECONDS", cls.webhook_retry_interval_seconds
            ),
        )
