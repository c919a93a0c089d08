"""Environment-driven settings for the billing service."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent


def _membership_prices() -> Dict[str, Optional[str]]:
    return {
        "BASIC": os.getenv("STRIPE_PRICE_BASIC_MEMBERSHIP"),
        "PROFESSIONAL": os.getenv("STRIPE_PRICE_PROFESSIONAL_MEMBERSHIP"),
        "PREMIUM": os.getenv("STRIPE_PRICE_PREMIUM_MEMBERSHIP"),
    }


@dataclass(frozen=True)
class Settings:
    database_url: str
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance: int = 300
    default_currency: str = "usd"
    app_url: str = "http://localhost:3000"
    telegram_bot_token: Optional[str] = None
    ops_chat_id: Optional[int] = None
    log_level: str = "INFO"
    email_api_url: Optional[str] = None
    membership_price_ids: Dict[str, Optional[str]] = field(default_factory=dict)


def get_settings() -> Settings:
    """Read settings from the environment (and ``.env`` if present)."""
    ops_chat_id = os.getenv("OPS_CHAT_ID")
    token = os.getenv("TELEGRAM_BOT_TOKEN")
    if token:
        token = token.strip().strip("'\"")

    return Settings(
        database_url=os.getenv(
            "DATABASE_URL", f"sqlite+aiosqlite:///{BASE_DIR / 'database.db'}"
        ),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
        default_currency=os.getenv("DEFAULT_CURRENCY", "usd"),
        app_url=os.getenv("APP_URL", "http://localhost:3000"),
        telegram_bot_token=token or None,
        ops_chat_id=int(ops_chat_id) if ops_chat_id else None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        email_api_url=os.getenv("EMAIL_API_URL") or None,
        membership_price_ids=_membership_prices(),
    )
