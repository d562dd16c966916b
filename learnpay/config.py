import json
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _csv(value):
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _flag(value, default=False):
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(name, default):
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _float(name, default):
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


class Settings:
    """Runtime configuration read from the environment."""

    def __init__(self, **overrides):
        self.database_url: Optional[str] = os.getenv("DATABASE_URL")
        self.jwt_secret: Optional[str] = os.getenv("JWT_SECRET")

        self.default_currency = os.getenv("PAYMENTS_DEFAULT_CURRENCY", "USD").upper()
        allowed = [c.upper() for c in _csv(os.getenv("PAYMENTS_ALLOWED_CURRENCIES"))]
        self.allowed_currencies = [self.default_currency] + [
            c for c in allowed if c != self.default_currency
        ]

        self.tax_table = json.loads(os.getenv("PAYMENTS_TAX_TABLE") or "{}")
        self.tax_inclusive = _flag(os.getenv("PAYMENTS_TAX_INCLUSIVE"))
        self.minimum_tax_rate = os.getenv("PAYMENTS_MINIMUM_TAX_RATE", "0")
        self.max_coupon_percentage = _float("PAYMENTS_MAX_COUPON_PERCENTAGE", 80)

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.stripe_statement_descriptor = os.getenv("STRIPE_STATEMENT_DESCRIPTOR")

        self.paypal_client_id = os.getenv("PAYPAL_CLIENT_ID")
        self.paypal_client_secret = os.getenv("PAYPAL_CLIENT_SECRET")
        self.paypal_environment = os.getenv("PAYPAL_ENVIRONMENT", "sandbox")
        self.paypal_webhook_id = os.getenv("PAYPAL_WEBHOOK_ID")

        self.escrow_api_key = os.getenv("ESCROW_API_KEY")
        self.escrow_api_secret = os.getenv("ESCROW_API_SECRET")
        self.escrow_base_url = os.getenv("ESCROW_BASE_URL", "https://api.escrow.com/2017-09-01")
        self.escrow_webhook_secret = os.getenv("ESCROW_WEBHOOK_SECRET")

        self.gateway_max_attempts = _int("PAYMENTS_GATEWAY_MAX_ATTEMPTS", 3)
        self.gateway_base_delay_ms = _int("PAYMENTS_GATEWAY_BASE_DELAY_MS", 250)
        deadline = os.getenv("PAYMENTS_GATEWAY_DEADLINE_SECONDS")
        self.gateway_deadline_seconds = float(deadline) if deadline else None
        self.breaker_failure_threshold = _int("PAYMENTS_BREAKER_FAILURE_THRESHOLD", 5)
        self.breaker_cooldown_ms = _int("PAYMENTS_BREAKER_COOLDOWN_MS", 30000)

        self.commission_bps = _int("PAYMENTS_COMMISSION_BPS", 250)
        self.commission_minimum_fee = _int("PAYMENTS_COMMISSION_MINIMUM_FEE", 0)

        self.data_encryption_key = os.getenv("DATA_ENCRYPTION_KEY")
        self.data_hash_secret = os.getenv("DATA_HASH_SECRET")

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.host = os.getenv("HOST", "127.0.0.1")
        self.port = _int("PORT", 8000)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def coupon_cap_basis_points(self) -> int:
        return int(round(self.max_coupon_percentage * 100))

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def paypal_enabled(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_client_secret)

    @property
    def escrow_enabled(self) -> bool:
        return bool(self.escrow_api_key and self.escrow_api_secret)


settings = Settings()
