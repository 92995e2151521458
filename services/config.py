"""
Payment and fulfillment configuration.

Values come from the environment (optionally a `.env` file in the project
root), read once through `get_payment_settings()`.

Environment variables:
- PAYPAL_MODE: "sandbox" or "live" (default: sandbox)
- PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET: REST app credentials
- PAYPAL_WEBHOOK_ID: id of the webhook registered for this service
- STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET: Stripe credentials
- FRONTEND_URL: base URL for checkout return/cancel redirects
- PAYMENT_GATEWAY_TIMEOUT_SECONDS: bound on every provider call (default: 15)
- DEFAULT_CURRENCY: ISO-4217 code for new orders (default: USD)
- SUBSCRIPTION_TERM_DAYS: term of the subscription product (default: 365)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

_PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


@dataclass(frozen=True, slots=True)
class PaymentSettings:
    paypal_mode: str = "sandbox"
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_webhook_id: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    frontend_url: str = "http://localhost:3000"
    gateway_timeout_seconds: float = 15.0
    default_currency: str = "USD"
    subscription_term_days: int = 365

    def __post_init__(self) -> None:
        if self.paypal_mode not in _PAYPAL_BASE_URLS:
            raise ValueError(f"PAYPAL_MODE must be one of {sorted(_PAYPAL_BASE_URLS)}, got {self.paypal_mode!r}")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("PAYMENT_GATEWAY_TIMEOUT_SECONDS must be positive")
        if self.subscription_term_days <= 0:
            raise ValueError("SUBSCRIPTION_TERM_DAYS must be positive")

    @property
    def paypal_base_url(self) -> str:
        return _PAYPAL_BASE_URLS[self.paypal_mode]

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        return cls(
            paypal_mode=os.getenv("PAYPAL_MODE", "sandbox"),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
            paypal_webhook_id=os.getenv("PAYPAL_WEBHOOK_ID"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            gateway_timeout_seconds=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "15")),
            default_currency=os.getenv("DEFAULT_CURRENCY", "USD").upper(),
            subscription_term_days=int(os.getenv("SUBSCRIPTION_TERM_DAYS", "365")),
        )


@lru_cache(maxsize=1)
def get_payment_settings() -> PaymentSettings:
    return PaymentSettings.from_env()


def require_setting(value: Optional[str], env_name: str, purpose: str) -> str:
    """
    Return a configured value or fail with an explanatory message.

    Raises:
        RuntimeError: if the value is missing.
    """

    if not value:
        raise RuntimeError(
            f"Missing environment variable: {env_name}. "
            f"Set {env_name} to {purpose}."
        )
    return value


__all__ = ["PaymentSettings", "get_payment_settings", "require_setting"]
