"""
Tests for `services/config.py`.
"""

from __future__ import annotations

import pytest

from services.config import PaymentSettings, require_setting


def test_from_env_reads_payment_settings(monkeypatch) -> None:
    monkeypatch.setenv("PAYPAL_MODE", "live")
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "id")
    monkeypatch.setenv("FRONTEND_URL", "https://shop.test/")
    monkeypatch.setenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("DEFAULT_CURRENCY", "eur")
    monkeypatch.setenv("SUBSCRIPTION_TERM_DAYS", "30")

    settings = PaymentSettings.from_env()

    assert settings.paypal_base_url == "https://api-m.paypal.com"
    assert settings.paypal_client_id == "id"
    assert settings.frontend_url == "https://shop.test"
    assert settings.gateway_timeout_seconds == 5.0
    assert settings.default_currency == "EUR"
    assert settings.subscription_term_days == 30


def test_defaults_use_sandbox() -> None:
    settings = PaymentSettings()

    assert settings.paypal_base_url == "https://api-m.sandbox.paypal.com"
    assert settings.subscription_term_days == 365


@pytest.mark.parametrize(
    "kwargs",
    [
        {"paypal_mode": "production"},
        {"gateway_timeout_seconds": 0},
        {"subscription_term_days": -1},
    ],
)
def test_invalid_settings_are_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        PaymentSettings(**kwargs)


def test_require_setting_explains_missing_value() -> None:
    with pytest.raises(RuntimeError, match="Missing environment variable: STRIPE_SECRET_KEY"):
        require_setting(None, "STRIPE_SECRET_KEY", "your Stripe secret API key")

    assert require_setting("sk_test", "STRIPE_SECRET_KEY", "your Stripe secret API key") == "sk_test"
