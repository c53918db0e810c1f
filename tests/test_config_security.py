from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_default_secret_key_allowed_in_development() -> None:
    settings = Settings(_env_file=None, app_env="development", secret_key="change-me")
    assert settings.secret_key == "change-me"
    assert settings.is_production is False


def test_default_secret_key_rejected_in_production() -> None:
    with pytest.raises(ValidationError):
        Settings(
            _env_file=None,
            app_env="production",
            secret_key="change-me",
            cashfree_webhook_secret="whsec_live",
        )


def test_placeholder_secret_key_prefix_rejected_in_production() -> None:
    with pytest.raises(ValidationError):
        Settings(
            _env_file=None,
            app_env="prod",
            secret_key="change-me-in-production",
            cashfree_webhook_secret="whsec_live",
        )


def test_webhook_secret_required_in_production() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, app_env="production", secret_key="super-secure-value")


def test_unsigned_webhooks_rejected_in_production() -> None:
    with pytest.raises(ValidationError):
        Settings(
            _env_file=None,
            app_env="production",
            secret_key="super-secure-value",
            cashfree_webhook_secret="whsec_live",
            payment_webhook_allow_unsigned=True,
        )


def test_hardened_settings_allowed_in_production() -> None:
    settings = Settings(
        _env_file=None,
        app_env="Production",
        secret_key="super-secure-value",
        cashfree_webhook_secret="whsec_live",
        cashfree_env=" PRODUCTION ",
        frontend_url="https://learn.example.com/",
    )
    assert settings.is_production is True
    assert settings.cashfree_env == "production"
    assert settings.frontend_url == "https://learn.example.com"
