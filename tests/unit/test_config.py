"""Unit tests for environment-driven settings."""

import pytest

from payhook.config import SIGNATURE_HEADER, WebhookSettings


class TestWebhookSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch):
        for name in (
            "ENVIRONMENT",
            "RAZORPAY_WEBHOOK_SECRET",
            "RAZORPAY_WEBHOOK_SECRET_PARAMETER",
            "WEBHOOK_HANDLER_TIMEOUT_SECONDS",
            "WEBHOOK_MAX_PROCESSING_ATTEMPTS",
            "WEBHOOK_PROCESSING_LEASE_SECONDS",
            "WEBHOOK_STATE_PERSISTENCE",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = WebhookSettings.from_env()

        assert settings.environment == "dev"
        assert settings.webhook_secret is None
        assert settings.min_secret_length == 20
        assert settings.signature_header == SIGNATURE_HEADER
        assert settings.handler_timeout_seconds == 30
        assert settings.max_processing_attempts == 5
        assert settings.processing_lease_seconds == 120
        assert settings.enable_state_persistence is True
        assert settings.secret_parameter_path == "/payhook/dev/razorpay/webhook_secret"

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ENVIRONMENT", "prod")
        monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "whsec_from_environment_1234")
        monkeypatch.setenv("WEBHOOK_HANDLER_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("WEBHOOK_MAX_PROCESSING_ATTEMPTS", "7")
        monkeypatch.setenv("WEBHOOK_PROCESSING_LEASE_SECONDS", "45")
        monkeypatch.setenv("WEBHOOK_RETENTION_DAYS", "90")
        monkeypatch.setenv("WEBHOOK_STATE_PERSISTENCE", "off")

        settings = WebhookSettings.from_env()

        assert settings.environment == "prod"
        assert settings.webhook_secret == "whsec_from_environment_1234"
        assert settings.handler_timeout_seconds == 2.5
        assert settings.max_processing_attempts == 7
        assert settings.processing_lease_seconds == 45
        assert settings.retention_days == 90
        assert settings.enable_state_persistence is False
        assert settings.secret_parameter_path == "/payhook/prod/razorpay/webhook_secret"

    def test_empty_secret_treated_as_unset(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "")
        assert WebhookSettings.from_env().webhook_secret is None

    def test_custom_parameter_path(self):
        settings = WebhookSettings(webhook_secret_parameter="/shared/razorpay")
        assert settings.secret_parameter_path == "/shared/razorpay"

    def test_secret_hidden_from_repr(self):
        settings = WebhookSettings(webhook_secret="whsec_do_not_print_me_123")
        assert "whsec_do_not_print_me_123" not in repr(settings)

    def test_invalid_timeout_rejected(self):
        with pytest.raises(ValueError):
            WebhookSettings(handler_timeout_seconds=0)
