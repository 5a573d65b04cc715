"""Tests for configuration validation and health checks."""

from __future__ import annotations

import dataclasses

from cryptography.fernet import Fernet

from clubpay.config import Settings, validate_settings


def _settings(**overrides: str) -> Settings:
    base = Settings(
        database_url="sqlite:///:memory:",
        secret_key="s" * 32,
        payment_encryption_key=Fernet.generate_key().decode(),
        gocardless_access_token="sandbox_abc",
        gocardless_environment="sandbox",
        gocardless_webhook_secret="whsec",
        environment="dev",
    )
    return dataclasses.replace(base, **overrides)


class TestValidateSettings:
    def test_no_warnings_when_configured(self) -> None:
        assert validate_settings(_settings()) == []

    def test_missing_secret_key(self) -> None:
        warnings = validate_settings(_settings(secret_key=""))
        assert any("SECRET_KEY is not set" in w for w in warnings)

    def test_short_secret_key(self) -> None:
        warnings = validate_settings(_settings(secret_key="short"))
        assert any("shorter than 32" in w for w in warnings)

    def test_missing_encryption_key(self) -> None:
        warnings = validate_settings(_settings(payment_encryption_key=""))
        assert any("PAYMENT_ENCRYPTION_KEY is not set" in w for w in warnings)

    def test_invalid_encryption_key(self) -> None:
        warnings = validate_settings(_settings(payment_encryption_key="not-a-fernet-key"))
        assert any("not a valid Fernet key" in w for w in warnings)

    def test_missing_access_token(self) -> None:
        warnings = validate_settings(_settings(gocardless_access_token=""))
        assert any("Direct Debit is disabled" in w for w in warnings)

    def test_sandbox_token_in_live_mode(self) -> None:
        warnings = validate_settings(_settings(gocardless_environment="live"))
        assert any("sandbox token in live mode" in w for w in warnings)

    def test_live_token_in_sandbox_mode(self) -> None:
        warnings = validate_settings(_settings(gocardless_access_token="live_abc"))
        assert any("live token in sandbox mode" in w for w in warnings)

    def test_missing_webhook_secret(self) -> None:
        warnings = validate_settings(_settings(gocardless_webhook_secret=""))
        assert any("GOCARDLESS_WEBHOOK_SECRET" in w for w in warnings)

    def test_localhost_database_in_production(self) -> None:
        warnings = validate_settings(
            _settings(
                database_url="postgresql+psycopg://u:p@localhost/clubpay",
                environment="production",
            )
        )
        assert any("localhost in production" in w for w in warnings)


class TestHealthCheck:
    def test_health_reports_database(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "checks": {"database": "ok"}}

    def test_metrics_exposed(self, client) -> None:
        client.get("/health")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "clubpay_http_requests_total" in resp.text
