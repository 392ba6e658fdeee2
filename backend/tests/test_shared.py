"""Tests for the shared telemetry, configuration and secret helpers."""

import logging
import stat
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from shared.config import Settings
from shared.logging import setup_logging
from shared.metrics import setup_metrics
from shared.security import (
    ensure_secret_file,
    generate_secret,
    hash_secret,
    read_secret_file,
    verify_secret,
)
from trustboot.metrics import TrustbootMetrics


def test_setup_logging():
    """Test that setup_logging configures OTel provider."""
    root = logging.getLogger()
    before = list(root.handlers)
    previous_level = root.level
    with patch("shared.logging.set_logger_provider") as mock_set_provider, \
         patch("shared.logging.LoggerProvider") as mock_provider_cls, \
         patch("shared.logging.BatchLogRecordProcessor"), \
         patch("shared.logging.ConsoleLogRecordExporter"), \
         patch("shared.logging.LoggingHandler") as mock_handler_cls:
        mock_handler_cls.return_value = logging.NullHandler()

        provider = setup_logging("DEBUG")

        mock_provider_cls.assert_called_once()
        mock_set_provider.assert_called_once_with(provider)
        assert mock_handler_cls.call_args.kwargs["level"] == logging.DEBUG
        assert root.level == logging.DEBUG

    for handler in root.handlers[:]:
        if handler not in before:
            root.removeHandler(handler)
    root.setLevel(previous_level)


def test_setup_metrics():
    """Test that setup_metrics configures OTel meter provider with the role resource."""
    with patch("shared.metrics.MeterProvider") as mock_provider_cls, \
         patch("shared.metrics.metrics.set_meter_provider") as mock_set_provider, \
         patch("shared.metrics.PeriodicExportingMetricReader"), \
         patch("shared.metrics.ConsoleMetricExporter"):

        setup_metrics("trustboot", "leaf")

        mock_provider_cls.assert_called_once()
        resource = mock_provider_cls.call_args.kwargs["resource"]
        assert resource.attributes["trustboot.role"] == "leaf"
        mock_set_provider.assert_called_once()


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.CA_VALIDITY_MONTHS == 120
        assert settings.POLL_INTERVAL_SECONDS == 2.0
        assert settings.CA_BUNDLE_POLL_ATTEMPTS == 30
        assert settings.CA_CERT_POLL_ATTEMPTS == 60
        assert settings.STORE_BACKEND == "file"

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("INHERITOR_HOSTNAME", "vault.internal")
        monkeypatch.setenv("CA_BUNDLE_POLL_ATTEMPTS", "5")

        settings = Settings(_env_file=None)

        assert settings.INHERITOR_HOSTNAME == "vault.internal"
        assert settings.CA_BUNDLE_POLL_ATTEMPTS == 5

    def test_rejects_weak_key_size(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, CA_KEY_SIZE=1024)

    def test_rejects_unknown_store_backend(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, STORE_BACKEND="pkcs11")


class TestSecrets:
    """Tests for secret generation, hashing and secret files."""

    def test_generate_secret_is_unpadded_base64url(self):
        secret = generate_secret()

        # 32 bytes -> 43 base64 characters without padding
        assert len(secret) == 43
        assert "=" not in secret

    def test_generate_secret_unique(self):
        secrets = [generate_secret() for _ in range(100)]
        assert len(set(secrets)) == 100

    def test_hash_secret_is_argon2(self):
        hashed = hash_secret("s3cret")

        assert hashed.startswith("$argon2")
        assert hashed != hash_secret("s3cret")

    def test_verify_secret(self):
        hashed = hash_secret("s3cret")

        assert verify_secret("s3cret", hashed) is True
        assert verify_secret("wrong", hashed) is False

    def test_verify_secret_invalid_hash(self):
        assert verify_secret("s3cret", "not-a-hash") is False

    def test_ensure_secret_file_creates_private_file(self, tmp_path):
        path = tmp_path / "secrets" / "store-password"

        secret, created = ensure_secret_file(path)

        assert created is True
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert read_secret_file(path) == secret

    def test_ensure_secret_file_is_idempotent(self, tmp_path):
        path = tmp_path / "store-password"
        first, _ = ensure_secret_file(path)

        second, created = ensure_secret_file(path)

        assert created is False
        assert second == first

    def test_ensure_secret_file_replaces_empty_leftover(self, tmp_path):
        path = tmp_path / "store-password"
        path.touch()

        secret, created = ensure_secret_file(path)

        assert created is True
        assert secret


class TestTrustbootMetrics:
    """The metrics facade records through the global meter."""

    def test_completed_gauge_tracks_passed_validations(self):
        facade = TrustbootMetrics()

        facade.record_validation("leaf", passed=False)
        assert not facade.is_completed("leaf")

        facade.record_validation("leaf", passed=True)
        observations = {o.attributes["role"]: o.value for o in facade._observe_completed(None)}

        assert facade.is_completed("leaf")
        assert observations == {"authority": 0, "inheritor": 0, "leaf": 1}
