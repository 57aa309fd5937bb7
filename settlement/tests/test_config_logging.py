import json
import logging
import sys

import pytest
from loguru import logger

from settlement.config import Settings
from settlement.logging import configure_logging


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GEUWAT_SETTLEMENT_TIMEOUT_SECONDS", raising=False)
        settings = Settings(_env_file=None)

        assert settings.settlement_timeout_seconds == 10.0
        assert settings.rate_limit_max_requests == 10
        assert settings.rate_limit_window_seconds == 60.0
        assert settings.referral_code_max_attempts == 5

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("GEUWAT_SETTLEMENT_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("GEUWAT_CORS_ALLOW_ORIGINS", "https://admin.geuwat.id, http://localhost:3000")

        settings = Settings(_env_file=None)

        assert settings.settlement_timeout_seconds == 2.5
        assert settings.cors_allow_origins == ["https://admin.geuwat.id", "http://localhost:3000"]

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, settlement_timeout_seconds=0)


class TestLogging:
    """Tests for JSON log output."""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        yield
        logger.remove()
        logger.add(sys.stderr)
        logging.root.handlers.clear()

    def test_records_are_json_lines(self, capsys):
        configure_logging(service_name="geuwat-settlement", environment="development")

        logger.info("Settled payment", account_id="member-1")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["message"] == "Settled payment"
        assert payload["level"] == "info"
        assert payload["service"] == "geuwat-settlement"
        assert payload["account_id"] == "member-1"

    def test_stdlib_logging_is_bridged(self, capsys):
        configure_logging(service_name="geuwat-settlement", environment="staging")

        logging.getLogger("uvicorn.error").warning("Worker booted")

        payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert payload["message"] == "Worker booted"
        assert payload["level"] == "warning"
        assert payload["environment"] == "staging"

    def test_malformed_stdlib_record_is_still_logged(self, capsys):
        configure_logging(service_name="geuwat-settlement", environment="staging")

        logging.getLogger("uvicorn.error").warning("Booted %s on %s", "worker")

        payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert payload["message"] == "Booted %s on %s"
