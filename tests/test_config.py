"""
Tests for environment-driven configuration and logging setup
"""

import json
import logging

from offline_sync import config as config_module
from offline_sync.config import OfflineSyncConfig, reload_config, get_config
from offline_sync.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:

    def test_defaults(self):
        config = OfflineSyncConfig(_env_file=None)

        assert config.max_offline_transactions == 10
        assert config.max_offline_amount == "1000.00"
        assert config.retry_base_delay_ms == 60000
        assert config.retry_max_attempts == 5
        assert config.metrics_window == 1000
        assert config.auth_enabled

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("OFFLINE_SYNC_DATABASE_URL", "memory://")
        monkeypatch.setenv("OFFLINE_SYNC_MAX_OFFLINE_TRANSACTIONS", "3")
        monkeypatch.setenv("OFFLINE_SYNC_AUTH_ENABLED", "false")

        config = OfflineSyncConfig(_env_file=None)
        assert config.database_url == "memory://"
        assert config.max_offline_transactions == 3
        assert not config.auth_enabled

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("OFFLINE_SYNC_API_PORT", "9999")
        try:
            assert reload_config().api_port == 9999
            assert get_config().api_port == 9999
        finally:
            config_module.config = original


class TestLogging:

    def test_json_formatter_includes_context(self):
        logger = logging.getLogger("offline_sync.test_json")
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(
                logger, "info", "Applied", user_id="u1", action="offline_transaction_applied",
                resource="offline_transaction:tx-1", extra={"duplicate": False}
            )
        finally:
            logger.removeHandler(handler)

        payload = json.loads(JSONFormatter().format(records[0]))
        assert payload["message"] == "Applied"
        assert payload["user_id"] == "u1"
        assert payload["action"] == "offline_transaction_applied"
        assert payload["resource"] == "offline_transaction:tx-1"
        assert payload["extra"] == {"duplicate": False}

    def test_log_action_respects_level(self):
        logger = logging.getLogger("offline_sync.test_level")
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        logger.setLevel(logging.WARNING)
        try:
            log_action(logger, "debug", "hidden")
        finally:
            logger.removeHandler(handler)

        assert records == []

    def test_setup_logging_text_format(self, tmp_path):
        log_file = tmp_path / "service.log"
        logger = setup_logging("DEBUG", logger_name="offline_sync.test_setup", log_format="text", log_file=str(log_file))
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()

        assert "hello" in log_file.read_text()
        assert logger.level == logging.DEBUG
