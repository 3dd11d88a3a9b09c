"""
Test suite for configuration and structured logging
"""

import io
import json
import logging
from decimal import Decimal

from loan_tracker.config import LoanTrackerConfig, get_config, reload_config
from loan_tracker.currency import Currency
from loan_tracker.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """pydantic-settings configuration"""

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_URL", "DEFAULT_CURRENCY", "AMOUNT_TOLERANCE", "ENABLE_AUDIT_LOGGING"):
            monkeypatch.delenv(f"LOAN_TRACKER_{name}", raising=False)
        config = LoanTrackerConfig(_env_file=None)

        assert config.database_url == "memory://"
        assert config.currency == Currency.INR
        assert config.tolerance == Decimal('0.01')
        assert config.max_tenure_months == 600
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LOAN_TRACKER_DEFAULT_CURRENCY", "usd")
        monkeypatch.setenv("LOAN_TRACKER_AMOUNT_TOLERANCE", "0.05")
        monkeypatch.setenv("LOAN_TRACKER_ENABLE_AUDIT_LOGGING", "false")

        config = LoanTrackerConfig(_env_file=None)

        assert config.currency == Currency.USD
        assert config.tolerance == Decimal('0.05')
        assert config.enable_audit_logging is False

    def test_reload_replaces_global(self, monkeypatch):
        monkeypatch.setenv("LOAN_TRACKER_MAX_TENURE_MONTHS", "360")
        try:
            assert reload_config().max_tenure_months == 360
            assert get_config().max_tenure_months == 360
        finally:
            monkeypatch.delenv("LOAN_TRACKER_MAX_TENURE_MONTHS")
            reload_config()


class TestStructuredLogging:
    """JSON log records carry action, resource and extra fields"""

    def setup_method(self):
        self.stream = io.StringIO()
        self.logger = logging.getLogger("loan_tracker.tests.capture")
        self.logger.handlers = []
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(JSONFormatter())
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_log_action_fields(self):
        log_action(self.logger, "info", "Installment 3 settled",
                   action="settle_installment", resource="loan:L1",
                   extra={"outstanding": "INR 1,000.00"})

        entry = self.lines()[0]
        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_tracker.tests.capture"
        assert entry["message"] == "Installment 3 settled"
        assert entry["action"] == "settle_installment"
        assert entry["resource"] == "loan:L1"
        assert entry["extra"] == {"outstanding": "INR 1,000.00"}
        assert "correlation_id" not in entry

    def test_disabled_level_is_skipped(self):
        log_action(self.logger, "debug", "noise", action="x")
        assert self.stream.getvalue() == ""

    def test_plain_logger_call(self):
        self.logger.warning("ledger unavailable")

        entry = self.lines()[0]
        assert entry["level"] == "WARNING"
        assert "action" not in entry

    def test_exception_included(self):
        try:
            raise ValueError("bad schedule")
        except ValueError:
            self.logger.exception("failed")

        assert "bad schedule" in self.lines()[0]["exception"]


class TestSetupLogging:
    """Package logger configuration"""

    def test_json_setup(self):
        logger = setup_logging("debug", "loan_tracker.tests.setup")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.propagate is False

    def test_repeated_setup_keeps_one_handler(self):
        setup_logging("INFO", "loan_tracker.tests.repeat")
        logger = setup_logging("WARNING", "loan_tracker.tests.repeat", log_format="text")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING

    def test_get_logger(self):
        assert get_logger("loan_tracker.settlement").name == "loan_tracker.settlement"
        assert get_logger().name == "loan_tracker"
