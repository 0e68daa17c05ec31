"""
Tests for configuration and structured logging
"""

import json
import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from decimal import Decimal

from loan_servicing.config import LoanServicingConfig, SettingsConfigProvider, reload_config
from loan_servicing.currency import Currency
from loan_servicing.late_fees import LateFeeType
from loan_servicing.logging_config import JSONFormatter, log_action, setup_logging, setup_logging_from_settings


class TestConfig:

    def test_defaults(self):
        settings = LoanServicingConfig()
        assert settings.currency_enum == Currency.DOP
        assert settings.grace_period_days == 0
        assert settings.reject_overpayment is False
        assert settings.max_conflict_retries == 3
        assert settings.batch_max_workers == 4

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LOANS_GRACE_PERIOD_DAYS", "5")
        monkeypatch.setenv("LOANS_REJECT_OVERPAYMENT", "true")
        monkeypatch.setenv("LOANS_CURRENCY", "usd")

        settings = LoanServicingConfig()

        assert settings.grace_period_days == 5
        assert settings.reject_overpayment is True
        assert settings.currency_enum == Currency.USD

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("LOANS_BATCH_MAX_WORKERS", "9")
        assert reload_config().batch_max_workers == 9
        monkeypatch.delenv("LOANS_BATCH_MAX_WORKERS")
        reload_config()

    @pytest.mark.parametrize("field, value", [("batch_max_workers", 0), ("batch_max_workers", -2), ("max_conflict_retries", -1)])
    def test_concurrency_settings_are_bounded(self, field, value):
        with pytest.raises(PydanticValidationError):
            LoanServicingConfig(**{field: value})

    def test_policy_from_percent(self):
        settings = LoanServicingConfig(late_fee_value="1.5", grace_period_days=3)

        policy = SettingsConfigProvider(settings).get_late_fee_policy()

        assert policy.type == LateFeeType.PERCENTAGE_DAILY
        assert policy.value == Decimal('0.015')
        assert policy.grace_period_days == 3


class TestLogging:

    def test_json_formatter(self):
        record = logging.LogRecord("loan_servicing.test", logging.INFO, __file__, 1, "Applied %s", ("x",), None)
        record.user_id = "cashier-1"
        record.action = "apply_payment"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["message"] == "Applied x"
        assert entry["user_id"] == "cashier-1"
        assert entry["action"] == "apply_payment"
        assert "correlation_id" not in entry

    def test_setup_logging(self):
        logger = setup_logging("DEBUG", logger_name="loan_servicing_test_setup", log_format="text")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert not logger.propagate

        logger = setup_logging("INFO", logger_name="loan_servicing_test_setup")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_action_fields(self):
        logger = logging.getLogger("loan_servicing_test_actions")
        logger.setLevel(logging.INFO)
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(
                logger, "info", "Created loan", user_id="officer-1", action="create_loan",
                resource="loan:1", extra={"installments": 4}
            )
            log_action(logger, "debug", "not emitted")
        finally:
            logger.removeHandler(handler)

        assert len(captured) == 1
        record = captured[0]
        assert record.user_id == "officer-1"
        assert record.action == "create_loan"
        assert record.resource == "loan:1"
        assert record.extra == {"installments": 4}

    def test_setup_from_settings(self):
        settings = LoanServicingConfig(log_level="WARNING", log_format="text")
        logger = setup_logging_from_settings(settings)
        try:
            assert logger.name == "loan_servicing"
            assert logger.level == logging.WARNING
            assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
            logger.propagate = True
            logger.setLevel(logging.NOTSET)
