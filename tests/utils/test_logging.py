"""Tests for logging helpers."""

from unittest.mock import Mock

import pytest

from hotspotrecon.utils.logging import (
    LogPerformance,
    add_correlation_id,
    clear_correlation_id,
    correlation_scope,
    filter_sensitive_data,
    get_correlation_id,
    mask_phone,
    set_correlation_id,
)

pytestmark = pytest.mark.unit


class TestSensitiveData:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("254712345678", "*********678"),
            (254712345678, "*********678"),
            ("123", "***"),
        ],
    )
    def test_mask_phone(self, value, expected):
        assert mask_phone(value) == expected

    def test_filter_sensitive_data(self):
        event = {
            "event": "payout_requested",
            "consumer_secret": "s3cr3t",
            "destination": "254712345678",
            "phone": None,
            "amount": "1050.00",
        }

        filtered = filter_sensitive_data(None, "info", event)

        assert filtered["consumer_secret"] == "***REDACTED***"
        assert filtered["destination"] == "*********678"
        assert filtered["phone"] is None
        assert filtered["amount"] == "1050.00"


class TestCorrelationId:
    def test_set_and_clear(self):
        correlation_id = set_correlation_id()

        assert get_correlation_id() == correlation_id
        assert add_correlation_id(None, "info", {})["correlation_id"] == correlation_id
        assert add_correlation_id(None, "info", {"correlation_id": "given"})["correlation_id"] == "given"

        clear_correlation_id()
        assert get_correlation_id() is None

    def test_explicit_id(self):
        assert set_correlation_id("pass-1") == "pass-1"
        clear_correlation_id()

    def test_scope_restores_previous_id(self):
        set_correlation_id("outer")

        with correlation_scope() as inner:
            assert get_correlation_id() == inner
            assert inner != "outer"

        assert get_correlation_id() == "outer"
        clear_correlation_id()


class TestLogPerformance:
    def test_success_logs_completion(self):
        logger = Mock()

        with LogPerformance("match_pass", logger, merchant_id="merchant-1"):
            pass

        logger.debug.assert_called_once_with("match_pass_started", merchant_id="merchant-1")
        name = logger.info.call_args.args[0]
        fields = logger.info.call_args.kwargs
        assert name == "match_pass_completed"
        assert fields["merchant_id"] == "merchant-1"
        assert fields["duration_ms"] >= 0

    def test_failure_logs_and_propagates(self):
        logger = Mock()

        with pytest.raises(RuntimeError):
            with LogPerformance("match_pass", logger):
                raise RuntimeError("boom")

        fields = logger.error.call_args.kwargs
        assert logger.error.call_args.args[0] == "match_pass_failed"
        assert fields["error"] == "boom"
        assert fields["error_type"] == "RuntimeError"
        logger.info.assert_not_called()
