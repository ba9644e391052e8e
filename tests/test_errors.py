"""
Error classification tests
"""

import pytest
import requests

from src.market_data_client.errors import (
    ErrorClass,
    MarketDataError,
    RequestCancelledError,
    RequestOutcome,
    classify_exception,
    classify_status,
    parse_retry_after,
    rate_limit_cooldown,
)


class TestClassifyStatus:
    @pytest.mark.parametrize("status,expected", [
        (200, None),
        (204, None),
        (304, None),
        (429, ErrorClass.RATE_LIMITED),
        (401, ErrorClass.AUTH_ERROR),
        (403, ErrorClass.AUTH_ERROR),
        (404, ErrorClass.NOT_FOUND),
        (405, ErrorClass.METHOD_NOT_ALLOWED),
        (500, ErrorClass.UPSTREAM_SERVER_ERROR),
        (503, ErrorClass.UPSTREAM_SERVER_ERROR),
        (400, ErrorClass.UNKNOWN_CLIENT_ERROR),
        (422, ErrorClass.UNKNOWN_CLIENT_ERROR),
    ])
    def test_status_mapping(self, status, expected):
        assert classify_status(status) == expected

    def test_400_mentioning_api_key_is_auth(self):
        assert classify_status(400, {"message": "Invalid API key provided"}) == ErrorClass.AUTH_ERROR
        assert classify_status(400, "apikey quota exceeded") == ErrorClass.AUTH_ERROR

    def test_400_other_body_is_client_error(self):
        assert classify_status(400, {"message": "bad symbol"}) == ErrorClass.UNKNOWN_CLIENT_ERROR


class TestClassifyException:
    def test_timeouts(self):
        assert classify_exception(requests.exceptions.ReadTimeout()) == ErrorClass.TIMEOUT
        assert classify_exception(requests.exceptions.ConnectTimeout()) == ErrorClass.TIMEOUT

    def test_network(self):
        assert classify_exception(requests.exceptions.ConnectionError()) == ErrorClass.NETWORK_ERROR

    def test_other(self):
        assert classify_exception(RuntimeError("boom")) == ErrorClass.UNKNOWN_CLIENT_ERROR


class TestRetryAfter:
    def test_delta_seconds(self):
        assert parse_retry_after("30") == 30.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("not a date") is None

    def test_cooldown_clamped(self):
        assert rate_limit_cooldown("30") == 30
        assert rate_limit_cooldown("600") == 60
        assert rate_limit_cooldown("0") == 1
        assert rate_limit_cooldown(None, default=60) == 60


class TestMarketDataError:
    def test_default_message_hides_body(self):
        err = MarketDataError(ErrorClass.NOT_FOUND, status_code=404, operation="stock_details")
        assert err.message == "Resource not found"
        assert err.to_dict() == {"error": "NOT_FOUND", "message": "Resource not found", "status": 404}
        assert not err.retriable

    def test_outcome_to_error(self):
        outcome = RequestOutcome(ErrorClass.UPSTREAM_SERVER_ERROR, status_code=502, retriable=True)
        err = outcome.to_error("search")
        assert err.classification == ErrorClass.UPSTREAM_SERVER_ERROR
        assert err.status_code == 502
        assert err.retriable

    def test_cancelled_keeps_last_error(self):
        last = MarketDataError(ErrorClass.TIMEOUT)
        err = RequestCancelledError(last, operation="news")
        assert isinstance(err, MarketDataError)
        assert err.classification == ErrorClass.TIMEOUT
        assert err.last_error is last
