"""
Request executor tests: retry, rotation, caching, discovery
"""

import threading

import pytest
import requests

from src.market_data_client.endpoint_resolver import EndpointResolver
from src.market_data_client.errors import ErrorClass, MarketDataError, RequestCancelledError
from src.market_data_client.key_pool import KeyPoolManager, KeyStatus
from src.market_data_client.request_executor import RequestExecutor
from utils.cache import TTLCache

from conftest import make_response


def make_executor(session, clock, keys=("key-one", "key-two"), **kwargs):
    pool = KeyPoolManager(list(keys), clock=clock, monthly_limit=0, failure_threshold=5)
    cache = TTLCache(default_ttl=300, clock=clock)
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("max_attempts", 3)
    executor = RequestExecutor(
        pool, cache, base_url="https://api.test", session=session,
        resolver=EndpointResolver(clock=clock), **kwargs
    )
    return executor, pool, cache


def sent_keys(session):
    return [c.kwargs["headers"]["X-Api-Key"] for c in session.request.call_args_list]


def sent_urls(session):
    return [c.args[1] for c in session.request.call_args_list]


# ============================================================================
# Success / cache
# ============================================================================

class TestSuccess:
    def test_success_sends_key_and_params(self, session, clock):
        session.request.return_value = make_response(200, {"price": 10})
        executor, pool, _ = make_executor(session, clock)

        assert executor.execute("GET", "/stock", {"name": "TCS"}) == {"price": 10}

        call = session.request.call_args
        assert call.args == ("GET", "https://api.test/stock")
        assert call.kwargs["params"] == {"name": "TCS"}
        assert call.kwargs["headers"]["X-Api-Key"] == "key-one"
        assert pool.get_key("KEY_1").usage_count == 1

    def test_cache_hit_makes_no_call(self, session, clock):
        session.request.return_value = make_response(200, {"price": 10})
        executor, _, _ = make_executor(session, clock)

        executor.execute("GET", "/stock", {"name": "TCS"}, ttl=60)
        clock.advance(30)
        assert executor.execute("GET", "/stock", {"name": "TCS"}, ttl=60) == {"price": 10}
        assert session.request.call_count == 1

    def test_expired_entry_refetches(self, session, clock):
        session.request.side_effect = [
            make_response(200, {"price": 10}),
            make_response(200, {"price": 11}),
        ]
        executor, _, _ = make_executor(session, clock)

        executor.execute("GET", "/stock", ttl=60)
        clock.advance(61)
        assert executor.execute("GET", "/stock", ttl=60) == {"price": 11}
        assert session.request.call_count == 2

    def test_distinct_params_never_share_an_entry(self, session, clock):
        session.request.side_effect = [
            make_response(200, {"q": "first"}),
            make_response(200, {"q": "second"}),
        ]
        executor, _, _ = make_executor(session, clock)

        executor.execute("GET", "/search", {"filter": "price", "period": "1m"})
        assert executor.execute("GET", "/search", {"filter": "price&period=1m"}) == {"q": "second"}
        assert session.request.call_count == 2

    def test_post_is_not_cached(self, session, clock):
        session.request.return_value = make_response(200, {"ok": True})
        executor, _, cache = make_executor(session, clock)

        executor.execute("POST", "/orders", body={"qty": 1})
        executor.execute("POST", "/orders", body={"qty": 1})
        assert session.request.call_count == 2
        assert len(cache) == 0

    def test_text_body_returned_as_text(self, session, clock):
        session.request.return_value = make_response(200, text="plain")
        executor, _, _ = make_executor(session, clock)
        assert executor.execute("GET", "/ping") == "plain"

    def test_normalizer_applied(self, session, clock):
        session.request.return_value = make_response(200, {"data": [1, 2]})
        executor, _, _ = make_executor(session, clock, normalize=lambda p: p["data"])
        assert executor.execute("GET", "/list") == [1, 2]


# ============================================================================
# Retry / rotation
# ============================================================================

class TestRetry:
    def test_retry_bound_on_server_errors(self, session, clock):
        session.request.return_value = make_response(500, {"error": "boom"})
        executor, _, _ = make_executor(session, clock, max_attempts=3)

        with pytest.raises(MarketDataError) as exc:
            executor.execute("GET", "/stock")

        assert exc.value.classification == ErrorClass.UPSTREAM_SERVER_ERROR
        assert exc.value.status_code == 500
        assert "boom" not in str(exc.value)
        assert session.request.call_count == 3

    def test_server_error_retries_on_other_key(self, session, clock):
        session.request.side_effect = [make_response(502), make_response(200, {"ok": 1})]
        executor, _, _ = make_executor(session, clock)

        assert executor.execute("GET", "/stock") == {"ok": 1}
        assert sent_keys(session) == ["key-one", "key-two"]

    def test_429_cools_key_and_rotates(self, session, clock):
        session.request.side_effect = [
            make_response(429, headers={"Retry-After": "600"}),
            make_response(200, {"price": 5}),
        ]
        executor, pool, _ = make_executor(session, clock)

        assert executor.execute("GET", "/stock") == {"price": 5}
        assert sent_keys(session) == ["key-one", "key-two"]

        k1 = pool.get_key("KEY_1")
        assert k1.status == KeyStatus.COOLING
        assert k1.cooldown_until == pytest.approx(clock() + 60)
        assert pool.current_key().id == "KEY_2"

    def test_429_honours_short_retry_after(self, session, clock):
        session.request.side_effect = [
            make_response(429, headers={"Retry-After": "5"}),
            make_response(200, {}),
        ]
        executor, pool, _ = make_executor(session, clock)
        executor.execute("GET", "/stock")
        assert pool.get_key("KEY_1").cooldown_until == pytest.approx(clock() + 5)

    def test_404_is_not_retried(self, session, clock):
        session.request.return_value = make_response(404, {"message": "no such stock"})
        executor, pool, _ = make_executor(session, clock)

        with pytest.raises(MarketDataError) as exc:
            executor.execute("GET", "/stock/NOPE")
        assert exc.value.classification == ErrorClass.NOT_FOUND
        assert session.request.call_count == 1
        assert pool.get_key("KEY_1").status == KeyStatus.AVAILABLE

    def test_405_is_not_retried(self, session, clock):
        session.request.return_value = make_response(405)
        executor, _, _ = make_executor(session, clock)

        with pytest.raises(MarketDataError) as exc:
            executor.execute("DELETE", "/stock")
        assert exc.value.classification == ErrorClass.METHOD_NOT_ALLOWED
        assert session.request.call_count == 1

    def test_auth_error_retried_once_on_rotated_key(self, session, clock):
        session.request.side_effect = [make_response(401), make_response(200, {"ok": True})]
        executor, pool, _ = make_executor(session, clock)

        assert executor.execute("GET", "/stock") == {"ok": True}
        assert sent_keys(session) == ["key-one", "key-two"]
        assert pool.current_key().id == "KEY_2"

    def test_auth_error_not_retried_twice(self, session, clock):
        session.request.return_value = make_response(403)
        executor, _, _ = make_executor(session, clock, keys=("a-key", "b-key", "c-key"), max_attempts=5)

        with pytest.raises(MarketDataError) as exc:
            executor.execute("GET", "/stock")
        assert exc.value.classification == ErrorClass.AUTH_ERROR
        assert session.request.call_count == 2

    def test_auth_error_never_resends_rejected_key(self, session, clock):
        session.request.return_value = make_response(401)
        executor, pool, _ = make_executor(session, clock)
        pool.mark_cooling("KEY_2", 30)

        with pytest.raises(MarketDataError) as exc:
            executor.execute("GET", "/stock")
        assert exc.value.classification == ErrorClass.AUTH_ERROR
        assert sent_keys(session) == ["key-one"]

    def test_auth_error_single_key_fails_at_once(self, session, clock):
        session.request.return_value = make_response(401)
        executor, _, _ = make_executor(session, clock, keys=("only-key",))

        with pytest.raises(MarketDataError):
            executor.execute("GET", "/stock")
        assert session.request.call_count == 1

    def test_400_with_api_key_message_is_auth(self, session, clock):
        session.request.side_effect = [
            make_response(400, {"message": "API key limit exceeded"}),
            make_response(200, {"ok": True}),
        ]
        executor, _, _ = make_executor(session, clock)
        assert executor.execute("GET", "/stock") == {"ok": True}
        assert sent_keys(session) == ["key-one", "key-two"]

    def test_timeout_and_network_errors_retried(self, session, clock):
        session.request.side_effect = [
            requests.exceptions.ReadTimeout(),
            requests.exceptions.ConnectionError(),
            make_response(200, {"ok": True}),
        ]
        executor, _, _ = make_executor(session, clock)
        assert executor.execute("GET", "/stock") == {"ok": True}
        assert session.request.call_count == 3

    def test_timeout_exhausts_attempts(self, session, clock):
        session.request.side_effect = requests.exceptions.ReadTimeout()
        executor, _, _ = make_executor(session, clock, max_attempts=2)

        with pytest.raises(MarketDataError) as exc:
            executor.execute("GET", "/stock")
        assert exc.value.classification == ErrorClass.TIMEOUT
        assert session.request.call_count == 2

    def test_fixed_delay_between_attempts(self, session, clock):
        session.request.return_value = make_response(503)
        delays = []
        executor, _, _ = make_executor(session, clock, retry_delay=1.5, sleep=delays.append)

        with pytest.raises(MarketDataError):
            executor.execute("GET", "/stock")
        assert delays == [1.5, 1.5]

    def test_empty_pool_raises_auth_error(self, session, clock):
        executor, _, _ = make_executor(session, clock, keys=())
        with pytest.raises(MarketDataError) as exc:
            executor.execute("GET", "/stock")
        assert exc.value.classification == ErrorClass.AUTH_ERROR
        session.request.assert_not_called()


# ============================================================================
# Cancellation
# ============================================================================

class TestCancellation:
    def test_cancel_between_attempts(self, session, clock):
        cancel = threading.Event()

        def respond(*args, **kwargs):
            cancel.set()
            return make_response(500)

        session.request.side_effect = respond
        executor, _, _ = make_executor(session, clock)

        with pytest.raises(RequestCancelledError) as exc:
            executor.execute("GET", "/stock", cancel_event=cancel)
        assert session.request.call_count == 1
        assert exc.value.last_error.classification == ErrorClass.UPSTREAM_SERVER_ERROR

    def test_cancelled_before_start(self, session, clock):
        cancel = threading.Event()
        cancel.set()
        executor, _, _ = make_executor(session, clock)

        with pytest.raises(RequestCancelledError):
            executor.execute("GET", "/stock", cancel_event=cancel)
        session.request.assert_not_called()


# ============================================================================
# Endpoint discovery through the executor
# ============================================================================

class TestDiscovery:
    def test_discovery_then_direct_use(self, session, clock):
        routes = {
            "https://api.test/v1/X": make_response(404),
            "https://api.test/v2/X": make_response(200, {"symbol": "X"}),
            "https://api.test/v2/Y": make_response(200, {"symbol": "Y"}),
        }
        session.request.side_effect = lambda method, url, **kw: routes[url]
        executor, _, _ = make_executor(session, clock)
        candidates = ["/v1/{symbol}", "/v2/{symbol}"]

        assert executor.fetch_discovered("details", candidates, {"symbol": "X"}) == {"symbol": "X"}
        assert sent_urls(session) == ["https://api.test/v1/X", "https://api.test/v2/X"]

        session.request.reset_mock()
        assert executor.fetch_discovered("details", candidates, {"symbol": "Y"}) == {"symbol": "Y"}
        assert sent_urls(session) == ["https://api.test/v2/Y"]

    def test_failed_discovery_not_memoized(self, session, clock):
        session.request.return_value = make_response(404)
        executor, _, _ = make_executor(session, clock)

        with pytest.raises(MarketDataError):
            executor.fetch_discovered("details", ["/a/{s}", "/b/{s}"], {"s": "Z"})
        assert executor.resolver.get_binding("details") is None
        assert session.request.call_count == 2
