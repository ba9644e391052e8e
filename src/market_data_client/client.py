"""
MARKET DATA CLIENT
==================

Single entry point for every outbound call to the market data provider.
Wires KeyPoolManager, TTLCache, EndpointResolver and RequestExecutor.

Usage:
    client = get_client()

    quote = client.get("/stock", {"name": "RELIANCE"}, {"operation": "stock_details"})
    client.post("/portfolio", {"symbol": "TCS", "qty": 10})

    # Endpoint discovery
    details = client.get_discovered(
        "stock_details",
        ["/stock/{symbol}", "/stocks/{symbol}"],
        {"symbol": "RELIANCE"},
    )

    client.close()

Errors:
    Every failure is raised as MarketDataError with a classification
    (RATE_LIMITED, AUTH_ERROR, NOT_FOUND, ...) and a short message.
"""

import threading
from typing import Any, Dict, List, Mapping, Optional

import requests

from config import (
    MARKET_API_BASE_URL,
    CACHE_TTL_DEFAULT,
    CACHE_TTL_OVERRIDES,
    ROTATION_INTERVAL,
)
from utils.cache import TTLCache, make_fingerprint
from utils.logger import get_logger

from .endpoint_resolver import EndpointResolver
from .key_pool import Credential, KeyPoolManager, create_key_pool
from .normalizers import unwrap_payload
from .request_executor import RequestExecutor
from .usage_tracker import UsageTracker

logger = get_logger("MARKET_CLIENT")


class MarketDataClient:
    """
    Facade over the resilient executor

    Options accepted by every call (dict):
        operation: logical operation name (selects the cache ttl override)
        headers: extra request headers
        timeout: per-call timeout (seconds)
        cancel_event: threading.Event stopping further retries
    """

    def __init__(
        self,
        keys: Optional[List[str]] = None,
        base_url: str = MARKET_API_BASE_URL,
        key_pool: Optional[KeyPoolManager] = None,
        cache: Optional[TTLCache] = None,
        resolver: Optional[EndpointResolver] = None,
        session: Optional[requests.Session] = None,
        ttl_overrides: Optional[Dict[str, float]] = None,
        rotation_interval: Optional[float] = ROTATION_INTERVAL,
        **executor_options,
    ):
        self.key_pool = key_pool or create_key_pool(keys)
        self.cache = cache or TTLCache(default_ttl=CACHE_TTL_DEFAULT)
        self.resolver = resolver or EndpointResolver()
        self.tracker = UsageTracker()
        self.ttl_overrides = dict(CACHE_TTL_OVERRIDES if ttl_overrides is None else ttl_overrides)
        self.rotation_interval = rotation_interval

        self.executor = RequestExecutor(
            self.key_pool,
            self.cache,
            base_url=base_url,
            session=session,
            tracker=self.tracker,
            resolver=self.resolver,
            normalize=unwrap_payload,
            **executor_options,
        )

        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self):
        """Start scheduled key rotation"""
        if self._started:
            return
        if self.executor.rotation_enabled and self.rotation_interval and self.key_pool.size > 1:
            self.key_pool.start_scheduled_rotation(self.rotation_interval)
        self._started = True
        logger.info(f"Market data client started ({self.key_pool.size} keys)")

    def close(self):
        """Stop scheduled rotation and release the HTTP session"""
        self.key_pool.close()
        self.executor.close()
        self._started = False
        logger.info("Market data client stopped")

    def __enter__(self):
        self.setup()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(endpoint: str, params: Any = None, options: Any = None):
        if not isinstance(endpoint, str) or not endpoint.strip():
            raise ValueError("endpoint is required")
        if params is not None and not isinstance(params, Mapping):
            raise ValueError("params must be a mapping")
        if options is not None and not isinstance(options, Mapping):
            raise ValueError("options must be a mapping")

    def _ttl_for(self, options: Mapping, ttl: Optional[float]) -> Optional[float]:
        if ttl is not None:
            return ttl
        return self.ttl_overrides.get(options.get("operation"))

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def get(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
    ) -> Any:
        """GET, served from cache when fresh"""
        self._validate(endpoint, params, options)
        options = options or {}

        return self.executor.execute(
            "GET",
            endpoint,
            params,
            ttl=self._ttl_for(options, ttl),
            headers=options.get("headers"),
            timeout=options.get("timeout"),
            operation=options.get("operation"),
            cancel_event=options.get("cancel_event"),
        )

    def _mutate(self, method: str, endpoint: str, body: Any, options: Optional[Mapping[str, Any]]) -> Any:
        self._validate(endpoint, None, options)
        options = options or {}

        result = self.executor.execute(
            method,
            endpoint,
            params=options.get("params"),
            body=body,
            headers=options.get("headers"),
            timeout=options.get("timeout"),
            use_cache=False,
            operation=options.get("operation"),
            cancel_event=options.get("cancel_event"),
        )

        # Cached reads of this endpoint are stale now
        fingerprint = make_fingerprint(endpoint)
        self.cache.clear_item(fingerprint)
        self.cache.clear_prefix(fingerprint + "?")
        return result

    def post(self, endpoint: str, body: Any = None, options: Optional[Mapping[str, Any]] = None) -> Any:
        return self._mutate("POST", endpoint, body, options)

    def put(self, endpoint: str, body: Any = None, options: Optional[Mapping[str, Any]] = None) -> Any:
        return self._mutate("PUT", endpoint, body, options)

    def delete(self, endpoint: str, body: Any = None, options: Optional[Mapping[str, Any]] = None) -> Any:
        return self._mutate("DELETE", endpoint, body, options)

    def get_discovered(
        self,
        operation_key: str,
        candidates: List[str],
        path_params: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """GET an operation whose path shape is discovered from candidate templates"""
        if not operation_key:
            raise ValueError("operation_key is required")
        if not candidates:
            raise ValueError("at least one candidate template is required")
        self._validate(operation_key, params, options)
        options = options or {}

        return self.executor.fetch_discovered(
            operation_key,
            candidates,
            path_params,
            params,
            ttl=ttl if ttl is not None else self.ttl_overrides.get(operation_key),
            cancel_event=options.get("cancel_event"),
        )

    # ------------------------------------------------------------------
    # Cache / keys
    # ------------------------------------------------------------------

    def clear_cache(self):
        self.cache.clear()
        logger.info("API cache cleared")

    def clear_cache_item(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> bool:
        self._validate(endpoint, params)
        fingerprint = make_fingerprint(endpoint, params)
        removed = self.cache.clear_item(fingerprint)
        logger.info(f"Cache cleared for {fingerprint}")
        return removed

    def set_credential(self, key: str) -> Credential:
        """Make a key current (by id or value, unknown values are added)"""
        if not key:
            raise ValueError("key is required")
        return self.key_pool.set_current(key)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "pool": self.key_pool.get_status(),
            "keys": self.key_pool.list_keys(),
            "cache": self.cache.get_stats(),
            "usage": {k: m.to_dict() for k, m in self.tracker.get_all_metrics().items()},
            "endpoint_bindings": self.resolver.get_status(),
        }


# ============================================================================
# Singleton Instance
# ============================================================================

_client_instance = None
_client_lock = threading.Lock()


def get_client() -> MarketDataClient:
    """Get singleton client instance (keys from configuration)"""
    global _client_instance
    with _client_lock:
        if _client_instance is None:
            _client_instance = MarketDataClient()
            _client_instance.setup()
    return _client_instance


def reset_client():
    """Close and drop the singleton"""
    global _client_instance
    with _client_lock:
        if _client_instance is not None:
            _client_instance.close()
        _client_instance = None


__all__ = [
    "MarketDataClient",
    "get_client",
    "reset_client",
]
