"""
REQUEST EXECUTOR
================

Runs one logical call against the provider:

    cache check -> key select -> dispatch -> classify -> retry / rotate -> cache write

Retry policy is a bounded loop with a fixed delay: rate limits are absorbed
by rotating keys, not by waiting on the same one.

Per classification:
- RATE_LIMITED: key cooled (Retry-After, 1-60s), pool rotated, retried
- UPSTREAM_SERVER_ERROR / NETWORK_ERROR / TIMEOUT: retried
- AUTH_ERROR: one retry, only on a rotated key
- NOT_FOUND / METHOD_NOT_ALLOWED / UNKNOWN_CLIENT_ERROR: fail at once
"""

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from config import (
    MARKET_API_BASE_URL,
    MARKET_API_KEY_HEADER,
    REQUEST_TIMEOUT,
    RETRY_ATTEMPTS,
    RETRY_DELAY,
    AUTO_ROTATE_ON_429,
    KEY_ROTATION_ENABLED,
    CACHE_ENABLED,
    RATE_LIMIT_COOLDOWN,
)
from utils.api_guard import log_api_call
from utils.cache import TTLCache, make_fingerprint
from utils.logger import get_logger

from .endpoint_resolver import EndpointResolver
from .errors import (
    ErrorClass,
    MarketDataError,
    RequestCancelledError,
    RequestOutcome,
    RETRIABLE,
    classify_exception,
    classify_status,
    rate_limit_cooldown,
)
from .key_pool import Credential, KeyPoolManager
from .usage_tracker import UsageTracker

logger = get_logger("REQUEST_EXECUTOR")


def _identity(payload: Any) -> Any:
    return payload


class RequestExecutor:
    """
    Resilient executor shared by all calls of a client

    Usage:
        executor = RequestExecutor(KeyPoolManager(["k1", "k2"]), TTLCache())
        data = executor.execute("GET", "/search", {"query": "TCS"}, ttl=60)
    """

    def __init__(
        self,
        key_pool: KeyPoolManager,
        cache: TTLCache,
        base_url: str = MARKET_API_BASE_URL,
        session: Optional[requests.Session] = None,
        tracker: Optional[UsageTracker] = None,
        resolver: Optional[EndpointResolver] = None,
        key_header: str = MARKET_API_KEY_HEADER,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = RETRY_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        rotation_enabled: bool = KEY_ROTATION_ENABLED,
        auto_rotate_on_429: bool = AUTO_ROTATE_ON_429,
        rate_limit_cooldown: int = RATE_LIMIT_COOLDOWN,
        cache_enabled: bool = CACHE_ENABLED,
        normalize: Callable[[Any], Any] = _identity,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.key_pool = key_pool
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.tracker = tracker or UsageTracker()
        self.resolver = resolver or EndpointResolver()

        self.key_header = key_header
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.rotation_enabled = rotation_enabled
        self.auto_rotate_on_429 = auto_rotate_on_429
        self.rate_limit_cooldown = rate_limit_cooldown
        self.cache_enabled = cache_enabled
        self.normalize = normalize
        self._sleep = sleep

        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def execute(
        self,
        method: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        ttl: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        use_cache: Optional[bool] = None,
        operation: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """
        Execute one logical call

        Args:
            method: HTTP verb
            endpoint: path relative to base_url (or absolute URL)
            params: query parameters
            body: JSON body
            ttl: cache ttl for this call (seconds)
            use_cache: defaults to True for GET when caching is enabled
            operation: logical operation name used in errors/metrics
            cancel_event: set it to stop further retries

        Returns:
            Normalized payload

        Raises:
            MarketDataError: classified failure after retries
            RequestCancelledError: cancel_event set between attempts
        """
        method = method.upper()
        operation = operation or endpoint
        cacheable = (method == "GET" and self.cache_enabled) if use_cache is None else use_cache
        fingerprint = make_fingerprint(endpoint, params)

        if cacheable:
            entry = self.cache.get_entry(fingerprint)
            if entry is not None:
                logger.debug(f"Cache hit for {fingerprint}")
                return entry.payload

        last_key_id: Optional[str] = None
        last_outcome: Optional[RequestOutcome] = None
        auth_rotated = False

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self._backoff(cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"{method} {endpoint} cancelled before attempt {attempt}")
                raise RequestCancelledError(
                    last_outcome.to_error(operation) if last_outcome else None,
                    operation=operation,
                )

            cred = self.key_pool.current_key(exclude=last_key_id)
            if cred is None:
                raise MarketDataError(
                    ErrorClass.AUTH_ERROR, message="No API keys configured", operation=operation
                )

            outcome = self._dispatch(method, endpoint, params, body, headers, timeout, cred, attempt)

            if outcome.success:
                self.key_pool.record_success(cred.id)
                payload = self.normalize(outcome.payload)
                if cacheable:
                    self.cache.put(fingerprint, payload, ttl)
                return payload

            last_outcome = outcome
            last_key_id = cred.id
            classification = outcome.classification
            self.key_pool.record_failure(cred.id, classification)

            if classification == ErrorClass.RATE_LIMITED:
                self.key_pool.mark_cooling(cred.id, outcome.suggested_cooldown)
                if self.rotation_enabled and self.auto_rotate_on_429:
                    self.key_pool.rotate_from(cred.id, "rate_limited")

            elif classification == ErrorClass.AUTH_ERROR:
                if auth_rotated or not self.rotation_enabled or self.key_pool.size < 2:
                    break
                self.key_pool.rotate_from(cred.id, "auth_error")
                # A rejected credential is never resent
                next_cred = self.key_pool.current_key(exclude=cred.id)
                if next_cred is None or next_cred.id == cred.id:
                    logger.warning(f"{method} {endpoint} rejected credentials, no other key to rotate to")
                    break
                auth_rotated = True
                continue

            if not outcome.retriable:
                break

            if attempt < self.max_attempts:
                logger.warning(
                    f"{method} {endpoint} failed ({classification.value}), "
                    f"retry {attempt + 1}/{self.max_attempts}"
                )

        logger.error(
            f"{method} {endpoint} failed after {attempt} attempt(s): "
            f"{last_outcome.classification.value}"
        )
        raise last_outcome.to_error(operation)

    def fetch_discovered(
        self,
        operation_key: str,
        candidates: List[str],
        path_params: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """GET through the endpoint resolver (discovering the template on first use)"""
        def fetcher(path: str) -> Any:
            return self.execute(
                "GET", path, params, ttl=ttl, operation=operation_key, cancel_event=cancel_event
            )

        return self.resolver.fetch(operation_key, candidates, fetcher, path_params)

    def close(self):
        self.session.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _backoff(self, cancel_event: Optional[threading.Event]):
        if self.retry_delay <= 0:
            return
        if cancel_event is not None:
            cancel_event.wait(self.retry_delay)
        else:
            self._sleep(self.retry_delay)

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    @staticmethod
    def _parse_body(response: requests.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _dispatch(
        self,
        method: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        body: Any,
        headers: Optional[Dict[str, str]],
        timeout: Optional[float],
        cred: Credential,
        attempt: int,
    ) -> RequestOutcome:
        url = self._build_url(endpoint)
        request_headers = dict(self.default_headers)
        request_headers.update(headers or {})
        request_headers[self.key_header] = cred.key
        note = f"attempt {attempt}/{self.max_attempts}"

        t0 = time.time()
        try:
            response = self.session.request(
                method,
                url,
                params=dict(params) if params else None,
                json=body,
                headers=request_headers,
                timeout=timeout or self.timeout,
            )
        except requests.exceptions.RequestException as e:
            latency_ms = (time.time() - t0) * 1000
            classification = classify_exception(e)
            log_api_call(method, url, 0, latency_ms, key_id=cred.id,
                         error=type(e).__name__, note=note)
            self.tracker.record_call(cred.id, endpoint, latency_ms, classification)
            return RequestOutcome(classification, retriable=classification in RETRIABLE)

        latency_ms = (time.time() - t0) * 1000
        status = response.status_code
        payload = self._parse_body(response)
        classification = classify_status(status, payload)

        log_api_call(method, url, status, latency_ms, key_id=cred.id, note=note)
        self.tracker.record_call(cred.id, endpoint, latency_ms, classification)

        if classification is None:
            return RequestOutcome(None, status_code=status, payload=payload)

        cooldown = None
        if classification == ErrorClass.RATE_LIMITED:
            cooldown = rate_limit_cooldown(response.headers.get("Retry-After"), self.rate_limit_cooldown)

        return RequestOutcome(
            classification,
            status_code=status,
            retriable=classification in RETRIABLE,
            suggested_cooldown=cooldown,
        )


__all__ = ["RequestExecutor"]
