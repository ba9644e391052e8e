"""
Market Data Client
==================

Resilient client for the market data provider.

Architecture:
- KeyPoolManager: API key rotation, cooldowns, monthly quotas
- TTLCache (utils.cache): response cache keyed by request fingerprint
- EndpointResolver: discovers which URL template the provider accepts
- RequestExecutor: cache check, dispatch, classification, retry, rotation
- MarketDataClient: public facade (main entry point)
- StockService: dashboard operations on top of the client

Usage:
    from src.market_data_client import get_client, MarketDataError

    client = get_client()
    try:
        data = client.get("/search", {"query": "TATA"}, {"operation": "search"})
    except MarketDataError as e:
        print(e.classification, e.message)

Error classes:
- RATE_LIMITED: 429, key cooled and rotated, retried
- AUTH_ERROR: 401/403 (or 400 mentioning the API key), one rotated retry
- NOT_FOUND: 404, never retried, drops endpoint binding
- METHOD_NOT_ALLOWED: 405, never retried
- UPSTREAM_SERVER_ERROR / NETWORK_ERROR / TIMEOUT: retried
- UNKNOWN_CLIENT_ERROR: other 4xx, never retried
"""

# Errors
from .errors import (
    ErrorClass,
    MarketDataError,
    RequestCancelledError,
    RequestOutcome,
    classify_status,
    classify_exception,
)

# Key Pool
from .key_pool import (
    KeyPoolManager,
    Credential,
    KeyStatus,
    create_key_pool,
)

# Endpoint Resolver
from .endpoint_resolver import (
    EndpointResolver,
    EndpointBinding,
    render_template,
)

# Usage Tracker
from .usage_tracker import (
    UsageTracker,
    KeyMetrics,
)

# Executor / Client (main entry point)
from .request_executor import RequestExecutor
from .client import (
    MarketDataClient,
    get_client,
    reset_client,
)
from .stock_service import StockService

__all__ = [
    # Errors
    "ErrorClass",
    "MarketDataError",
    "RequestCancelledError",
    "RequestOutcome",
    "classify_status",
    "classify_exception",

    # Key Pool
    "KeyPoolManager",
    "Credential",
    "KeyStatus",
    "create_key_pool",

    # Endpoint Resolver
    "EndpointResolver",
    "EndpointBinding",
    "render_template",

    # Usage Tracker
    "UsageTracker",
    "KeyMetrics",

    # Executor / Client
    "RequestExecutor",
    "MarketDataClient",
    "get_client",
    "reset_client",
    "StockService",
]
