# ============================
# MARKET DATA CLIENT CONFIG
# ============================

import os

# ========= PROVIDER =========

MARKET_API_BASE_URL = os.getenv("MARKET_API_BASE_URL", "https://stock.indianapi.in")

# Header carrying the credential on every request
MARKET_API_KEY_HEADER = os.getenv("MARKET_API_KEY_HEADER", "X-Api-Key")

# Key pool: comma separated list, single key as fallback
MARKET_API_KEYS = [
    k.strip() for k in os.getenv("MARKET_API_KEYS", "").split(",") if k.strip()
]
MARKET_API_KEY = os.getenv("MARKET_API_KEY", "")

# ============================
# REQUESTS
# ============================

REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "10"))     # seconds
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
RETRY_DELAY = float(os.getenv("RETRY_DELAY", "1.0"))            # fixed, not exponential

# ============================
# KEY ROTATION
# ============================

KEY_ROTATION_ENABLED = os.getenv("KEY_ROTATION_ENABLED", "True").lower() in ("true", "1", "yes")
AUTO_ROTATE_ON_429 = os.getenv("AUTO_ROTATE_ON_429", "True").lower() in ("true", "1", "yes")

ROTATION_INTERVAL = int(os.getenv("ROTATION_INTERVAL", "3600"))          # 1h scheduled rotation
MAX_CONSECUTIVE_FAILURES = int(os.getenv("MAX_CONSECUTIVE_FAILURES", "2"))
FAILURE_COOLDOWN = int(os.getenv("FAILURE_COOLDOWN", "60"))

# 429 cooldown: Retry-After clamped to [MIN, MAX], DEFAULT when absent
RATE_LIMIT_COOLDOWN = int(os.getenv("RATE_LIMIT_COOLDOWN", "60"))
RATE_LIMIT_COOLDOWN_MIN = 1
RATE_LIMIT_COOLDOWN_MAX = 60

# Provider quota per key per calendar month (0 = unlimited)
MONTHLY_REQUEST_LIMIT = int(os.getenv("MONTHLY_REQUEST_LIMIT", "500"))

# Optional SQLite persistence of key state (empty = in-memory only)
KEY_STATE_DB = os.getenv("KEY_STATE_DB", "")

# ============================
# CACHE (seconds)
# ============================

CACHE_ENABLED = os.getenv("CACHE_ENABLED", "True").lower() in ("true", "1", "yes")
CACHE_TTL_DEFAULT = int(os.getenv("CACHE_TTL_DEFAULT", "300"))    # 5 min

CACHE_TTL_OVERRIDES = {
    "search": 60,               # volatile, users search again quickly
    "stock_details": 600,
    "historical_data": 1800,
    "news": 900,
    "ipo": 3600,                # reference data
    "market_movers": 300,
}

# ============================
# ENDPOINTS
# ============================

ENDPOINTS = {
    "search": "/search",
    "historical_data": "/historical_data",
    "news": "/news",
    "ipo": "/ipo",
    "trending": "/trending",
    "market_gainers": "/market/gainers",
    "market_losers": "/market/losers",
}

# Candidate templates tried in order until one works (endpoint discovery)
ENDPOINT_PATTERNS = {
    "stock_details": [
        "/stock/{symbol}",
        "/stocks/{symbol}",
        "/details/{symbol}",
        "/quote/{symbol}",
    ],
}

# ============================
# LOGGING
# ============================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_ROTATION_MB = 10
LOG_BACKUPS = 5
LOG_DIR = os.getenv("LOG_DIR", "data/logs")
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "True").lower() in ("true", "1", "yes")
