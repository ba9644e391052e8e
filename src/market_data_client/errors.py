"""
ERROR TAXONOMY
==============

Every failed attempt against the provider resolves to exactly one
ErrorClass before any retry or rotation decision is taken.

Retry rules:
- RATE_LIMITED, UPSTREAM_SERVER_ERROR, NETWORK_ERROR, TIMEOUT: retried
- AUTH_ERROR: retried at most once, only after rotating the key
- NOT_FOUND, METHOD_NOT_ALLOWED, UNKNOWN_CLIENT_ERROR: never retried
"""

from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

import requests

from config import RATE_LIMIT_COOLDOWN, RATE_LIMIT_COOLDOWN_MIN, RATE_LIMIT_COOLDOWN_MAX


# ============================================================================
# Taxonomy
# ============================================================================

class ErrorClass(Enum):
    """Classification of a failed attempt"""
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_ERROR = "AUTH_ERROR"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    UPSTREAM_SERVER_ERROR = "UPSTREAM_SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN_CLIENT_ERROR = "UNKNOWN_CLIENT_ERROR"


# Retried on the same template
RETRIABLE = {
    ErrorClass.RATE_LIMITED,
    ErrorClass.UPSTREAM_SERVER_ERROR,
    ErrorClass.NETWORK_ERROR,
    ErrorClass.TIMEOUT,
}

# Caused by the request itself, not by the credential
QUERY_ERRORS = {
    ErrorClass.NOT_FOUND,
    ErrorClass.METHOD_NOT_ALLOWED,
    ErrorClass.UNKNOWN_CLIENT_ERROR,
}

# Short caller-facing messages (provider bodies are never surfaced)
MESSAGES = {
    ErrorClass.RATE_LIMITED: "Rate limit exceeded on all attempts",
    ErrorClass.AUTH_ERROR: "Provider rejected the API credentials",
    ErrorClass.NOT_FOUND: "Resource not found",
    ErrorClass.METHOD_NOT_ALLOWED: "Method not supported by provider",
    ErrorClass.UPSTREAM_SERVER_ERROR: "Provider server error",
    ErrorClass.NETWORK_ERROR: "Could not reach provider",
    ErrorClass.TIMEOUT: "Provider request timed out",
    ErrorClass.UNKNOWN_CLIENT_ERROR: "Request rejected by provider",
}

# Provider wording for exhausted/invalid keys on 400 responses.
# Loose match: the provider does not document this contract.
API_KEY_MARKERS = ("api key", "apikey", "api-key")


# ============================================================================
# Exceptions
# ============================================================================

class MarketDataError(Exception):
    """Classified provider failure returned to callers"""

    def __init__(
        self,
        classification: ErrorClass,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.classification = classification
        self.status_code = status_code
        self.operation = operation
        self.message = message or MESSAGES[classification]
        super().__init__(f"{classification.value}: {self.message}")

    @property
    def retriable(self) -> bool:
        return self.classification in RETRIABLE

    def to_dict(self) -> dict:
        return {
            "error": self.classification.value,
            "message": self.message,
            "status": self.status_code,
        }


class RequestCancelledError(MarketDataError):
    """Call abandoned by its caller between attempts"""

    def __init__(self, last_error: Optional[MarketDataError] = None, operation: Optional[str] = None):
        classification = last_error.classification if last_error else ErrorClass.UNKNOWN_CLIENT_ERROR
        super().__init__(
            classification,
            message="Request cancelled",
            status_code=last_error.status_code if last_error else None,
            operation=operation,
        )
        self.last_error = last_error


# ============================================================================
# Outcome
# ============================================================================

@dataclass
class RequestOutcome:
    """Classified result of one attempt"""
    classification: Optional[ErrorClass]     # None = success
    status_code: int = 0
    retriable: bool = False
    suggested_cooldown: Optional[int] = None
    payload: Any = None

    @property
    def success(self) -> bool:
        return self.classification is None

    def to_error(self, operation: Optional[str] = None) -> MarketDataError:
        return MarketDataError(
            self.classification,
            status_code=self.status_code or None,
            operation=operation,
        )


# ============================================================================
# Classification
# ============================================================================

def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (delta or HTTP date)"""
    if not value:
        return None

    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return (when - datetime.now(timezone.utc)).total_seconds()


def rate_limit_cooldown(
    retry_after: Optional[str] = None,
    default: int = RATE_LIMIT_COOLDOWN,
) -> int:
    """Cooldown for a 429, scaled by the Retry-After signal and clamped"""
    seconds = parse_retry_after(retry_after)
    if seconds is None:
        seconds = default
    return int(max(RATE_LIMIT_COOLDOWN_MIN, min(RATE_LIMIT_COOLDOWN_MAX, seconds)))


def _mentions_api_key(body: Any) -> bool:
    if isinstance(body, Mapping):
        text = " ".join(str(body.get(f, "")) for f in ("message", "error", "detail"))
    else:
        text = str(body or "")
    text = text.lower()
    return any(marker in text for marker in API_KEY_MARKERS)


def classify_status(status: int, body: Any = None) -> Optional[ErrorClass]:
    """Map an HTTP status (and body for 400) to the taxonomy. None = success"""
    if 200 <= status < 400:
        return None
    if status == 429:
        return ErrorClass.RATE_LIMITED
    if status in (401, 403):
        return ErrorClass.AUTH_ERROR
    if status == 404:
        return ErrorClass.NOT_FOUND
    if status == 405:
        return ErrorClass.METHOD_NOT_ALLOWED
    if status >= 500:
        return ErrorClass.UPSTREAM_SERVER_ERROR
    if status == 400 and _mentions_api_key(body):
        return ErrorClass.AUTH_ERROR
    return ErrorClass.UNKNOWN_CLIENT_ERROR


def classify_exception(exc: Exception) -> ErrorClass:
    """Map a transport exception to the taxonomy"""
    # Timeout first: ConnectTimeout is also a ConnectionError
    if isinstance(exc, requests.exceptions.Timeout):
        return ErrorClass.TIMEOUT
    if isinstance(exc, requests.exceptions.RequestException):
        return ErrorClass.NETWORK_ERROR
    return ErrorClass.UNKNOWN_CLIENT_ERROR
