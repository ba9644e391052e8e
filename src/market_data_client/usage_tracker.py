"""
USAGE TRACKER
=============

Per-key record of dispatched calls.

- Sliding windows for calls/minute and calls/hour
- Rolling latency average (successful calls)
- Error counts by classification
- Health score 0.0 - 1.0
"""

import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional

from utils.logger import get_logger

from .errors import ErrorClass

logger = get_logger("USAGE_TRACKER")


# ============================================================================
# Configuration
# ============================================================================

WINDOW_MINUTE = 60
WINDOW_HOUR = 3600
MAX_RECORDS_PER_KEY = 10000

ERROR_RATE_WARNING = 0.05
ERROR_RATE_CRITICAL = 0.10
LATENCY_WARNING_MS = 2000
LATENCY_CRITICAL_MS = 5000


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class CallRecord:
    """One dispatched attempt"""
    timestamp: float
    latency_ms: float
    operation: str
    classification: Optional[ErrorClass] = None   # None = success

    @property
    def success(self) -> bool:
        return self.classification is None


@dataclass
class KeyMetrics:
    """Aggregated metrics for a key"""
    key_id: str
    calls_last_minute: int = 0
    calls_last_hour: int = 0
    avg_latency_ms: float = 0.0
    errors_last_hour: int = 0
    error_rate: float = 0.0
    rate_limits_hit: int = 0
    errors_by_class: Dict[str, int] = field(default_factory=dict)
    health_score: float = 1.0

    def to_dict(self) -> Dict:
        return {
            "calls_last_minute": self.calls_last_minute,
            "calls_last_hour": self.calls_last_hour,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "error_rate": round(self.error_rate, 3),
            "rate_limits_hit": self.rate_limits_hit,
            "errors_by_class": self.errors_by_class,
            "health": round(self.health_score, 2),
        }


# ============================================================================
# Usage Tracker
# ============================================================================

class UsageTracker:
    """
    Tracks dispatched calls per key

    Usage:
        tracker = UsageTracker()
        tracker.record_call("KEY_1", "/search", latency_ms=125)
        tracker.record_call("KEY_1", "/search", latency_ms=80,
                            classification=ErrorClass.RATE_LIMITED)
        tracker.get_metrics("KEY_1").error_rate   # 0.5
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._calls: Dict[str, Deque[CallRecord]] = {}
        self._rate_limits: Dict[str, int] = {}
        self._lock = Lock()

    def record_call(
        self,
        key_id: str,
        operation: str,
        latency_ms: float,
        classification: Optional[ErrorClass] = None,
    ):
        with self._lock:
            if key_id not in self._calls:
                self._calls[key_id] = deque(maxlen=MAX_RECORDS_PER_KEY)

            self._calls[key_id].append(CallRecord(
                timestamp=self._clock(),
                latency_ms=latency_ms,
                operation=operation,
                classification=classification,
            ))

            if classification == ErrorClass.RATE_LIMITED:
                self._rate_limits[key_id] = self._rate_limits.get(key_id, 0) + 1

    def get_calls_in_window(self, key_id: str, window_seconds: int) -> List[CallRecord]:
        cutoff = self._clock() - window_seconds
        with self._lock:
            return [c for c in self._calls.get(key_id, ()) if c.timestamp >= cutoff]

    def get_metrics(self, key_id: str) -> KeyMetrics:
        calls_hour = self.get_calls_in_window(key_id, WINDOW_HOUR)
        minute_cutoff = self._clock() - WINDOW_MINUTE
        calls_minute = [c for c in calls_hour if c.timestamp >= minute_cutoff]

        latencies = [c.latency_ms for c in calls_hour if c.success]
        avg_latency = sum(latencies) / len(latencies) if latencies else 0.0

        errors = [c for c in calls_hour if not c.success]
        error_rate = len(errors) / len(calls_hour) if calls_hour else 0.0

        by_class: Dict[str, int] = {}
        for c in errors:
            by_class[c.classification.value] = by_class.get(c.classification.value, 0) + 1

        return KeyMetrics(
            key_id=key_id,
            calls_last_minute=len(calls_minute),
            calls_last_hour=len(calls_hour),
            avg_latency_ms=avg_latency,
            errors_last_hour=len(errors),
            error_rate=error_rate,
            rate_limits_hit=self._rate_limits.get(key_id, 0),
            errors_by_class=by_class,
            health_score=self._calculate_health_score(error_rate, avg_latency),
        )

    def _calculate_health_score(self, error_rate: float, avg_latency: float) -> float:
        """Calculate health score (0.0 - 1.0)"""
        score = 1.0

        if error_rate >= ERROR_RATE_CRITICAL:
            score -= 0.5
        elif error_rate >= ERROR_RATE_WARNING:
            score -= 0.2

        if avg_latency >= LATENCY_CRITICAL_MS:
            score -= 0.3
        elif avg_latency >= LATENCY_WARNING_MS:
            score -= 0.1

        return max(0.0, min(1.0, score))

    def get_all_metrics(self) -> Dict[str, KeyMetrics]:
        with self._lock:
            key_ids = list(self._calls)
        return {key_id: self.get_metrics(key_id) for key_id in key_ids}

    def reset_key(self, key_id: str):
        with self._lock:
            self._calls.pop(key_id, None)
            self._rate_limits.pop(key_id, None)


__all__ = [
    "UsageTracker",
    "KeyMetrics",
    "CallRecord",
]
