"""
KEY POOL
========

Rotation pool of provider API keys.

Responsibilities:
- Current key selection (circular, Available first)
- Cooldowns after rate limits / repeated failures
- Usage and monthly quota counters
- Scheduled rotation (background thread)
- Optional persistence of key state in SQLite

Key states:
- AVAILABLE: selectable
- COOLING: excluded until cooldown_until, then AVAILABLE again
- EXHAUSTED: monthly quota used up, AVAILABLE again next month

All methods are thread safe and never raise on unknown key ids.
"""

import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from config import (
    MARKET_API_KEYS,
    MARKET_API_KEY,
    MAX_CONSECUTIVE_FAILURES,
    FAILURE_COOLDOWN,
    MONTHLY_REQUEST_LIMIT,
    ROTATION_INTERVAL,
    KEY_STATE_DB,
)
from utils.logger import get_logger

from .errors import ErrorClass, QUERY_ERRORS

logger = get_logger("KEY_POOL")


# ============================================================================
# Enums / Data Classes
# ============================================================================

class KeyStatus(Enum):
    """API key status"""
    AVAILABLE = "available"
    COOLING = "cooling"
    EXHAUSTED = "exhausted"


def _month_of(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m")


def mask_key(key: str) -> str:
    """Partial key for display"""
    if len(key) <= 10:
        return key[:2] + "..."
    return f"{key[:6]}...{key[-4:]}"


@dataclass
class Credential:
    """One provider key and its state"""
    id: str                                  # "KEY_1", "KEY_2", ...
    key: str                                 # Actual API key value

    status: KeyStatus = KeyStatus.AVAILABLE
    cooldown_until: Optional[float] = None   # Unix timestamp

    usage_count: int = 0
    consecutive_failures: int = 0

    monthly_usage: int = 0
    month: str = ""                          # "YYYY-MM" of monthly_usage

    def to_dict(self) -> Dict:
        """Convert to dictionary (masking the key)"""
        return {
            "id": self.id,
            "key": mask_key(self.key),
            "status": self.status.value,
            "cooldown_until": (
                datetime.fromtimestamp(self.cooldown_until, tz=timezone.utc).isoformat()
                if self.cooldown_until else None
            ),
            "usage_count": self.usage_count,
            "consecutive_failures": self.consecutive_failures,
            "monthly_usage": self.monthly_usage,
        }


# ============================================================================
# Key Pool Manager
# ============================================================================

class KeyPoolManager:
    """
    Circular pool of API keys

    Usage:
        pool = KeyPoolManager(["key_a", "key_b"])

        cred = pool.current_key()
        response = call_api(headers={"X-Api-Key": cred.key})

        if response.status_code == 429:
            pool.mark_cooling(cred.id, 60)
            pool.rotate("rate_limited")
        else:
            pool.record_success(cred.id)
    """

    def __init__(
        self,
        keys: Optional[List[str]] = None,
        failure_threshold: int = MAX_CONSECUTIVE_FAILURES,
        failure_cooldown: int = FAILURE_COOLDOWN,
        monthly_limit: int = MONTHLY_REQUEST_LIMIT,
        db_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.failure_cooldown = failure_cooldown
        self.monthly_limit = monthly_limit
        self._clock = clock

        self._keys: List[Credential] = []
        self._index = 0
        self._lock = threading.RLock()

        self._rotation_thread: Optional[threading.Thread] = None
        self._rotation_stop = threading.Event()

        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

        for key in keys or []:
            self.add_key(key)

        if db_path:
            self._init_db()
            self._load_state()

        logger.info(f"Key pool ready with {len(self._keys)} keys")

    # ------------------------------------------------------------------
    # Internal state helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _find(self, key_id: str) -> Optional[Credential]:
        for cred in self._keys:
            if cred.id == key_id:
                return cred
        return None

    def _refresh(self):
        """Expire cooldowns, roll monthly counters"""
        now = self._clock()
        month = _month_of(now)

        for cred in self._keys:
            if cred.month != month:
                cred.month = month
                cred.monthly_usage = 0
                if cred.status == KeyStatus.EXHAUSTED:
                    cred.status = KeyStatus.AVAILABLE

            if cred.status == KeyStatus.COOLING and cred.cooldown_until is not None:
                if now >= cred.cooldown_until:
                    cred.cooldown_until = None
                    if self.monthly_limit and cred.monthly_usage >= self.monthly_limit:
                        cred.status = KeyStatus.EXHAUSTED
                    else:
                        cred.status = KeyStatus.AVAILABLE
                        logger.info(f"Key {cred.id} cooldown expired, available again")

    def _advance(self, reason: str) -> bool:
        if len(self._keys) < 2:
            return False
        old = self._index
        self._index = (self._index + 1) % len(self._keys)
        logger.info(
            f"Rotated key {self._keys[old].id} -> {self._keys[self._index].id} ({reason})"
        )
        return True

    def _rotate_from(self, key_id: str, reason: str) -> bool:
        # Only if key_id is still current: concurrent failures on the same
        # key must not advance the index twice
        if not self._keys or self._keys[self._index].id != key_id:
            return False
        return self._advance(reason)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def current_key(self, exclude: Optional[str] = None) -> Optional[Credential]:
        """
        Get the key to use for the next request

        Current index if AVAILABLE, else the next AVAILABLE key in circular
        order (which becomes current). With no AVAILABLE key, the one whose
        cooldown ends soonest is returned so the call can still be tried.

        Args:
            exclude: key id to avoid (previous attempt of the same call).
                     Picking around it does not move the shared index.

        Returns:
            Credential, or None if the pool is empty
        """
        with self._lock:
            if not self._keys:
                return None

            self._refresh()
            n = len(self._keys)
            order = [(self._index + i) % n for i in range(n)]

            if exclude is not None and n > 1:
                for i in order:
                    cred = self._keys[i]
                    if cred.id != exclude and cred.status == KeyStatus.AVAILABLE:
                        return cred

            for i in order:
                if self._keys[i].status == KeyStatus.AVAILABLE:
                    if exclude is None and i != self._index:
                        logger.info(
                            f"Key {self._keys[self._index].id} unavailable, "
                            f"switching to {self._keys[i].id}"
                        )
                        self._index = i
                    return self._keys[i]

            # Nothing available: soonest cooldown wins
            cooling = [
                c for c in self._keys
                if c.status == KeyStatus.COOLING and c.id != exclude
            ] or [c for c in self._keys if c.status == KeyStatus.COOLING]
            if cooling:
                soonest = min(cooling, key=lambda c: c.cooldown_until or 0)
                wait = max(0.0, (soonest.cooldown_until or 0) - self._clock())
                logger.warning(
                    f"No available keys, using {soonest.id} (cooldown ends in {wait:.0f}s)"
                )
                return soonest

            logger.error("All keys exhausted their monthly quota")
            return self._keys[self._index]

    def rotate(self, reason: str = "manual") -> bool:
        """
        Advance the current index circularly

        Returns:
            False if the pool has fewer than two keys (no-op)
        """
        with self._lock:
            return self._advance(reason)

    def rotate_from(self, key_id: str, reason: str = "manual") -> bool:
        """Rotate only if key_id is still the current key"""
        with self._lock:
            return self._rotate_from(key_id, reason)

    def set_current(self, key: str) -> Credential:
        """
        Make a key current, by id or by value. Unknown values are added.
        """
        with self._lock:
            for i, cred in enumerate(self._keys):
                if cred.id == key or cred.key == key:
                    self._index = i
                    logger.info(f"Current key set to {cred.id}")
                    return cred

            cred = self._add(key)
            self._index = len(self._keys) - 1
            logger.info(f"Current key set to new key {cred.id}")
            return cred

    @property
    def current_index(self) -> int:
        with self._lock:
            return self._index

    @property
    def size(self) -> int:
        return len(self._keys)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def mark_cooling(self, key_id: str, cooldown_seconds: float):
        """Exclude a key from selection for cooldown_seconds"""
        with self._lock:
            cred = self._find(key_id)
            if not cred:
                return

            cred.status = KeyStatus.COOLING
            cred.cooldown_until = self._clock() + cooldown_seconds
            self._save_state(cred)

        logger.warning(f"Key {key_id} cooling for {cooldown_seconds:.0f}s")

    def clear_cooldown(self, key_id: str):
        with self._lock:
            cred = self._find(key_id)
            if not cred or cred.status != KeyStatus.COOLING:
                return
            cred.status = KeyStatus.AVAILABLE
            cred.cooldown_until = None
            self._save_state(cred)

    def record_success(self, key_id: str):
        """Count a successful call on a key"""
        with self._lock:
            cred = self._find(key_id)
            if not cred:
                return

            self._refresh()
            cred.usage_count += 1
            cred.monthly_usage += 1
            cred.consecutive_failures = 0

            cred.cooldown_until = None

            if self.monthly_limit and cred.monthly_usage >= self.monthly_limit:
                cred.status = KeyStatus.EXHAUSTED
                logger.warning(
                    f"Key {key_id} reached its monthly limit of {self.monthly_limit} requests"
                )
                self._rotate_from(key_id, "monthly_limit")
            else:
                cred.status = KeyStatus.AVAILABLE

            self._save_state(cred)

    def record_failure(self, key_id: str, classification: ErrorClass):
        """
        Count a failed call on a key

        After failure_threshold consecutive failures not caused by the query
        itself, the key is cooled for failure_cooldown and rotated away from.
        """
        with self._lock:
            cred = self._find(key_id)
            if not cred:
                return

            cred.consecutive_failures += 1

            if (
                classification not in QUERY_ERRORS
                and cred.consecutive_failures >= self.failure_threshold
            ):
                cred.status = KeyStatus.COOLING
                cred.cooldown_until = self._clock() + self.failure_cooldown
                logger.warning(
                    f"Key {key_id} failed {cred.consecutive_failures} times in a row "
                    f"({classification.value}), cooling for {self.failure_cooldown}s"
                )
                cred.consecutive_failures = 0
                self._rotate_from(key_id, "consecutive_failures")

            self._save_state(cred)

    # ------------------------------------------------------------------
    # Pool membership
    # ------------------------------------------------------------------

    def _add(self, key: str) -> Credential:
        existing = [int(c.id.split("_")[1]) for c in self._keys if c.id.startswith("KEY_")]
        next_num = max(existing, default=0) + 1
        cred = Credential(id=f"KEY_{next_num}", key=key, month=_month_of(self._clock()))
        self._keys.append(cred)
        return cred

    def add_key(self, key: str) -> bool:
        """Add a key to the rotation. False if empty or already present"""
        if not key or key.startswith("YOUR_API_KEY"):
            logger.warning("Ignoring empty/placeholder API key")
            return False

        with self._lock:
            if any(c.key == key for c in self._keys):
                return False
            cred = self._add(key)

        logger.info(f"Registered key {cred.id} ({mask_key(key)})")
        return True

    def remove_key(self, key_id: str) -> bool:
        """Remove a key by id. False if unknown"""
        with self._lock:
            cred = self._find(key_id)
            if not cred:
                return False

            position = self._keys.index(cred)
            self._keys.remove(cred)

            if position < self._index:
                self._index -= 1
            if self._index >= len(self._keys):
                self._index = 0

        logger.info(f"Removed key {key_id}")
        return True

    def get_key(self, key_id: str) -> Optional[Credential]:
        with self._lock:
            return self._find(key_id)

    # ------------------------------------------------------------------
    # Scheduled rotation
    # ------------------------------------------------------------------

    def start_scheduled_rotation(self, interval: float = ROTATION_INTERVAL):
        """Rotate every `interval` seconds in a daemon thread"""
        if self._rotation_thread and self._rotation_thread.is_alive():
            return

        self._rotation_stop.clear()
        self._rotation_thread = threading.Thread(
            target=self._rotation_loop,
            args=(interval,),
            daemon=True,
            name="key-pool-rotation",
        )
        self._rotation_thread.start()
        logger.info(f"Scheduled key rotation every {interval:.0f}s")

    def stop_scheduled_rotation(self):
        """Cancel scheduled rotation"""
        self._rotation_stop.set()
        thread = self._rotation_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._rotation_thread = None

    def _rotation_loop(self, interval: float):
        while not self._rotation_stop.wait(interval):
            self.rotate("scheduled")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _init_db(self):
        """Initialize database"""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS key_state (
                key_value TEXT PRIMARY KEY,
                status TEXT,
                cooldown_until REAL,
                usage_count INTEGER DEFAULT 0,
                monthly_usage INTEGER DEFAULT 0,
                month TEXT,
                updated_at TEXT
            )
        """)
        self.conn.commit()

    def _load_state(self):
        """Restore counters/cooldowns for configured keys"""
        try:
            rows = self.conn.execute(
                "SELECT key_value, status, cooldown_until, usage_count, monthly_usage, month FROM key_state"
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Could not load key state: {e}")
            return

        by_value = {c.key: c for c in self._keys}
        for key_value, status, cooldown_until, usage_count, monthly_usage, month in rows:
            cred = by_value.get(key_value)
            if not cred:
                continue
            cred.status = KeyStatus(status) if status else KeyStatus.AVAILABLE
            cred.cooldown_until = cooldown_until
            cred.usage_count = usage_count or 0
            cred.monthly_usage = monthly_usage or 0
            cred.month = month or cred.month

        with self._lock:
            self._refresh()

    def _save_state(self, cred: Credential):
        """Save key state to database"""
        if self.conn is None:
            return

        try:
            self.conn.execute("""
                INSERT OR REPLACE INTO key_state
                (key_value, status, cooldown_until, usage_count, monthly_usage, month, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                cred.key,
                cred.status.value,
                cred.cooldown_until,
                cred.usage_count,
                cred.monthly_usage,
                cred.month,
                datetime.now(timezone.utc).isoformat(),
            ))
            self.conn.commit()
        except sqlite3.Error as e:
            logger.warning(f"Could not persist state of {cred.id}: {e}")

    def close(self):
        self.stop_scheduled_rotation()
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def list_keys(self) -> List[Dict]:
        """List all keys (masked)"""
        with self._lock:
            self._refresh()
            current = self._keys[self._index].id if self._keys else None
            result = []
            for cred in self._keys:
                info = cred.to_dict()
                info["is_current"] = cred.id == current
                if self.monthly_limit:
                    info["monthly_limit"] = self.monthly_limit
                    info["monthly_remaining"] = max(0, self.monthly_limit - cred.monthly_usage)
                result.append(info)
            return result

    def get_status(self) -> Dict:
        """Get pool status"""
        keys = self.list_keys()
        return {
            "total_keys": len(keys),
            "available": sum(1 for k in keys if k["status"] == KeyStatus.AVAILABLE.value),
            "cooling": sum(1 for k in keys if k["status"] == KeyStatus.COOLING.value),
            "exhausted": sum(1 for k in keys if k["status"] == KeyStatus.EXHAUSTED.value),
            "current": next((k["id"] for k in keys if k["is_current"]), None),
        }


# ============================================================================
# Convenience Functions
# ============================================================================

def load_keys_from_config() -> List[str]:
    """Keys from MARKET_API_KEYS, falling back to MARKET_API_KEY"""
    keys = list(MARKET_API_KEYS)
    if not keys and MARKET_API_KEY:
        keys = [MARKET_API_KEY]
    if not keys:
        logger.warning("No API keys configured (MARKET_API_KEYS / MARKET_API_KEY)")
    return keys


def create_key_pool(keys: Optional[List[str]] = None, **kwargs) -> KeyPoolManager:
    """Key pool from explicit keys or from configuration"""
    if keys is None:
        keys = load_keys_from_config()
    kwargs.setdefault("db_path", KEY_STATE_DB or None)
    return KeyPoolManager(keys, **kwargs)


__all__ = [
    "KeyPoolManager",
    "Credential",
    "KeyStatus",
    "mask_key",
    "load_keys_from_config",
    "create_key_pool",
]
