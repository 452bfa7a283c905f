"""
Fixed-window admission control.

Counters are best-effort throttling meant to blunt abusive bursts, not a hard
guarantee. ``MemoryCounterStore`` is process-local: with several instances
each one keeps its own budget unless ``PostgresCounterStore`` is used.
"""

import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import psycopg

from .db import get_conn
from .errors import StorageError

CLEANUP_PROBABILITY = 0.01


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds


@dataclass(frozen=True)
class WindowHit:
    count: int
    reset_time: int
    admitted: bool


class CounterStore(ABC):
    @abstractmethod
    def hit(self, key: str, max_requests: int, window_ms: int, now: int) -> WindowHit:
        """Record one request against ``key`` and return the window it landed in."""
        ...


class MemoryCounterStore(CounterStore):
    def __init__(self, cleanup_probability: float = CLEANUP_PROBABILITY):
        self._entries: dict[str, list[int]] = {}
        self._lock = threading.Lock()
        self._cleanup_probability = cleanup_probability

    def hit(self, key: str, max_requests: int, window_ms: int, now: int) -> WindowHit:
        with self._lock:
            if random.random() < self._cleanup_probability:
                self._purge_expired(now)

            entry = self._entries.get(key)
            if entry is None or now > entry[1]:
                reset_time = now + window_ms
                self._entries[key] = [1, reset_time]
                return WindowHit(count=1, reset_time=reset_time, admitted=True)

            count, reset_time = entry
            if count >= max_requests:
                return WindowHit(count=count, reset_time=reset_time, admitted=False)

            entry[0] = count + 1
            return WindowHit(count=entry[0], reset_time=reset_time, admitted=True)

    def _purge_expired(self, now: int) -> None:
        expired = [key for key, (_, reset_time) in self._entries.items() if now > reset_time]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class PostgresCounterStore(CounterStore):
    """
    Shared counters for multi-instance deployments. One upsert per request;
    the row lock taken by ``ON CONFLICT DO UPDATE`` serializes hits on a key.
    """

    def __init__(self, cleanup_probability: float = CLEANUP_PROBABILITY):
        self._cleanup_probability = cleanup_probability

    def hit(self, key: str, max_requests: int, window_ms: int, now: int) -> WindowHit:
        params = {"key": key, "now": now, "reset": now + window_ms}
        try:
            with get_conn() as conn:
                if random.random() < self._cleanup_probability:
                    conn.execute("DELETE FROM rate_limit_windows WHERE reset_at_ms < %(now)s", params)

                row = conn.execute(
                    "INSERT INTO rate_limit_windows(key, count, reset_at_ms) VALUES (%(key)s, 1, %(reset)s) "
                    "ON CONFLICT (key) DO UPDATE SET "
                    "count = CASE WHEN rate_limit_windows.reset_at_ms < %(now)s THEN 1 "
                    "ELSE rate_limit_windows.count + 1 END, "
                    "reset_at_ms = CASE WHEN rate_limit_windows.reset_at_ms < %(now)s THEN %(reset)s "
                    "ELSE rate_limit_windows.reset_at_ms END "
                    "RETURNING count, reset_at_ms",
                    params,
                ).fetchone()
        except psycopg.Error as exc:
            raise StorageError("Failed to record rate limit hit") from exc

        count = row["count"]
        return WindowHit(count=min(count, max_requests), reset_time=row["reset_at_ms"], admitted=count <= max_requests)


class RateLimiter:
    def __init__(self, store: CounterStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    def check(self, key: str, max_requests: int = 10, window_ms: int = 60000) -> RateLimitResult:
        hit = self.store.hit(key, max_requests, window_ms, self.clock())
        if not hit.admitted:
            return RateLimitResult(allowed=False, remaining=0, reset_time=hit.reset_time)
        return RateLimitResult(allowed=True, remaining=max_requests - hit.count, reset_time=hit.reset_time)
