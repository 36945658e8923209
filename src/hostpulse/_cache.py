"""TTL cache with single-flight coalescing for expensive external queries."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from hostpulse._errors import ExecutionError, ExecutionErrorKind
from hostpulse._executor import ExecutionResult, Executor, Query

logger = logging.getLogger("hostpulse.cache")

Clock = Callable[[], float]


class ErrorPolicy(enum.Enum):
    """What ``get_or_execute`` returns when the fresh query fails."""

    PROPAGATE = "propagate"
    STALE = "stale"


@dataclass(frozen=True)
class CacheEntry:
    result: ExecutionResult
    produced_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    stale_served: int = 0


class _Flight:
    """A query currently being executed by one caller."""

    __slots__ = ("done", "result")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: ExecutionResult | None = None


class TTLCache:
    """Maps ``Query.key`` to its last successful result.

    Fresh entries are served without spawning anything. Concurrent misses
    for the same key share one execution. Only successes are stored, one
    entry per distinct key, and entries older than ``max_age_s`` are
    dropped by ``sweep``.
    """

    def __init__(
        self,
        *,
        clock: Clock = time.monotonic,
        max_age_s: float = 300.0,
        sweep_interval_s: float = 60.0,
    ) -> None:
        self._clock = clock
        self._max_age_s = max_age_s
        self._sweep_interval_s = sweep_interval_s
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, _Flight] = {}
        self._last_sweep = clock()
        self.stats = CacheStats()

    def get_or_execute(
        self,
        query: Query,
        ttl_s: float,
        executor: Executor,
        *,
        on_error: ErrorPolicy = ErrorPolicy.PROPAGATE,
        timeout_s: float | None = None,
    ) -> ExecutionResult:
        key = query.key
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._sweep_interval_s:
                self._sweep_locked(now, self._max_age_s)
            entry = self._entries.get(key)
            if entry is not None and now - entry.produced_at < ttl_s:
                self.stats.hits += 1
                return entry.result
            flight = self._inflight.get(key)
            leader = flight is None
            if flight is None:
                flight = _Flight()
                self._inflight[key] = flight
                self.stats.misses += 1
            else:
                self.stats.coalesced += 1

        if leader:
            result = self._execute(key, query, executor, timeout_s, flight)
        else:
            flight.done.wait()
            assert flight.result is not None
            result = flight.result

        if result.ok or on_error is ErrorPolicy.PROPAGATE:
            return result

        with self._lock:
            stale = self._entries.get(key)
            if stale is None:
                return result
            self.stats.stale_served += 1
        logger.info("Serving stale result for %s after failure: %s", _short(key), result.error)
        return stale.result.as_degraded()

    def _execute(
        self,
        key: str,
        query: Query,
        executor: Executor,
        timeout_s: float | None,
        flight: _Flight,
    ) -> ExecutionResult:
        result: ExecutionResult | None = None
        try:
            result = executor.execute(query, timeout_s)
            return result
        finally:
            if result is None:
                result = ExecutionResult(
                    error=ExecutionError(ExecutionErrorKind.NOT_FOUND, "executor raised")
                )
            with self._lock:
                if result.ok:
                    self._entries[key] = CacheEntry(result=result, produced_at=self._clock())
                self._inflight.pop(key, None)
            flight.result = result
            flight.done.set()

    def clear(self, query: Query) -> None:
        with self._lock:
            self._entries.pop(query.key, None)

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self, max_age_s: float | None = None) -> int:
        """Drop entries older than ``max_age_s``. Returns how many went."""
        with self._lock:
            return self._sweep_locked(
                self._clock(), self._max_age_s if max_age_s is None else max_age_s
            )

    def _sweep_locked(self, now: float, max_age_s: float) -> int:
        self._last_sweep = now
        expired = [k for k, e in self._entries.items() if now - e.produced_at >= max_age_s]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


def _short(key: str, limit: int = 60) -> str:
    return key if len(key) <= limit else key[: limit - 3] + "..."
