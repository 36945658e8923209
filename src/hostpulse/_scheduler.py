"""Per-domain collection threads driven by the live config."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from hostpulse._collector import Collector, CycleContext
from hostpulse._config import ConfigHandle, MonitorConfig
from hostpulse._store import SnapshotStore
from hostpulse._types import Domain

logger = logging.getLogger("hostpulse.scheduler")


class DomainState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF_IDLE = "backoff_idle"


@dataclass(frozen=True)
class DomainStatus:
    state: DomainState = DomainState.IDLE
    consecutive_failures: int = 0
    last_error: str | None = None
    last_success_at: float | None = None
    cycles: int = 0


class _DomainWorker:
    """Owns one domain's thread; the only writer of that domain's store slot."""

    def __init__(
        self,
        collector: Collector,
        store: SnapshotStore,
        handle: ConfigHandle,
        stop_event: threading.Event,
        clock: Callable[[], float],
    ) -> None:
        self.domain = collector.domain
        self._collector = collector
        self._store = store
        self._handle = handle
        self._stop_event = stop_event
        self._clock = clock
        self._wake = threading.Event()
        self._force = False
        self._lock = threading.Lock()
        self._status = DomainStatus()
        self._thread: threading.Thread | None = None

    @property
    def status(self) -> DomainStatus:
        return self._status

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"hostpulse-{self.domain.value}", daemon=True
        )
        self._thread.start()

    def join(self, timeout_s: float) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            if self._thread.is_alive():
                logger.warning("%s collector did not stop within %.1fs", self.domain.value, timeout_s)
            self._thread = None

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wake(self, *, force: bool = False) -> None:
        if force:
            with self._lock:
                self._force = True
        self._wake.set()

    def _take_force(self) -> bool:
        with self._lock:
            force, self._force = self._force, False
        return force

    def _run(self) -> None:
        last_start: float | None = None
        while not self._stop_event.is_set():
            # Cleared before inspecting state so a wake during the cycle is not lost.
            self._wake.clear()
            config = self._handle.current
            settings = config.domain(self.domain)
            force = self._take_force()
            now = self._clock()
            due = settings.enabled and (last_start is None or now >= last_start + settings.interval_s)
            if force or due:
                last_start = now
                self.run_cycle(config, bypass_cache=force)
                continue
            timeout = None
            if settings.enabled and last_start is not None:
                timeout = last_start + settings.interval_s - now
            self._wake.wait(timeout)

    def run_cycle(self, config: MonitorConfig, *, bypass_cache: bool = False) -> None:
        context = CycleContext.from_config(config, self.domain, bypass_cache=bypass_cache)
        self._status = replace(self._status, state=DomainState.RUNNING)
        try:
            collected = self._collector.collect(context)
            self._store.publish(self.domain, collected)
        except Exception as exc:  # noqa: BLE001
            failures = self._status.consecutive_failures + 1
            logger.warning(
                "%s collection failed (%d in a row), keeping previous snapshot: %s",
                self.domain.value, failures, exc,
            )
            self._status = replace(
                self._status,
                state=DomainState.BACKOFF_IDLE,
                consecutive_failures=failures,
                last_error=str(exc) or type(exc).__name__,
                cycles=self._status.cycles + 1,
            )
            return
        if collected.degraded:
            logger.debug("%s published degraded snapshot from %s", self.domain.value, collected.source)
        self._status = replace(
            self._status,
            state=DomainState.IDLE,
            consecutive_failures=0,
            last_success_at=time.time(),
            cycles=self._status.cycles + 1,
        )


class CollectorScheduler:
    """Runs every collector on its own daemon thread and interval.

    Each cycle reads the current config once, so a hot-reloaded interval
    or enabled flag applies from the next cycle on. Config swaps wake all
    threads so a shortened interval is honoured immediately. A failed
    cycle is logged and leaves the previous snapshot in the store.
    """

    def __init__(
        self,
        collectors: Iterable[Collector],
        store: SnapshotStore,
        config_handle: ConfigHandle,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._handle = config_handle
        self._stop_event = threading.Event()
        self._workers: dict[Domain, _DomainWorker] = {}
        for collector in collectors:
            if collector.domain in self._workers:
                raise ValueError(f"Duplicate collector for {collector.domain.value}")
            self._workers[collector.domain] = _DomainWorker(
                collector, store, config_handle, self._stop_event, clock
            )
        self._unsubscribe: Callable[[], None] | None = None
        self._running = False

    @property
    def domains(self) -> tuple[Domain, ...]:
        return tuple(self._workers)

    def start(self) -> None:
        """Start one thread per domain. A no-op when already running."""
        if self._running:
            return
        self._stop_event.clear()
        self._unsubscribe = self._handle.subscribe(self._on_config)
        for worker in self._workers.values():
            worker.start()
        self._running = True
        logger.info("Scheduler started for %s", ", ".join(d.value for d in self._workers))

    def stop(self, timeout_s: float = 5.0) -> None:
        """Stop accepting cycles; in-flight queries end via their own timeout."""
        if not self._running:
            return
        self._stop_event.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for worker in self._workers.values():
            worker.wake()
        for worker in self._workers.values():
            worker.join(timeout_s)
        self._running = False
        logger.info("Scheduler stopped")

    def refresh(self, domain: Domain) -> None:
        """Run a cache-bypassing cycle for ``domain`` on its own thread now."""
        self._worker(domain).wake(force=True)

    def run_once(self, domains: Iterable[Domain] | None = None) -> None:
        """Collect synchronously on the calling thread. Only while stopped."""
        if self._running:
            raise RuntimeError("run_once() requires a stopped scheduler")
        config = self._handle.current
        targets = self.domains if domains is None else tuple(domains)
        for domain in targets:
            self._worker(domain).run_cycle(config)

    def status(self, domain: Domain) -> DomainStatus:
        return self._worker(domain).status

    @property
    def is_running(self) -> bool:
        return self._running and any(w.is_alive() for w in self._workers.values())

    def _on_config(self, config: MonitorConfig) -> None:
        for worker in self._workers.values():
            worker.wake()

    def _worker(self, domain: Domain) -> _DomainWorker:
        try:
            return self._workers[domain]
        except KeyError:
            raise KeyError(f"No collector registered for {domain.value}") from None
