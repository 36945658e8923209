"""Monitor singleton: wires executor, cache, collectors, scheduler and export."""

from __future__ import annotations

import atexit
import logging
import os
import socket
from collections.abc import Iterable

from hostpulse._cache import TTLCache
from hostpulse._collector import Collector
from hostpulse._config import ConfigHandle, ConfigWatcher, MonitorConfig, default_config, load_config
from hostpulse._cpu import CpuCollector
from hostpulse._disk import DiskCollector
from hostpulse._executor import CommandExecutor, Executor
from hostpulse._exporter import ExportProcessor, OTLPMetricsExporter
from hostpulse._gpu import GpuCollector
from hostpulse._network import NetworkCollector
from hostpulse._processes import ProcessCollector
from hostpulse._ram import RamCollector
from hostpulse._scheduler import CollectorScheduler, DomainStatus
from hostpulse._services import ServiceCollector, ServiceController
from hostpulse._store import SnapshotStore
from hostpulse._types import Domain, Snapshot

logger = logging.getLogger("hostpulse.monitor")

_monitor_instance: _HostMonitor | None = None


def build_collectors(executor: Executor, cache: TTLCache) -> list[Collector]:
    """One collector per domain, all sharing one executor and one cache."""
    return [
        CpuCollector(executor, cache),
        GpuCollector(executor, cache),
        RamCollector(executor, cache),
        DiskCollector(executor, cache),
        NetworkCollector(executor, cache),
        ProcessCollector(executor, cache),
        ServiceCollector(executor, cache),
    ]


class _HostMonitor:
    """Internal singleton. Not part of the public API."""

    def __init__(
        self,
        config: MonitorConfig,
        *,
        config_path: str | os.PathLike[str] | None = None,
        executor: Executor | None = None,
        collectors: Iterable[Collector] | None = None,
    ) -> None:
        self.handle = ConfigHandle(config)
        self.executor = executor or CommandExecutor(
            default_timeout_s=config.powershell.timeout_seconds
        )
        self.cache = TTLCache()
        self.store = SnapshotStore()
        if collectors is None:
            collectors = build_collectors(self.executor, self.cache)
        self.scheduler = CollectorScheduler(collectors, self.store, self.handle)
        self.services = ServiceController(
            self.executor, self.cache, executable=config.powershell.executable
        )
        self._watcher = ConfigWatcher(config_path, self.handle) if config_path is not None else None
        self._exporter: OTLPMetricsExporter | None = None
        self._export_processor: ExportProcessor | None = None

    def start(self) -> None:
        """Start collection, config watching and, if enabled, export."""
        self.scheduler.start()
        if self._watcher is not None:
            self._watcher.start()

        export = self.handle.current.export
        if export.enabled:
            self._exporter = OTLPMetricsExporter(
                endpoint=export.endpoint,
                host_name=socket.gethostname(),
                insecure=export.insecure,
                api_key=export.api_key,
            )
            self._export_processor = ExportProcessor(
                self.store, self._exporter, interval_ms=export.interval_ms
            )
            self._export_processor.start()

    def shutdown(self) -> None:
        """Stop every thread and release resources."""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        self.scheduler.stop()
        if self._export_processor is not None:
            self._export_processor.stop()
            self._export_processor = None
        if self._exporter is not None:
            self._exporter.shutdown()
            self._exporter = None

    def read(self, domain: Domain) -> Snapshot | None:
        return self.store.read(domain)

    def refresh(self, domain: Domain) -> None:
        self.scheduler.refresh(domain)

    def status(self, domain: Domain) -> DomainStatus | None:
        return self.scheduler.status(domain)


class _NoopMonitor:
    """Fallback used before ``init``. Every query answers ``None``."""

    def read(self, domain: Domain) -> Snapshot | None:
        return None

    def refresh(self, domain: Domain) -> None:
        return None

    def status(self, domain: Domain) -> DomainStatus | None:
        return None


_noop = _NoopMonitor()


def _get_monitor() -> _HostMonitor | _NoopMonitor:
    """Return the active monitor or a noop fallback."""
    if _monitor_instance is not None:
        return _monitor_instance
    return _noop


def init(
    config_path: str | os.PathLike[str] | None = None,
    *,
    config: MonitorConfig | None = None,
    executor: Executor | None = None,
) -> None:
    """Initialize and start the host monitor.

    ``config`` wins over ``config_path`` for the initial settings; the path,
    when given, is still watched for hot reload. Raises ``ConfigError`` if
    the file cannot be loaded.
    """
    global _monitor_instance  # noqa: PLW0603

    if _monitor_instance is not None:
        _monitor_instance.shutdown()
        _monitor_instance = None

    if config is None:
        config = load_config(config_path) if config_path is not None else default_config()

    _monitor_instance = _HostMonitor(config, config_path=config_path, executor=executor)
    _monitor_instance.start()
    atexit.register(shutdown)


def shutdown() -> None:
    """Stop the monitor, if running."""
    global _monitor_instance  # noqa: PLW0603
    if _monitor_instance is not None:
        _monitor_instance.shutdown()
        _monitor_instance = None


def read(domain: Domain) -> Snapshot | None:
    """Latest snapshot for ``domain``, or None if none was published yet."""
    return _get_monitor().read(domain)


def refresh(domain: Domain) -> None:
    """Collect ``domain`` now, bypassing the query cache."""
    _get_monitor().refresh(domain)


def status(domain: Domain) -> DomainStatus | None:
    return _get_monitor().status(domain)


def service_controller() -> ServiceController | None:
    """Controller for starting and stopping services, or None before ``init``."""
    if _monitor_instance is not None:
        return _monitor_instance.services
    return None
