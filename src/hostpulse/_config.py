"""Configuration: immutable effective settings, YAML loading and hot reload."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from hostpulse._errors import ConfigError
from hostpulse._types import Domain

logger = logging.getLogger("hostpulse.config")

DEFAULT_INTERVALS_MS: Mapping[Domain, int] = MappingProxyType({
    Domain.CPU: 1000,
    Domain.GPU: 1000,
    Domain.RAM: 1000,
    Domain.DISK: 2000,
    Domain.NETWORK: 1000,
    Domain.PROCESSES: 2000,
    Domain.SERVICES: 3000,
})

DEFAULT_CONFIG_YAML = """\
powershell:
  executable: powershell
  timeout_seconds: 10
  use_cache: true
  cache_ttl_seconds: 2

monitors:
  cpu:
    enabled: true
    refresh_interval_ms: 1000
    show_per_core: true
    top_processes_count: 5
    show_top_processes: true
    # tdp_watts: 105
  gpu:
    enabled: true
    refresh_interval_ms: 1000
    top_processes_count: 10
    show_processes: true
  ram:
    enabled: true
    refresh_interval_ms: 1000
    top_processes_count: 10
  disk:
    enabled: true
    refresh_interval_ms: 2000
  network:
    enabled: true
    refresh_interval_ms: 1000
  processes:
    enabled: true
    refresh_interval_ms: 2000
    top_processes_count: 50
  services:
    enabled: true
    refresh_interval_ms: 3000

export:
  enabled: false
  endpoint: localhost:4317
  interval_ms: 10000
  insecure: true
"""

_DOMAIN_KEYS = frozenset({"enabled", "refresh_interval_ms", "cache_ttl_ms", "top_processes_count"})


def _empty_options() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class ExecutorSettings:
    """How external queries are run and cached."""

    executable: str = "powershell"
    timeout_seconds: float = 10.0
    use_cache: bool = True
    cache_ttl_seconds: float = 2.0


@dataclass(frozen=True)
class DomainSettings:
    """Per-domain schedule, cache and display options."""

    enabled: bool = True
    refresh_interval_ms: int = 1000
    cache_ttl_ms: int | None = None
    top_processes_count: int = 10
    options: Mapping[str, Any] = field(default_factory=_empty_options)

    @property
    def interval_s(self) -> float:
        return self.refresh_interval_ms / 1000.0


@dataclass(frozen=True)
class ExportSettings:
    enabled: bool = False
    endpoint: str = "localhost:4317"
    interval_ms: int = 10000
    insecure: bool = True
    api_key: str | None = None


def _default_monitors() -> Mapping[Domain, DomainSettings]:
    return MappingProxyType({
        d: DomainSettings(refresh_interval_ms=ms) for d, ms in DEFAULT_INTERVALS_MS.items()
    })


@dataclass(frozen=True)
class MonitorConfig:
    """The effective configuration. Replaced wholesale, never mutated."""

    powershell: ExecutorSettings = field(default_factory=ExecutorSettings)
    monitors: Mapping[Domain, DomainSettings] = field(default_factory=_default_monitors)
    export: ExportSettings = field(default_factory=ExportSettings)

    def domain(self, domain: Domain) -> DomainSettings:
        settings = self.monitors.get(domain)
        if settings is None:
            return DomainSettings(refresh_interval_ms=DEFAULT_INTERVALS_MS[domain])
        return settings

    def cache_ttl_s(self, domain: Domain) -> float:
        settings = self.domain(domain)
        if settings.cache_ttl_ms is not None:
            return settings.cache_ttl_ms / 1000.0
        return self.powershell.cache_ttl_seconds

    @property
    def enabled_domains(self) -> list[Domain]:
        return [d for d in Domain if self.domain(d).enabled]


# --- parsing ---


def _section(document: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = document.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{key}] must be a table, got {type(value).__name__}")
    return value


def _bool(section: Mapping[str, Any], key: str, default: bool, where: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{where}.{key} must be true or false")
    return value


def _positive_number(section: Mapping[str, Any], key: str, default: float, where: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{where}.{key} must be a positive number")
    return float(value)


def _non_negative_number(section: Mapping[str, Any], key: str, default: float, where: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{where}.{key} must be a non-negative number")
    return float(value)


def _non_negative_int(section: Mapping[str, Any], key: str, default: int, where: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{where}.{key} must be a non-negative integer")
    return value


def _string(section: Mapping[str, Any], key: str, default: str, where: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}.{key} must be a non-empty string")
    return value.strip()


def _parse_domain(domain: Domain, raw: Any) -> DomainSettings:
    where = f"monitors.{domain.value}"
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"[{where}] must be a table")
    interval = _positive_number(raw, "refresh_interval_ms", DEFAULT_INTERVALS_MS[domain], where)
    ttl: int | None = None
    if raw.get("cache_ttl_ms") is not None:
        ttl = _non_negative_int(raw, "cache_ttl_ms", 0, where)
    return DomainSettings(
        enabled=_bool(raw, "enabled", True, where),
        refresh_interval_ms=max(int(interval), 1),
        cache_ttl_ms=ttl,
        top_processes_count=_non_negative_int(raw, "top_processes_count", 10, where),
        options=MappingProxyType({k: v for k, v in raw.items() if k not in _DOMAIN_KEYS}),
    )


def parse_config(document: Mapping[str, Any]) -> MonitorConfig:
    """Validate a decoded document and build a ``MonitorConfig``."""
    if not isinstance(document, Mapping):
        raise ConfigError("Configuration root must be a table")

    ps = _section(document, "powershell")
    executor = ExecutorSettings(
        executable=_string(ps, "executable", "powershell", "powershell"),
        timeout_seconds=_positive_number(ps, "timeout_seconds", 10.0, "powershell"),
        use_cache=_bool(ps, "use_cache", True, "powershell"),
        cache_ttl_seconds=_non_negative_number(ps, "cache_ttl_seconds", 2.0, "powershell"),
    )

    raw_monitors = _section(document, "monitors")
    by_name = {d.value: d for d in Domain}
    unknown = sorted(set(raw_monitors) - set(by_name))
    if unknown:
        raise ConfigError(f"Unknown monitor section(s): {', '.join(unknown)}")
    monitors = {d: _parse_domain(d, raw_monitors.get(d.value)) for d in Domain}

    ex = _section(document, "export")
    api_key = ex.get("api_key")
    if api_key is not None and not isinstance(api_key, str):
        raise ConfigError("export.api_key must be a string")
    export = ExportSettings(
        enabled=_bool(ex, "enabled", False, "export"),
        endpoint=_string(ex, "endpoint", "localhost:4317", "export"),
        interval_ms=int(_positive_number(ex, "interval_ms", 10000, "export")),
        insecure=_bool(ex, "insecure", True, "export"),
        api_key=api_key,
    )

    return MonitorConfig(
        powershell=executor,
        monitors=MappingProxyType(monitors),
        export=export,
    )


def load_config(path: str | os.PathLike[str]) -> MonitorConfig:
    """Read and validate the YAML document at ``path``.

    Raises ``ConfigError`` for unreadable, empty or invalid documents.
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if document is None:
        raise ConfigError(f"Config file {path} is empty")
    return parse_config(document)


def default_config() -> MonitorConfig:
    return parse_config(yaml.safe_load(DEFAULT_CONFIG_YAML))


def write_default_config(path: str | os.PathLike[str]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")


# --- live handle and watcher ---

ConfigListener = Callable[[MonitorConfig], None]


class ConfigHandle:
    """Holds the one current ``MonitorConfig`` and announces replacements.

    Readers take ``current`` once per cycle; ``swap`` replaces the reference
    in a single assignment, so a reader sees the old or the new value whole.
    """

    def __init__(self, config: MonitorConfig) -> None:
        self._config = config
        self._version = 0
        self._lock = threading.Lock()
        self._listeners: list[ConfigListener] = []

    @property
    def current(self) -> MonitorConfig:
        return self._config

    @property
    def version(self) -> int:
        return self._version

    def swap(self, config: MonitorConfig) -> None:
        with self._lock:
            self._config = config
            self._version += 1
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(config)
            except Exception:  # noqa: BLE001
                logger.warning("Config listener failed", exc_info=True)

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe


_Signature = tuple[int, int]


class ConfigWatcher:
    """Daemon thread that reloads the config file when it changes.

    Changes are detected by polling ``(mtime_ns, size)``. A change is only
    acted on once the signature has stayed put for ``debounce_s``, so a
    file caught mid-write is not read. Invalid documents are logged once
    and the previous configuration stays in force.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        handle: ConfigHandle,
        *,
        poll_interval_s: float = 0.5,
        debounce_s: float = 0.1,
        loader: Callable[[Path], MonitorConfig] = load_config,
    ) -> None:
        self._path = Path(path)
        self._handle = handle
        self._poll_interval_s = poll_interval_s
        self._debounce_s = debounce_s
        self._loader = loader
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_signature = self._signature()

    def _signature(self) -> _Signature | None:
        try:
            st = self._path.stat()
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="hostpulse-config-watcher", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self._poll_interval_s):
            try:
                self.poll()
            except Exception:  # noqa: BLE001
                logger.warning("Config watcher poll failed", exc_info=True)

    def poll(self) -> bool:
        """Check the file once. Returns True when a new config was adopted."""
        signature = self._signature()
        if signature is None or signature == self._last_signature:
            return False
        while True:
            if self._stop_event.wait(self._debounce_s):
                return False
            settled = self._signature()
            if settled is None:
                return False
            if settled == signature:
                break
            signature = settled
        self._last_signature = signature
        return self._reload()

    def _reload(self) -> bool:
        try:
            config = self._loader(self._path)
        except ConfigError as exc:
            logger.error("Failed to reload config, keeping previous: %s", exc)
            return False
        self._handle.swap(config)
        logger.info("Configuration reloaded from %s", self._path)
        return True
