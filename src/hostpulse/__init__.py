"""HostPulse: live host telemetry aggregation."""

from __future__ import annotations

from hostpulse._config import MonitorConfig, default_config, load_config
from hostpulse._errors import ConfigError, ExecutionError, ExecutionErrorKind, HostPulseError, ParseError
from hostpulse._monitor import init, read, refresh, service_controller, shutdown, status
from hostpulse._scheduler import DomainState, DomainStatus
from hostpulse._services import ServiceController
from hostpulse._types import UNKNOWN, Domain, EngineType, Snapshot

__version__ = "0.1.0"

__all__ = [
    "UNKNOWN",
    "ConfigError",
    "Domain",
    "DomainState",
    "DomainStatus",
    "EngineType",
    "ExecutionError",
    "ExecutionErrorKind",
    "HostPulseError",
    "MonitorConfig",
    "ParseError",
    "ServiceController",
    "Snapshot",
    "__version__",
    "default_config",
    "init",
    "load_config",
    "read",
    "refresh",
    "service_controller",
    "shutdown",
    "status",
]
