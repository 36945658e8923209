"""Core types: enums, snapshot envelope and per-domain payloads."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

# Sentinel for numeric telemetry the upstream tool did not report.
UNKNOWN = -1


class Domain(enum.Enum):
    """Telemetry category, one collector task each."""

    CPU = "cpu"
    GPU = "gpu"
    RAM = "ram"
    DISK = "disk"
    NETWORK = "network"
    PROCESSES = "processes"
    SERVICES = "services"


class EngineType(enum.Enum):
    """GPU engine classification derived from a counter instance name."""

    GRAPHICS = "Graphics"
    COMPUTE = "Compute"
    COPY = "Copy"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Snapshot:
    """Immutable result of one collection cycle for one domain."""

    domain: Domain
    version: int
    produced_at: float
    data: Any
    degraded: bool = False
    source: str = "primary"
    note: str | None = None


@dataclass(frozen=True)
class Collected:
    """What a collector hands back to the scheduler for publication."""

    data: Any
    degraded: bool = False
    source: str = "primary"
    note: str | None = None


# --- GPU ---


@dataclass(frozen=True)
class GpuDeviceRecord:
    index: int
    name: str
    utilization: float = UNKNOWN
    memory_utilization: float = UNKNOWN
    memory_used: int = UNKNOWN          # bytes
    memory_total: int = UNKNOWN         # bytes
    temperature: float = UNKNOWN        # celsius
    power_draw: float = UNKNOWN         # watts
    power_limit: float = UNKNOWN        # watts
    fan_speed: float = UNKNOWN          # percent
    clock_graphics: int = UNKNOWN       # MHz
    clock_memory: int = UNKNOWN         # MHz
    driver_version: str = ""
    available: bool = True


@dataclass(frozen=True)
class GpuProcessRecord:
    pid: int
    name: str
    utilization: float
    memory_used: int                    # bytes
    engine_type: EngineType = EngineType.UNKNOWN


@dataclass(frozen=True)
class GpuData:
    devices: tuple[GpuDeviceRecord, ...]
    processes: tuple[GpuProcessRecord, ...] = ()
    active_index: int | None = None

    @property
    def active_device(self) -> GpuDeviceRecord | None:
        for device in self.devices:
            if device.index == self.active_index:
                return device
        return None


# --- CPU ---


@dataclass(frozen=True)
class CoreUsage:
    core_id: int
    usage: float


@dataclass(frozen=True)
class CpuData:
    name: str
    overall_usage: float
    core_count: int
    thread_count: int
    cores: tuple[CoreUsage, ...] = ()
    current_clock_mhz: float = UNKNOWN
    max_clock_mhz: float = UNKNOWN
    temperature: float = UNKNOWN        # Celsius
    power_draw: float = UNKNOWN         # Watts
    power_limit: float = UNKNOWN        # Watts (TDP)
    top_processes: tuple[ProcessEntry, ...] = ()


# --- RAM ---


@dataclass(frozen=True)
class MemoryConsumer:
    pid: int
    name: str
    working_set: int                    # bytes


@dataclass(frozen=True)
class RamData:
    total: int
    used: int
    available: int
    cached: int = UNKNOWN
    speed_mts: int = UNKNOWN
    type_name: str = ""
    top_consumers: tuple[MemoryConsumer, ...] = ()

    @property
    def usage_percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return 100.0 * self.used / self.total


# --- Disk ---


@dataclass(frozen=True)
class VolumeInfo:
    letter: str
    label: str
    file_system: str
    total: int
    free: int

    @property
    def used(self) -> int:
        return max(self.total - self.free, 0)


@dataclass(frozen=True)
class PhysicalDiskInfo:
    index: int
    name: str
    media_type: str
    health: str
    size: int


@dataclass(frozen=True)
class DiskData:
    volumes: tuple[VolumeInfo, ...]
    physical_disks: tuple[PhysicalDiskInfo, ...] = ()


# --- Network ---


@dataclass(frozen=True)
class NetworkInterface:
    name: str
    description: str
    status: str
    link_speed: str
    total_received: int
    total_sent: int
    receive_rate: float = 0.0           # bytes/s
    send_rate: float = 0.0              # bytes/s

    @property
    def connected(self) -> bool:
        return self.status.lower() in ("up", "connected")


@dataclass(frozen=True)
class NetworkData:
    interfaces: tuple[NetworkInterface, ...]


# --- Processes ---


@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    name: str
    cpu_usage: float
    memory: int                         # bytes
    threads: int


@dataclass(frozen=True)
class ProcessData:
    processes: tuple[ProcessEntry, ...]


# --- Services ---


class ServiceStatus(enum.Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    PAUSED = "Paused"
    START_PENDING = "StartPending"
    STOP_PENDING = "StopPending"
    CONTINUE_PENDING = "ContinuePending"
    PAUSE_PENDING = "PausePending"
    UNKNOWN = "Unknown"


class ServiceStartType(enum.Enum):
    AUTOMATIC = "Automatic"
    MANUAL = "Manual"
    DISABLED = "Disabled"
    AUTOMATIC_DELAYED_START = "AutomaticDelayedStart"
    BOOT = "Boot"
    SYSTEM = "System"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ServiceEntry:
    name: str
    display_name: str
    status: ServiceStatus
    start_type: ServiceStartType
    description: str | None = None
    can_stop: bool = False
    can_pause_and_continue: bool = False
    dependent_services: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ServiceData:
    services: tuple[ServiceEntry, ...]
