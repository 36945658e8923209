"""GPU parsing and per-process correlation.

Device telemetry comes from nvidia-smi's CSV query mode, with its
human-readable table as a fallback for power figures. Per-process figures
come from two unrelated Windows performance-counter sets (process memory
and engine utilization) whose only common key is the process id embedded
in each counter instance name.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Any, Protocol

import psutil

from hostpulse._cache import ErrorPolicy, TTLCache
from hostpulse._collector import CycleContext, QueryCollector
from hostpulse._errors import ExecutionError, ParseError
from hostpulse._executor import Executor, nvidia_smi
from hostpulse._gpu_nvml import create_nvml_inventory
from hostpulse._parsing import (
    CounterRow,
    as_int,
    as_str,
    parse_counter_rows,
    parse_float,
    parse_json_rows,
    parse_uint,
)
from hostpulse._types import (
    UNKNOWN,
    Collected,
    Domain,
    EngineType,
    GpuData,
    GpuDeviceRecord,
    GpuProcessRecord,
)

logger = logging.getLogger("hostpulse.gpu")

_MIB = 1024 * 1024

DEVICE_FIELDS = (
    "name",
    "temperature.gpu",
    "utilization.gpu",
    "utilization.memory",
    "memory.used",
    "memory.total",
    "power.draw",
    "power.limit",
    "fan.speed",
    "clocks.gr",
    "clocks.mem",
    "driver_version",
)

STRUCTURED_QUERY = nvidia_smi(
    "--query-gpu=index," + ",".join(DEVICE_FIELDS),
    "--format=csv,noheader,nounits",
)
TABLE_QUERY = nvidia_smi()

MEMORY_COUNTER_SCRIPT = (
    r"(Get-Counter '\GPU Process Memory(*)\Dedicated Usage' -ErrorAction SilentlyContinue)"
    r".CounterSamples | Select-Object InstanceName, CookedValue | ConvertTo-Json -Compress"
)
ENGINE_COUNTER_SCRIPT = (
    r"(Get-Counter '\GPU Engine(*)\Utilization Percentage' -ErrorAction SilentlyContinue)"
    r".CounterSamples | Select-Object InstanceName, CookedValue | ConvertTo-Json -Compress"
)
INVENTORY_SCRIPT = (
    "Get-CimInstance Win32_VideoController | "
    "Select-Object Name, DriverVersion, AdapterRAM | ConvertTo-Json -Compress"
)

_PROCESS_KEY = re.compile(r"^pid_(?P<pid>\d+)(?:_|$)", re.IGNORECASE)
_ENGINE_MARKER = "engtype_"
_POWER_PAIR = re.compile(r"(\d+(?:\.\d+)?)\s*W\s*/\s*(\d+(?:\.\d+)?)\s*W")


# --- device parsing ---


def _bytes_from_mib(mib: int) -> int:
    return mib * _MIB if mib >= 0 else mib


def parse_device_lines(text: str, default: float = UNKNOWN) -> list[GpuDeviceRecord]:
    """Parse nvidia-smi ``--format=csv,noheader`` rows into device records.

    A row carries either the twelve ``DEVICE_FIELDS`` or those fields with
    the device index prepended. Numeric fields that are empty or rendered
    as an unsupported token take ``default``. Rows are returned ordered by
    index.
    """
    int_default = int(default)
    devices: list[GpuDeviceRecord] = []
    lines = [line for line in text.splitlines() if line.strip()]
    for position, line in enumerate(lines):
        fields = [f.strip() for f in line.split(",")]
        if len(fields) == len(DEVICE_FIELDS) + 1:
            index = parse_uint(fields[0], position)
            fields = fields[1:]
        elif len(fields) == len(DEVICE_FIELDS):
            index = position
        else:
            raise ParseError(
                f"GPU row has {len(fields)} fields, expected {len(DEVICE_FIELDS)} "
                f"or {len(DEVICE_FIELDS) + 1}: {line!r}"
            )
        (name, temperature, util, mem_util, mem_used, mem_total,
         power_draw, power_limit, fan, clock_gr, clock_mem, driver) = fields
        devices.append(GpuDeviceRecord(
            index=index,
            name=name or "unknown",
            temperature=parse_float(temperature, default),
            utilization=parse_float(util, default),
            memory_utilization=parse_float(mem_util, default),
            memory_used=_bytes_from_mib(parse_uint(mem_used, int_default)),
            memory_total=_bytes_from_mib(parse_uint(mem_total, int_default)),
            power_draw=parse_float(power_draw, default),
            power_limit=parse_float(power_limit, default),
            fan_speed=parse_float(fan, default),
            clock_graphics=parse_uint(clock_gr, int_default),
            clock_memory=parse_uint(clock_mem, int_default),
            driver_version=driver,
        ))
    devices.sort(key=lambda d: d.index)
    return devices


def needs_power_fallback(device: GpuDeviceRecord, default: float = UNKNOWN) -> bool:
    return device.power_draw == default and device.power_limit == default


def find_table_power(table_text: str, index: int) -> tuple[float, float] | None:
    """Locate ``<draw>W / <limit>W`` for device ``index`` in the plain table.

    The device's row starts with its index; the power pair sits on the
    line that follows it.
    """
    row = re.compile(rf"^\|?\s*{index}\s+\S")
    lines = table_text.splitlines()
    for i, line in enumerate(lines[:-1]):
        if not row.match(line):
            continue
        match = _POWER_PAIR.search(lines[i + 1])
        if match:
            return float(match.group(1)), float(match.group(2))
    return None


def apply_power_fallback(
    devices: Sequence[GpuDeviceRecord],
    table_text: str,
    default: float = UNKNOWN,
) -> list[GpuDeviceRecord]:
    """Fill power fields still at ``default`` from the plain table output."""
    patched: list[GpuDeviceRecord] = []
    for device in devices:
        if not needs_power_fallback(device, default):
            patched.append(device)
            continue
        found = find_table_power(table_text, device.index)
        if found is None:
            patched.append(device)
            continue
        draw, limit = found
        patched.append(replace(
            device,
            power_draw=draw if device.power_draw == default else device.power_draw,
            power_limit=limit if device.power_limit == default else device.power_limit,
        ))
    return patched


def select_active_device(devices: Iterable[GpuDeviceRecord]) -> GpuDeviceRecord | None:
    """The device with the most memory; the lowest index wins a tie."""
    ordered = sorted(devices, key=lambda d: d.index)
    if not ordered:
        return None
    return max(ordered, key=lambda d: d.memory_total)


def parse_inventory_rows(text: str) -> list[GpuDeviceRecord]:
    """Parse ``Win32_VideoController`` JSON into static-only device records."""
    devices = []
    for i, row in enumerate(parse_json_rows(text)):
        devices.append(GpuDeviceRecord(
            index=i,
            name=as_str(row.get("Name"), "unknown") or "unknown",
            memory_total=as_int(row.get("AdapterRAM"), UNKNOWN),
            driver_version=as_str(row.get("DriverVersion")),
            available=False,
        ))
    return devices


# --- process correlation ---


def extract_process_key(instance: str) -> int | None:
    """Process id embedded as ``pid_<digits>_...``; None when absent."""
    match = _PROCESS_KEY.match(instance.strip())
    if match is None:
        return None
    return int(match.group("pid"))


def classify_engine(instance: str) -> EngineType:
    """Classify the ``engtype_<TYPE>`` part of a counter instance name."""
    lowered = instance.lower()
    marker = lowered.find(_ENGINE_MARKER)
    if marker < 0:
        return EngineType.UNKNOWN
    engine = lowered[marker + len(_ENGINE_MARKER):]
    if "3d" in engine or "graphics" in engine:
        return EngineType.GRAPHICS
    if "compute" in engine:
        return EngineType.COMPUTE
    if "copy" in engine:
        return EngineType.COPY
    return EngineType.UNKNOWN


class MismatchSampler:
    """Rate-limited warning when most counter rows lack a process key."""

    def __init__(
        self,
        *,
        threshold: float = 0.5,
        interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = threshold
        self._interval_s = interval_s
        self._clock = clock
        self._last_warning: float | None = None
        self._lock = threading.Lock()
        self.warnings = 0

    def observe(self, ignored: int, total: int) -> bool:
        if total == 0 or ignored / total <= self._threshold:
            return False
        with self._lock:
            now = self._clock()
            if self._last_warning is not None and now - self._last_warning < self._interval_s:
                return False
            self._last_warning = now
            self.warnings += 1
        logger.warning(
            "%d of %d GPU counter rows did not match pid_<n>_; instance naming may have changed",
            ignored, total,
        )
        return True


_default_sampler = MismatchSampler()


def resolve_process_name(pid: int) -> str:
    """Live process name, or ``"Unknown"`` if it has exited or is hidden."""
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return "Unknown"


def correlate_processes(
    memory_rows: Iterable[CounterRow],
    engine_rows: Iterable[CounterRow],
    resolve_name: Callable[[int], str] = resolve_process_name,
    *,
    sampler: MismatchSampler | None = None,
) -> list[GpuProcessRecord]:
    """Join per-process memory and per-engine utilization by process id.

    Memory and utilization accumulate across rows sharing a pid. A pid's
    engine type is that of its single busiest engine instance; on equal
    utilization the first one seen is kept. Only pids with nonzero total
    utilization are emitted, busiest first.
    """
    sampler = sampler or _default_sampler
    total = 0
    ignored = 0

    memory: dict[int, int] = {}
    for row in memory_rows:
        total += 1
        pid = extract_process_key(row.instance)
        if pid is None:
            ignored += 1
            continue
        memory[pid] = memory.get(pid, 0) + max(int(row.value), 0)

    utilization: dict[int, float] = {}
    busiest: dict[int, tuple[float, EngineType]] = {}
    for row in engine_rows:
        total += 1
        pid = extract_process_key(row.instance)
        if pid is None:
            ignored += 1
            continue
        value = max(row.value, 0.0)
        utilization[pid] = utilization.get(pid, 0.0) + value
        current = busiest.get(pid)
        if current is None or value > current[0]:
            busiest[pid] = (value, classify_engine(row.instance))

    sampler.observe(ignored, total)

    records = [
        GpuProcessRecord(
            pid=pid,
            name=resolve_name(pid),
            utilization=util,
            memory_used=memory.get(pid, 0),
            engine_type=busiest[pid][1],
        )
        for pid, util in utilization.items()
        if util > 0
    ]
    records.sort(key=lambda r: (-r.utilization, r.pid))
    return records


# --- collector ---

class DeviceInventory(Protocol):
    """Static device facts source used when the query tool is unavailable."""

    source: str

    def read(self) -> list[GpuDeviceRecord]: ...


_UNSET: Any = object()


class GpuCollector(QueryCollector):
    """Collects device telemetry and per-process GPU usage."""

    domain = Domain.GPU

    def __init__(
        self,
        executor: Executor,
        cache: TTLCache,
        *,
        resolve_name: Callable[[int], str] = resolve_process_name,
        nvml_inventory: DeviceInventory | None = _UNSET,
        sampler: MismatchSampler | None = None,
    ) -> None:
        super().__init__(executor, cache)
        self._resolve_name = resolve_name
        if nvml_inventory is _UNSET:
            nvml_inventory = create_nvml_inventory()
        self._nvml = nvml_inventory
        self._sampler = sampler

    def collect(self, context: CycleContext) -> Collected:
        try:
            devices, stale = self._collect_devices(context)
            degraded, source, note = stale, "nvidia-smi", "stale" if stale else None
        except (ExecutionError, ParseError) as exc:
            logger.warning("GPU query tool unavailable, using inventory: %s", exc)
            devices, source = self._collect_inventory(context)
            degraded, note = True, str(exc)

        active = select_active_device(devices)
        data = GpuData(
            devices=tuple(devices),
            processes=self._collect_processes(context),
            active_index=active.index if active is not None else None,
        )
        return Collected(data=data, degraded=degraded, source=source, note=note)

    def _collect_devices(self, context: CycleContext) -> tuple[list[GpuDeviceRecord], bool]:
        result = self._run(STRUCTURED_QUERY, context, on_error=ErrorPolicy.STALE)
        devices = parse_device_lines(result.unwrap())
        if not devices:
            raise ParseError("GPU query tool reported no devices")
        if any(needs_power_fallback(d) for d in devices):
            table = self._run(TABLE_QUERY, context)
            if table.ok:
                devices = apply_power_fallback(devices, table.unwrap())
            else:
                logger.debug("GPU table query failed: %s", table.error)
        return devices, result.degraded

    def _collect_inventory(self, context: CycleContext) -> tuple[list[GpuDeviceRecord], str]:
        if self._nvml is not None:
            try:
                devices = self._nvml.read()
                if devices:
                    return devices, self._nvml.source
            except ExecutionError as exc:
                logger.info("NVML inventory unavailable: %s", exc)
        try:
            devices = parse_inventory_rows(
                self._run(self._ps(INVENTORY_SCRIPT, context), context).unwrap()
            )
            if devices:
                return devices, "cim"
        except (ExecutionError, ParseError) as exc:
            logger.info("CIM video controller inventory unavailable: %s", exc)
        return [GpuDeviceRecord(index=0, name="unknown", available=False)], "none"

    def _collect_processes(self, context: CycleContext) -> tuple[GpuProcessRecord, ...]:
        if not context.options.get("show_processes", True):
            return ()
        try:
            engine_rows = parse_counter_rows(
                self._run(self._ps(ENGINE_COUNTER_SCRIPT, context), context).unwrap()
            )
        except (ExecutionError, ParseError) as exc:
            logger.info("GPU engine counters unavailable: %s", exc)
            return ()
        try:
            memory_rows = parse_counter_rows(
                self._run(self._ps(MEMORY_COUNTER_SCRIPT, context), context).unwrap()
            )
        except (ExecutionError, ParseError) as exc:
            logger.info("GPU process memory counters unavailable: %s", exc)
            memory_rows = []
        records = correlate_processes(
            memory_rows, engine_rows, self._resolve_name, sampler=self._sampler
        )
        return context.truncate(records)
