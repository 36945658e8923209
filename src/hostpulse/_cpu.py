"""CPU domain: processor inventory, per-core utilization, thermals and top processes."""

from __future__ import annotations

import logging
import platform
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from hostpulse._cache import TTLCache
from hostpulse._collector import CycleContext, FallbackCollector
from hostpulse._errors import ExecutionError, ParseError
from hostpulse._executor import Executor
from hostpulse._parsing import CounterRow, as_float, as_int, as_str, parse_counter_rows, parse_json_rows
from hostpulse._processes import (
    PROCESS_SCRIPT,
    CpuTimeTracker,
    parse_process_rows,
    psutil_processes,
    rank_processes,
)
from hostpulse._types import UNKNOWN, Collected, CoreUsage, CpuData, Domain, ProcessEntry

logger = logging.getLogger("hostpulse.cpu")

PROCESSOR_SCRIPT = (
    "Get-CimInstance Win32_Processor | Select-Object Name, NumberOfCores, "
    "NumberOfLogicalProcessors, CurrentClockSpeed, MaxClockSpeed | ConvertTo-Json -Compress"
)
CORE_COUNTER_SCRIPT = (
    r"(Get-Counter '\Processor(*)\% Processor Time').CounterSamples | "
    r"Select-Object InstanceName, CookedValue | ConvertTo-Json -Compress"
)
THERMAL_SCRIPT = (
    "Get-CimInstance -Namespace root/wmi -ClassName MSAcpi_ThermalZoneTemperature | "
    "Select-Object InstanceName, CurrentTemperature | ConvertTo-Json -Compress"
)
POWER_COUNTER_SCRIPT = (
    r"(Get-Counter '\Power Meter(*)\Power').CounterSamples | "
    r"Select-Object InstanceName, CookedValue | ConvertTo-Json -Compress"
)


def _clamp_percent(value: float) -> float:
    return min(max(value, 0.0), 100.0)


@dataclass(frozen=True)
class ProcessorInfo:
    name: str
    core_count: int
    thread_count: int
    current_clock_mhz: float
    max_clock_mhz: float


def parse_processor_info(text: str) -> ProcessorInfo:
    """Summarise ``Win32_Processor`` rows; multi-socket counts are summed."""
    rows = parse_json_rows(text)
    if not rows:
        raise ParseError("Win32_Processor returned no rows")
    first = rows[0]
    return ProcessorInfo(
        name=as_str(first.get("Name"), "Unknown CPU") or "Unknown CPU",
        core_count=sum(as_int(r.get("NumberOfCores"), 0) for r in rows),
        thread_count=sum(as_int(r.get("NumberOfLogicalProcessors"), 0) for r in rows),
        current_clock_mhz=as_float(first.get("CurrentClockSpeed"), UNKNOWN),
        max_clock_mhz=as_float(first.get("MaxClockSpeed"), UNKNOWN),
    )


def parse_core_counters(rows: list[CounterRow]) -> tuple[float, tuple[CoreUsage, ...]]:
    """Split processor counters into the ``_total`` figure and per-core figures."""
    overall: float | None = None
    cores: list[CoreUsage] = []
    for row in rows:
        instance = row.instance.strip().lower()
        if instance == "_total":
            overall = _clamp_percent(row.value)
        elif instance.isdigit():
            cores.append(CoreUsage(core_id=int(instance), usage=_clamp_percent(row.value)))
    cores.sort(key=lambda c: c.core_id)
    if overall is None:
        if not cores:
            raise ParseError("Processor counters contained neither _total nor core rows")
        overall = sum(c.usage for c in cores) / len(cores)
    return overall, tuple(cores)


# Thermal zones report tenths of a Kelvin.
def parse_thermal_zones(text: str) -> float:
    """Hottest ACPI thermal zone in Celsius."""
    readings = []
    for row in parse_json_rows(text):
        raw = as_float(row.get("CurrentTemperature"), 0.0)
        if raw > 0:
            readings.append(round(raw / 10.0 - 273.15, 1))
    if not readings:
        raise ParseError("No thermal zone reported a temperature")
    return max(readings)


def parse_power_counters(rows: list[CounterRow]) -> float:
    """Package power in watts from ``\\Power Meter(*)\\Power`` (milliwatts)."""
    if not rows:
        raise ParseError("Power meter counters returned no rows")
    for row in rows:
        if row.instance.strip().lower() == "_total":
            return max(row.value, 0.0) / 1000.0
    return sum(max(row.value, 0.0) for row in rows) / 1000.0


_CPU_SENSOR_CHIPS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "acpitz")


def sensor_temperature() -> float:
    """CPU temperature from psutil sensors, where the platform has them."""
    sensors = getattr(psutil, "sensors_temperatures", None)
    if sensors is None:
        return UNKNOWN
    readings = sensors()
    for chip in _CPU_SENSOR_CHIPS:
        entries = [e.current for e in readings.get(chip, ()) if e.current is not None]
        if entries:
            return max(entries)
    return UNKNOWN


class CpuCollector(FallbackCollector):
    """Processor load, clocks, thermals and the busiest processes.

    Temperature, power draw and top processes are best effort: a failed
    query leaves the field ``UNKNOWN`` (or empty) without failing the cycle,
    and a failed thermal or power query is not retried for ``retry_s``.
    The power limit has no query source and comes from the ``tdp_watts``
    monitor option.
    """

    domain = Domain.CPU

    def __init__(
        self,
        executor: Executor,
        cache: TTLCache,
        *,
        cpu_count: int | None = None,
        retry_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(executor, cache)
        self._tracker = CpuTimeTracker(cpu_count)
        self._retry_s = retry_s
        self._clock = clock
        self._retry_at: dict[str, float] = {}

    def _collect_primary(self, context: CycleContext) -> Collected:
        info_result = self._run(self._ps(PROCESSOR_SCRIPT, context), context)
        counter_result = self._run(self._ps(CORE_COUNTER_SCRIPT, context), context)
        info = parse_processor_info(info_result.unwrap())
        overall, cores = parse_core_counters(parse_counter_rows(counter_result.unwrap()))
        data = CpuData(
            name=info.name,
            overall_usage=overall,
            core_count=info.core_count or len(cores),
            thread_count=info.thread_count or len(cores),
            cores=cores,
            current_clock_mhz=info.current_clock_mhz,
            max_clock_mhz=info.max_clock_mhz,
            temperature=self._temperature(context),
            power_draw=self._power_draw(context),
            power_limit=_power_limit(context),
            top_processes=self._top_processes(context),
        )
        return Collected(data=data, source="cim")

    def _optional(self, script: str, context: CycleContext) -> str | None:
        """Output of a best-effort query, or None while it is backing off."""
        now = self._clock()
        if not context.bypass_cache and now < self._retry_at.get(script, now):
            return None
        result = self._run(self._ps(script, context), context)
        if not result.ok:
            self._retry_at[script] = now + self._retry_s
        return result.unwrap()

    def _temperature(self, context: CycleContext) -> float:
        try:
            text = self._optional(THERMAL_SCRIPT, context)
            return UNKNOWN if text is None else parse_thermal_zones(text)
        except (ExecutionError, ParseError) as exc:
            logger.debug("CPU temperature unavailable: %s", exc)
            return UNKNOWN

    def _power_draw(self, context: CycleContext) -> float:
        try:
            text = self._optional(POWER_COUNTER_SCRIPT, context)
            return UNKNOWN if text is None else parse_power_counters(parse_counter_rows(text))
        except (ExecutionError, ParseError) as exc:
            logger.debug("CPU power meter unavailable: %s", exc)
            return UNKNOWN

    def _top_processes(self, context: CycleContext) -> tuple[ProcessEntry, ...]:
        if not context.options.get("show_top_processes", True):
            return ()
        try:
            result = self._run(self._ps(PROCESS_SCRIPT, context), context)
            entries = self._tracker.apply(parse_process_rows(result.unwrap()), result.produced_at)
        except (ExecutionError, ParseError) as exc:
            logger.info("Top CPU processes unavailable: %s", exc)
            return ()
        return context.truncate(rank_processes(entries))

    def _collect_fallback(self, context: CycleContext) -> CpuData:
        per_core = psutil.cpu_percent(interval=None, percpu=True)
        freq = psutil.cpu_freq()
        top: tuple[ProcessEntry, ...] = ()
        if context.options.get("show_top_processes", True):
            top = context.truncate(rank_processes(psutil_processes()))
        return CpuData(
            name=platform.processor() or "Unknown CPU",
            overall_usage=_clamp_percent(psutil.cpu_percent(interval=None)),
            core_count=psutil.cpu_count(logical=False) or len(per_core),
            thread_count=psutil.cpu_count(logical=True) or len(per_core),
            cores=tuple(CoreUsage(core_id=i, usage=_clamp_percent(u)) for i, u in enumerate(per_core)),
            current_clock_mhz=freq.current if freq else UNKNOWN,
            max_clock_mhz=freq.max if freq and freq.max else UNKNOWN,
            temperature=sensor_temperature(),
            power_limit=_power_limit(context),
            top_processes=top,
        )


def _power_limit(context: CycleContext) -> float:
    limit = as_float(context.options.get("tdp_watts"), UNKNOWN)
    return limit if limit > 0 else UNKNOWN
