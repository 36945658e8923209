"""RAM domain: physical memory totals and the largest working sets."""

from __future__ import annotations

import logging
from dataclasses import replace

import psutil

from hostpulse._collector import CycleContext, FallbackCollector
from hostpulse._errors import ExecutionError, ParseError
from hostpulse._parsing import as_int, as_str, parse_json_object, parse_json_rows
from hostpulse._types import UNKNOWN, Collected, Domain, MemoryConsumer, RamData

logger = logging.getLogger("hostpulse.ram")

MEMORY_SCRIPT = r"""
$os = Get-CimInstance Win32_OperatingSystem
$module = Get-CimInstance Win32_PhysicalMemory | Select-Object -First 1
[pscustomobject]@{
    TotalVisibleMemorySize = $os.TotalVisibleMemorySize
    FreePhysicalMemory = $os.FreePhysicalMemory
    CacheBytes = (Get-Counter '\Memory\Cache Bytes').CounterSamples[0].CookedValue
    Speed = $module.Speed
    SMBIOSMemoryType = $module.SMBIOSMemoryType
} | ConvertTo-Json -Compress
"""
CONSUMERS_SCRIPT = (
    "Get-Process | Sort-Object WorkingSet64 -Descending | Select-Object -First 50 "
    "Id, ProcessName, WorkingSet64 | ConvertTo-Json -Compress"
)

# SMBIOS type 17 memory type codes.
_SMBIOS_MEMORY_TYPES = {20: "DDR", 21: "DDR2", 24: "DDR3", 26: "DDR4", 34: "DDR5", 35: "LPDDR5"}

_KIB = 1024


def parse_memory_info(text: str) -> RamData:
    row = parse_json_object(text)
    total_kib = as_int(row.get("TotalVisibleMemorySize"), UNKNOWN)
    free_kib = as_int(row.get("FreePhysicalMemory"), UNKNOWN)
    if total_kib <= 0 or free_kib < 0:
        raise ParseError(f"Win32_OperatingSystem memory totals missing: {row!r}")
    total = total_kib * _KIB
    available = min(free_kib * _KIB, total)
    return RamData(
        total=total,
        used=total - available,
        available=available,
        cached=as_int(row.get("CacheBytes"), UNKNOWN),
        speed_mts=as_int(row.get("Speed"), UNKNOWN),
        type_name=_SMBIOS_MEMORY_TYPES.get(as_int(row.get("SMBIOSMemoryType"), UNKNOWN), ""),
    )


def parse_consumers(text: str) -> list[MemoryConsumer]:
    consumers = [
        MemoryConsumer(
            pid=as_int(row.get("Id"), 0),
            name=as_str(row.get("ProcessName"), "Unknown"),
            working_set=as_int(row.get("WorkingSet64"), 0),
        )
        for row in parse_json_rows(text)
    ]
    consumers.sort(key=lambda c: (-c.working_set, c.pid))
    return consumers


class RamCollector(FallbackCollector):
    domain = Domain.RAM

    def _collect_primary(self, context: CycleContext) -> Collected:
        data = parse_memory_info(self._run(self._ps(MEMORY_SCRIPT, context), context).unwrap())
        try:
            consumers = parse_consumers(
                self._run(self._ps(CONSUMERS_SCRIPT, context), context).unwrap()
            )
        except (ExecutionError, ParseError) as exc:
            logger.info("Top memory consumers unavailable: %s", exc)
            consumers = []
        return Collected(data=replace(data, top_consumers=context.truncate(consumers)), source="cim")

    def _collect_fallback(self, context: CycleContext) -> RamData:
        vm = psutil.virtual_memory()
        consumers = []
        for proc in psutil.process_iter(["pid", "name", "memory_info"]):
            mem = proc.info.get("memory_info")
            if mem is None:
                continue
            consumers.append(MemoryConsumer(
                pid=proc.info["pid"],
                name=proc.info.get("name") or "Unknown",
                working_set=int(mem.rss),
            ))
        consumers.sort(key=lambda c: (-c.working_set, c.pid))
        return RamData(
            total=int(vm.total),
            used=int(vm.total - vm.available),
            available=int(vm.available),
            cached=int(getattr(vm, "cached", UNKNOWN)),
            top_consumers=context.truncate(consumers),
        )
