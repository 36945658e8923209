"""Processes domain: top processes by CPU time delta and memory."""

from __future__ import annotations

from dataclasses import dataclass

import psutil

from hostpulse._cache import TTLCache
from hostpulse._collector import CycleContext, FallbackCollector
from hostpulse._executor import Executor
from hostpulse._parsing import as_float, as_int, as_str, parse_json_rows
from hostpulse._types import Collected, Domain, ProcessData, ProcessEntry

PROCESS_SCRIPT = (
    "Get-Process | Select-Object Id, ProcessName, CPU, WorkingSet64, "
    "@{Name='Threads';Expression={$_.Threads.Count}} | ConvertTo-Json -Compress"
)


@dataclass(frozen=True)
class ProcessSample:
    pid: int
    name: str
    cpu_seconds: float
    memory: int
    threads: int


def parse_process_rows(text: str) -> list[ProcessSample]:
    samples = []
    for row in parse_json_rows(text):
        pid = as_int(row.get("Id"), -1)
        if pid < 0:
            continue
        samples.append(ProcessSample(
            pid=pid,
            name=as_str(row.get("ProcessName"), "Unknown"),
            cpu_seconds=as_float(row.get("CPU"), 0.0),
            memory=as_int(row.get("WorkingSet64"), 0),
            threads=as_int(row.get("Threads"), 0),
        ))
    return samples


def rank_processes(entries: list[ProcessEntry]) -> list[ProcessEntry]:
    return sorted(entries, key=lambda p: (-p.cpu_usage, -p.memory, p.pid))


def psutil_processes() -> list[ProcessEntry]:
    """Process list from psutil; CPU percent is machine-relative.

    ``cpu_percent`` measures since the previous call for the same process, so
    a process seen for the first time reports 0.
    """
    ncpu = psutil.cpu_count() or 1
    entries = []
    for proc in psutil.process_iter(["pid", "name", "memory_info", "num_threads"]):
        try:
            percent = proc.cpu_percent(interval=None) / ncpu
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        mem = proc.info.get("memory_info")
        entries.append(ProcessEntry(
            pid=proc.info["pid"],
            name=proc.info.get("name") or "Unknown",
            cpu_usage=min(percent, 100.0),
            memory=int(mem.rss) if mem is not None else 0,
            threads=proc.info.get("num_threads") or 0,
        ))
    return entries


class CpuTimeTracker:
    """Derives CPU percent from successive cumulative CPU-time samples.

    Percent is relative to the whole machine, so 100 means every logical
    processor was busy for the whole interval.
    """

    def __init__(self, cpu_count: int | None = None) -> None:
        self._cpu_count = max(cpu_count or psutil.cpu_count() or 1, 1)
        self._prev: dict[int, tuple[float, float]] = {}
        self._prev_usage: dict[int, float] = {}
        self._prev_at: float | None = None

    def apply(self, samples: list[ProcessSample], at: float) -> list[ProcessEntry]:
        elapsed = None if self._prev_at is None else at - self._prev_at
        if elapsed is not None and elapsed <= 0:
            # Same sample as last cycle (served from cache).
            return [self._entry(s, self._prev_usage.get(s.pid, 0.0)) for s in samples]

        entries = []
        usage: dict[int, float] = {}
        for sample in samples:
            percent = 0.0
            prev = self._prev.get(sample.pid)
            if prev is not None and elapsed:
                delta = sample.cpu_seconds - prev[0]
                # A decrease means the pid was reused by a new process.
                if delta > 0:
                    percent = min(100.0 * delta / elapsed / self._cpu_count, 100.0)
            usage[sample.pid] = percent
            entries.append(self._entry(sample, percent))
        self._prev = {s.pid: (s.cpu_seconds, at) for s in samples}
        self._prev_usage = usage
        self._prev_at = at
        return entries

    @staticmethod
    def _entry(sample: ProcessSample, percent: float) -> ProcessEntry:
        return ProcessEntry(
            pid=sample.pid,
            name=sample.name,
            cpu_usage=percent,
            memory=sample.memory,
            threads=sample.threads,
        )


class ProcessCollector(FallbackCollector):
    domain = Domain.PROCESSES

    def __init__(self, executor: Executor, cache: TTLCache, *, cpu_count: int | None = None) -> None:
        super().__init__(executor, cache)
        self._tracker = CpuTimeTracker(cpu_count)

    def _collect_primary(self, context: CycleContext) -> Collected:
        result = self._run(self._ps(PROCESS_SCRIPT, context), context)
        entries = self._tracker.apply(parse_process_rows(result.unwrap()), result.produced_at)
        data = ProcessData(processes=context.truncate(rank_processes(entries)))
        return Collected(data=data, source="get-process")

    def _collect_fallback(self, context: CycleContext) -> ProcessData:
        return ProcessData(processes=context.truncate(rank_processes(psutil_processes())))
