"""Network domain: adapters, byte counters and derived throughput."""

from __future__ import annotations

import time
from dataclasses import dataclass, replace

import psutil

from hostpulse._cache import TTLCache
from hostpulse._collector import CycleContext, FallbackCollector
from hostpulse._executor import Executor
from hostpulse._parsing import as_int, as_str, parse_json_rows
from hostpulse._types import Collected, Domain, NetworkData, NetworkInterface

ADAPTER_SCRIPT = (
    "Get-NetAdapter | Select-Object Name, InterfaceDescription, "
    "@{Name='Status';Expression={[string]$_.Status}}, LinkSpeed | ConvertTo-Json -Compress"
)
STATS_SCRIPT = (
    "Get-NetAdapterStatistics | Select-Object Name, ReceivedBytes, SentBytes | "
    "ConvertTo-Json -Compress"
)


def _is_loopback(name: str, description: str) -> bool:
    return name == "lo" or "loopback" in name.lower() or "loopback" in description.lower()


def parse_adapters(adapter_text: str, stats_text: str) -> list[NetworkInterface]:
    """Join adapter descriptions with their byte counters by adapter name.

    Adapters with no statistics row report zero totals.
    """
    totals: dict[str, tuple[int, int]] = {}
    for row in parse_json_rows(stats_text):
        totals[as_str(row.get("Name"))] = (
            as_int(row.get("ReceivedBytes"), 0),
            as_int(row.get("SentBytes"), 0),
        )
    interfaces = []
    for row in parse_json_rows(adapter_text):
        name = as_str(row.get("Name"))
        description = as_str(row.get("InterfaceDescription"))
        if not name or _is_loopback(name, description):
            continue
        received, sent = totals.get(name, (0, 0))
        interfaces.append(NetworkInterface(
            name=name,
            description=description,
            status=as_str(row.get("Status"), "Unknown"),
            link_speed=as_str(row.get("LinkSpeed")),
            total_received=received,
            total_sent=sent,
        ))
    return interfaces


def sort_interfaces(interfaces: list[NetworkInterface]) -> list[NetworkInterface]:
    return sorted(interfaces, key=lambda i: (not i.connected, i.name.lower()))


@dataclass(frozen=True)
class _Sample:
    received: int
    sent: int
    at: float
    receive_rate: float
    send_rate: float


class RateTracker:
    """Turns cumulative byte counters into per-second rates.

    A sample taken at the same instant as the previous one (a cache hit)
    repeats the previous rates. A counter that went backwards (adapter
    reset) restarts from zero.
    """

    def __init__(self) -> None:
        self._samples: dict[str, _Sample] = {}

    def apply(self, interfaces: list[NetworkInterface], at: float) -> list[NetworkInterface]:
        updated = []
        samples: dict[str, _Sample] = {}
        for iface in interfaces:
            prev = self._samples.get(iface.name)
            rx_rate = tx_rate = 0.0
            if prev is not None:
                elapsed = at - prev.at
                if elapsed <= 0:
                    rx_rate, tx_rate = prev.receive_rate, prev.send_rate
                elif iface.total_received >= prev.received and iface.total_sent >= prev.sent:
                    rx_rate = (iface.total_received - prev.received) / elapsed
                    tx_rate = (iface.total_sent - prev.sent) / elapsed
            samples[iface.name] = _Sample(iface.total_received, iface.total_sent, at, rx_rate, tx_rate)
            updated.append(replace(iface, receive_rate=rx_rate, send_rate=tx_rate))
        self._samples = samples
        return updated


class NetworkCollector(FallbackCollector):
    domain = Domain.NETWORK

    def __init__(self, executor: Executor, cache: TTLCache) -> None:
        super().__init__(executor, cache)
        self._rates = RateTracker()

    def _collect_primary(self, context: CycleContext) -> Collected:
        adapters = self._run(self._ps(ADAPTER_SCRIPT, context), context)
        stats = self._run(self._ps(STATS_SCRIPT, context), context)
        interfaces = parse_adapters(adapters.unwrap(), stats.unwrap())
        interfaces = self._rates.apply(interfaces, stats.produced_at)
        return Collected(data=NetworkData(interfaces=tuple(sort_interfaces(interfaces))), source="netadapter")

    def _collect_fallback(self, context: CycleContext) -> NetworkData:
        counters = psutil.net_io_counters(pernic=True)
        stats = psutil.net_if_stats()
        interfaces = []
        for name, io in counters.items():
            if _is_loopback(name, ""):
                continue
            st = stats.get(name)
            interfaces.append(NetworkInterface(
                name=name,
                description="",
                status="Up" if st is not None and st.isup else "Down",
                link_speed=f"{st.speed} Mbps" if st is not None and st.speed else "",
                total_received=int(io.bytes_recv),
                total_sent=int(io.bytes_sent),
            ))
        interfaces = self._rates.apply(interfaces, time.monotonic())
        return NetworkData(interfaces=tuple(sort_interfaces(interfaces)))
