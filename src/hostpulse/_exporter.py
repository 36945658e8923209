"""OTLP gRPC exporter: turns the latest snapshots into gauge metrics."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping

import grpc
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
)
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2_grpc import (
    MetricsServiceStub,
)
from opentelemetry.proto.common.v1.common_pb2 import (
    AnyValue,
    InstrumentationScope,
    KeyValue,
)
from opentelemetry.proto.metrics.v1.metrics_pb2 import (
    Gauge,
    Metric,
    NumberDataPoint,
    ResourceMetrics,
    ScopeMetrics,
)
from opentelemetry.proto.resource.v1.resource_pb2 import Resource

from hostpulse._store import SnapshotStore
from hostpulse._types import (
    UNKNOWN,
    CpuData,
    DiskData,
    Domain,
    GpuData,
    NetworkData,
    RamData,
    Snapshot,
)

logger = logging.getLogger("hostpulse.exporter")

_VERSION = "0.1.0"

Attributes = Mapping[str, "str | int | float | bool"]


def _make_attribute(key: str, value: str | int | float | bool) -> KeyValue:
    """Convert a Python key-value pair to an OTLP KeyValue protobuf."""
    if isinstance(value, bool):
        av = AnyValue(bool_value=value)
    elif isinstance(value, int):
        av = AnyValue(int_value=value)
    elif isinstance(value, float):
        av = AnyValue(double_value=value)
    else:
        av = AnyValue(string_value=str(value))
    return KeyValue(key=key, value=av)


class _GaugeSet:
    """Accumulates data points per metric name, preserving first-seen order."""

    def __init__(self, time_unix_nano: int) -> None:
        self._time = time_unix_nano
        self._metrics: dict[str, tuple[str, list[NumberDataPoint]]] = {}

    def add(self, name: str, unit: str, value: float, attributes: Attributes | None = None) -> None:
        # Unknown readings are omitted rather than exported as -1.
        if value == UNKNOWN:
            return
        point = NumberDataPoint(
            time_unix_nano=self._time,
            as_double=float(value),
            attributes=[_make_attribute(k, v) for k, v in (attributes or {}).items()],
        )
        self._metrics.setdefault(name, (unit, []))[1].append(point)

    def metrics(self) -> list[Metric]:
        return [
            Metric(name=name, unit=unit, gauge=Gauge(data_points=points))
            for name, (unit, points) in self._metrics.items()
        ]


def _add_cpu(gauges: _GaugeSet, data: CpuData) -> None:
    gauges.add("host.cpu.utilization", "%", data.overall_usage)
    for core in data.cores:
        gauges.add("host.cpu.core.utilization", "%", core.usage, {"core": core.core_id})
    gauges.add("host.cpu.temperature", "Cel", data.temperature)
    gauges.add("host.cpu.power", "W", data.power_draw)


def _add_ram(gauges: _GaugeSet, data: RamData) -> None:
    gauges.add("host.memory.used", "By", data.used)
    gauges.add("host.memory.total", "By", data.total)


def _add_gpu(gauges: _GaugeSet, data: GpuData) -> None:
    for device in data.devices:
        if not device.available:
            continue
        attrs = {"gpu.index": device.index, "gpu.name": device.name}
        gauges.add("host.gpu.utilization", "%", device.utilization, attrs)
        gauges.add("host.gpu.memory.used", "By", device.memory_used, attrs)
        gauges.add("host.gpu.memory.total", "By", device.memory_total, attrs)
        gauges.add("host.gpu.temperature", "Cel", device.temperature, attrs)
        gauges.add("host.gpu.power", "W", device.power_draw, attrs)


def _add_disk(gauges: _GaugeSet, data: DiskData) -> None:
    for volume in data.volumes:
        attrs = {"volume": volume.letter}
        gauges.add("host.disk.used", "By", volume.used, attrs)
        gauges.add("host.disk.total", "By", volume.total, attrs)


def _add_network(gauges: _GaugeSet, data: NetworkData) -> None:
    for iface in data.interfaces:
        attrs = {"interface": iface.name}
        gauges.add("host.network.receive_rate", "By/s", iface.receive_rate, attrs)
        gauges.add("host.network.send_rate", "By/s", iface.send_rate, attrs)


_CONVERTERS = {
    Domain.CPU: _add_cpu,
    Domain.RAM: _add_ram,
    Domain.GPU: _add_gpu,
    Domain.DISK: _add_disk,
    Domain.NETWORK: _add_network,
}


def _build_export_request(
    snapshots: Mapping[Domain, Snapshot],
    host_name: str,
    *,
    time_unix_nano: int | None = None,
) -> ExportMetricsServiceRequest:
    """Build an ExportMetricsServiceRequest from the latest snapshots."""
    gauges = _GaugeSet(time.time_ns() if time_unix_nano is None else time_unix_nano)
    for domain, snapshot in snapshots.items():
        convert = _CONVERTERS.get(domain)
        if convert is not None:
            convert(gauges, snapshot.data)

    resource = Resource(attributes=[
        _make_attribute("host.name", host_name),
        _make_attribute("telemetry.sdk.name", "hostpulse"),
        _make_attribute("telemetry.sdk.version", _VERSION),
    ])
    scope = InstrumentationScope(name="hostpulse", version=_VERSION)
    scope_metrics = ScopeMetrics(scope=scope, metrics=gauges.metrics())
    resource_metrics = ResourceMetrics(resource=resource, scope_metrics=[scope_metrics])
    return ExportMetricsServiceRequest(resource_metrics=[resource_metrics])


class OTLPMetricsExporter:
    """Ships snapshot gauges over gRPC using the OTLP metrics protocol.

    Failures are logged but never raised; export must not disturb
    collection.
    """

    def __init__(
        self,
        endpoint: str,
        host_name: str,
        *,
        insecure: bool = True,
        timeout_s: float = 10.0,
        api_key: str | None = None,
    ) -> None:
        self._host_name = host_name
        self._timeout_s = timeout_s
        self._metadata: list[tuple[str, str]] | None = None
        if api_key is not None:
            self._metadata = [("authorization", f"Bearer {api_key}")]

        if insecure:
            self._channel = grpc.insecure_channel(endpoint)
        else:
            self._channel = grpc.secure_channel(endpoint, grpc.ssl_channel_credentials())

        self._stub = MetricsServiceStub(self._channel)  # type: ignore[no-untyped-call]

    def export(self, snapshots: Mapping[Domain, Snapshot]) -> None:
        """Export one set of snapshots. Logs and swallows all errors."""
        if not snapshots:
            return
        try:
            request = _build_export_request(snapshots, self._host_name)
            self._stub.Export(request, timeout=self._timeout_s, metadata=self._metadata)
        except Exception:  # noqa: BLE001
            logger.debug("Failed to export %d snapshots", len(snapshots), exc_info=True)

    def shutdown(self) -> None:
        """Close the gRPC channel."""
        try:
            self._channel.close()
        except Exception:  # noqa: BLE001
            pass


class ExportProcessor:
    """Daemon thread that periodically hands the latest snapshots to an exporter.

    Only snapshots whose version changed since the previous export are sent.
    """

    def __init__(
        self,
        store: SnapshotStore,
        exporter: OTLPMetricsExporter,
        *,
        interval_ms: int = 10000,
    ) -> None:
        self._store = store
        self._exporter = exporter
        self._interval_s = interval_ms / 1000.0
        self._exported: dict[Domain, int] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the background export loop."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="hostpulse-export", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal stop and perform a final export."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._flush()

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self._interval_s):
            self._flush()

    def _flush(self) -> None:
        fresh = {
            domain: snapshot
            for domain, snapshot in self._store.read_all().items()
            if snapshot.version != self._exported.get(domain)
        }
        if not fresh:
            return
        try:
            self._exporter.export(fresh)
        except Exception:  # noqa: BLE001
            logger.debug("Exporter raised", exc_info=True)
        self._exported.update({domain: s.version for domain, s in fresh.items()})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
