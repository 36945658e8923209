"""Tests for GPU device parsing, power fallback and process correlation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import psutil
import pytest

from hostpulse._cache import TTLCache
from hostpulse._collector import CycleContext
from hostpulse._errors import ExecutionError, ExecutionErrorKind, ParseError
from hostpulse._gpu import (
    ENGINE_COUNTER_SCRIPT,
    INVENTORY_SCRIPT,
    MEMORY_COUNTER_SCRIPT,
    STRUCTURED_QUERY,
    TABLE_QUERY,
    GpuCollector,
    MismatchSampler,
    apply_power_fallback,
    classify_engine,
    correlate_processes,
    extract_process_key,
    find_table_power,
    parse_device_lines,
    parse_inventory_rows,
    resolve_process_name,
    select_active_device,
)
from hostpulse._parsing import CounterRow
from hostpulse._types import UNKNOWN, EngineType, GpuDeviceRecord

if TYPE_CHECKING:
    from conftest import FakeExecutor

MIB = 1024 * 1024

ROW_3070 = "0, NVIDIA GeForce RTX 3070, 45, 3, 10, 1024, 8192, 20.50, 250.00, 30, 210, 405, 535.98"
ROW_A5000 = "1, NVIDIA RTX A5000, 50, 12, 8, 2048, 24576, 95.00, 230.00, 40, 1395, 7600, 535.98"
ROW_NO_POWER = "0, NVIDIA GeForce GTX 1060, 41, 1, 2, 300, 6144, [N/A], [N/A], 0, 139, 405, 472.12"

TABLE = """\
+-----------------------------------------------------------------------------+
| NVIDIA-SMI 472.12       Driver Version: 472.12       CUDA Version: 11.4     |
|-------------------------------+----------------------+----------------------+
| GPU  Name            TCC/WDDM | Bus-Id        Disp.A | Volatile Uncorr. ECC |
| Fan  Temp  Perf  Pwr:Usage/Cap|         Memory-Usage | GPU-Util  Compute M. |
|===============================+======================+======================|
|   0  NVIDIA GeForce ... WDDM  | 00000000:01:00.0  On |                  N/A |
|  0%   41C    P8     6W / 120W |    300MiB /  6144MiB |      1%      Default |
+-------------------------------+----------------------+----------------------+
"""


def _names(pid: int) -> str:
    return f"proc{pid}"


def _row(instance: str, value: float) -> CounterRow:
    return CounterRow(instance=instance, value=value)


def _counter_json(*rows: tuple[str, float]) -> str:
    body = ", ".join(f'{{"InstanceName": "{i}", "CookedValue": {v}}}' for i, v in rows)
    return f"[{body}]"


class TestParseDeviceLines:
    def test_indexed_row(self) -> None:
        (device,) = parse_device_lines(ROW_3070)
        assert device.index == 0
        assert device.name == "NVIDIA GeForce RTX 3070"
        assert device.temperature == 45.0
        assert device.utilization == 3.0
        assert device.memory_utilization == 10.0
        assert device.memory_used == 1024 * MIB
        assert device.memory_total == 8192 * MIB
        assert device.power_draw == 20.5
        assert device.power_limit == 250.0
        assert device.fan_speed == 30.0
        assert device.clock_graphics == 210
        assert device.clock_memory == 405
        assert device.driver_version == "535.98"

    def test_row_without_index_uses_position(self) -> None:
        text = "GPU A, 40, 1, 1, 1, 100, 1, 1, 1, 1, 1, d\nGPU B, 40, 1, 1, 1, 200, 1, 1, 1, 1, 1, d\n"
        devices = parse_device_lines(text)
        assert [(d.index, d.name) for d in devices] == [(0, "GPU A"), (1, "GPU B")]

    def test_unsupported_fields_take_default(self) -> None:
        text = "0, GPU, N/A, [N/A], Not Supported, [Not Supported], , [N/A], [N/A], N/A, N/A, N/A, 1.0"
        (device,) = parse_device_lines(text)
        assert device.temperature == UNKNOWN
        assert device.utilization == UNKNOWN
        assert device.memory_utilization == UNKNOWN
        assert device.memory_used == UNKNOWN
        assert device.memory_total == UNKNOWN
        assert device.power_draw == UNKNOWN
        assert device.clock_graphics == UNKNOWN

    def test_custom_default(self) -> None:
        (device,) = parse_device_lines(ROW_NO_POWER, default=0)
        assert device.power_draw == 0

    def test_sorted_by_index(self) -> None:
        devices = parse_device_lines(f"{ROW_A5000}\n{ROW_3070}\n")
        assert [d.index for d in devices] == [0, 1]

    def test_blank_lines_ignored(self) -> None:
        assert len(parse_device_lines(f"\n{ROW_3070}\n\n")) == 1

    def test_wrong_field_count_raises(self) -> None:
        with pytest.raises(ParseError):
            parse_device_lines("0, GPU, 45")


class TestPowerFallback:
    def test_finds_pair_on_line_after_device_row(self) -> None:
        assert find_table_power(TABLE, 0) == (6.0, 120.0)

    def test_missing_device_row(self) -> None:
        assert find_table_power(TABLE, 3) is None

    def test_fills_defaults(self) -> None:
        (patched,) = apply_power_fallback(parse_device_lines(ROW_NO_POWER), TABLE)
        assert patched.power_draw == 6.0
        assert patched.power_limit == 120.0

    def test_present_values_untouched(self) -> None:
        text = ROW_NO_POWER.replace("[N/A], [N/A]", "55.00, 150.00")
        devices = parse_device_lines(text)
        assert apply_power_fallback(devices, TABLE) == devices

    def test_idempotent(self) -> None:
        once = apply_power_fallback(parse_device_lines(ROW_NO_POWER), TABLE)
        assert apply_power_fallback(once, TABLE) == once


class TestSelectActiveDevice:
    def test_largest_memory_wins(self) -> None:
        devices = parse_device_lines(f"{ROW_3070}\n{ROW_A5000}")
        active = select_active_device(devices)
        assert active is not None
        assert active.memory_total == 24576 * MIB

    def test_tie_goes_to_lowest_index(self) -> None:
        devices = [
            GpuDeviceRecord(index=1, name="b", memory_total=10),
            GpuDeviceRecord(index=0, name="a", memory_total=10),
        ]
        active = select_active_device(devices)
        assert active is not None
        assert active.index == 0

    def test_empty(self) -> None:
        assert select_active_device([]) is None


class TestProcessKey:
    def test_extracts_pid(self) -> None:
        assert extract_process_key("pid_4821_luid_0x00000000_0x0000C3D1_phys_0_eng_0_engtype_3D") == 4821

    def test_bare_pid(self) -> None:
        assert extract_process_key("pid_12") == 12

    @pytest.mark.parametrize("instance", ["_total", "luid_0x0_pid_12", "pid_", "pid_12abc", "process_12"])
    def test_non_matching(self, instance: str) -> None:
        assert extract_process_key(instance) is None

    @pytest.mark.parametrize(
        ("instance", "expected"),
        [
            ("pid_1_eng_0_engtype_3D", EngineType.GRAPHICS),
            ("pid_1_eng_0_engtype_Graphics_1", EngineType.GRAPHICS),
            ("pid_1_eng_3_engtype_Compute_0", EngineType.COMPUTE),
            ("pid_1_eng_5_engtype_Copy", EngineType.COPY),
            ("pid_1_eng_7_engtype_VideoDecode", EngineType.UNKNOWN),
            ("pid_1_luid_0x00003d00", EngineType.UNKNOWN),
        ],
    )
    def test_classify_engine(self, instance: str, expected: EngineType) -> None:
        assert classify_engine(instance) is expected


class TestCorrelateProcesses:
    def test_same_pid_same_type_sums(self) -> None:
        engine = [_row("pid_4821_engtype_Compute", 12.5), _row("pid_4821_engtype_Compute", 7.5)]
        (record,) = correlate_processes([], engine, _names, sampler=MismatchSampler())
        assert record.pid == 4821
        assert record.utilization == 20.0
        assert record.engine_type is EngineType.COMPUTE

    def test_mixed_types_keep_busiest_instance(self) -> None:
        engine = [_row("pid_7_eng_0_engtype_Copy", 30.0), _row("pid_7_eng_1_engtype_Compute", 45.0)]
        (record,) = correlate_processes([], engine, _names, sampler=MismatchSampler())
        assert record.utilization == 75.0
        assert record.engine_type is EngineType.COMPUTE

    def test_equal_contributions_keep_first_seen(self) -> None:
        engine = [_row("pid_7_eng_0_engtype_3D", 20.0), _row("pid_7_eng_1_engtype_Copy", 20.0)]
        (record,) = correlate_processes([], engine, _names, sampler=MismatchSampler())
        assert record.engine_type is EngineType.GRAPHICS

    def test_memory_joined_and_summed(self) -> None:
        memory = [_row("pid_10_luid_a_phys_0", 100.0), _row("pid_10_luid_b_phys_0", 50.0)]
        engine = [_row("pid_10_eng_0_engtype_3D", 5.0)]
        (record,) = correlate_processes(memory, engine, _names, sampler=MismatchSampler())
        assert record.memory_used == 150
        assert record.name == "proc10"

    def test_missing_memory_is_zero(self) -> None:
        (record,) = correlate_processes([], [_row("pid_3_engtype_3D", 1.0)], _names, sampler=MismatchSampler())
        assert record.memory_used == 0

    def test_zero_utilization_omitted(self) -> None:
        memory = [_row("pid_2_luid", 4096.0)]
        engine = [_row("pid_2_engtype_3D", 0.0), _row("pid_3_engtype_3D", 2.0)]
        records = correlate_processes(memory, engine, _names, sampler=MismatchSampler())
        assert [r.pid for r in records] == [3]

    def test_non_matching_rows_ignored(self) -> None:
        engine = [_row("garbage", 90.0), _row("pid_5_engtype_3D", 1.0)]
        records = correlate_processes([], engine, _names, sampler=MismatchSampler())
        assert [r.pid for r in records] == [5]

    def test_sorted_by_utilization_descending(self) -> None:
        engine = [_row("pid_1_engtype_3D", 5.0), _row("pid_2_engtype_3D", 50.0), _row("pid_3_engtype_3D", 20.0)]
        records = correlate_processes([], engine, _names, sampler=MismatchSampler())
        assert [r.pid for r in records] == [2, 3, 1]

    def test_default_resolver_names_exited_process_unknown(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(psutil, "Process", _exited)
        (record,) = correlate_processes(
            [], [_row("pid_99_engtype_3D", 1.0)], sampler=MismatchSampler()
        )
        assert record.pid == 99
        assert record.name == "Unknown"


class _NamedProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid

    def name(self) -> str:
        return f"live{self.pid}.exe"


def _exited(pid: int) -> _NamedProcess:
    raise psutil.NoSuchProcess(pid)


def _hidden(pid: int) -> _NamedProcess:
    raise psutil.AccessDenied(pid)


class TestResolveProcessName:
    def test_live_process(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(psutil, "Process", _NamedProcess)
        assert resolve_process_name(42) == "live42.exe"

    def test_exited_process(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(psutil, "Process", _exited)
        assert resolve_process_name(4_000_000) == "Unknown"

    def test_access_denied(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(psutil, "Process", _hidden)
        assert resolve_process_name(4) == "Unknown"

    def test_default_resolver_uses_live_name(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(psutil, "Process", _NamedProcess)
        (record,) = correlate_processes(
            [], [_row("pid_7_engtype_3D", 3.0)], sampler=MismatchSampler()
        )
        assert record.name == "live7.exe"


class TestMismatchSampler:
    def test_warns_once_per_interval(self, caplog: pytest.LogCaptureFixture) -> None:
        now = [0.0]
        sampler = MismatchSampler(interval_s=60.0, clock=lambda: now[0])
        with caplog.at_level(logging.WARNING, logger="hostpulse.gpu"):
            assert sampler.observe(ignored=8, total=10)
            now[0] = 30.0
            assert not sampler.observe(ignored=8, total=10)
            now[0] = 61.0
            assert sampler.observe(ignored=8, total=10)
        assert sampler.warnings == 2
        assert len([r for r in caplog.records if "did not match" in r.getMessage()]) == 2

    def test_below_threshold_is_quiet(self) -> None:
        sampler = MismatchSampler()
        assert not sampler.observe(ignored=5, total=10)
        assert not sampler.observe(ignored=0, total=0)
        assert sampler.warnings == 0


class TestInventory:
    def test_parse_inventory_rows(self) -> None:
        text = '{"Name": "NVIDIA GeForce GTX 1060", "DriverVersion": "27.21.14.7212", "AdapterRAM": 4293918720}'
        (device,) = parse_inventory_rows(text)
        assert device.name == "NVIDIA GeForce GTX 1060"
        assert device.driver_version == "27.21.14.7212"
        assert device.memory_total == 4293918720
        assert device.utilization == UNKNOWN
        assert not device.available


class FakeInventory:
    source = "nvml"

    def __init__(self, devices: list[GpuDeviceRecord] | None = None, fail: bool = False) -> None:
        self._devices = devices or []
        self._fail = fail

    def read(self) -> list[GpuDeviceRecord]:
        if self._fail:
            raise ExecutionError(ExecutionErrorKind.NOT_FOUND, "no driver")
        return self._devices


def _collector(fake: FakeExecutor, inventory: FakeInventory | None = None) -> GpuCollector:
    return GpuCollector(
        fake, TTLCache(), resolve_name=_names, nvml_inventory=inventory, sampler=MismatchSampler()
    )


class TestGpuCollector:
    def test_tool_unreachable_yields_unknown_device(self, fake_executor: FakeExecutor) -> None:
        collected = _collector(fake_executor).collect(CycleContext())
        (device,) = collected.data.devices
        assert device.name == "unknown"
        assert not device.available
        assert device.utilization == UNKNOWN
        assert device.memory_total == UNKNOWN
        assert collected.degraded
        assert collected.source == "none"
        assert collected.data.processes == ()

    def test_nvml_inventory_fallback(self, fake_executor: FakeExecutor) -> None:
        inventory = FakeInventory([GpuDeviceRecord(index=0, name="RTX", memory_total=8 * MIB, available=False)])
        collected = _collector(fake_executor, inventory).collect(CycleContext())
        assert collected.source == "nvml"
        assert collected.data.devices[0].name == "RTX"
        assert collected.degraded

    def test_cim_inventory_after_nvml_failure(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on_script(INVENTORY_SCRIPT, '{"Name": "Intel UHD", "DriverVersion": "1", "AdapterRAM": 1024}')
        collected = _collector(fake_executor, FakeInventory(fail=True)).collect(CycleContext())
        assert collected.source == "cim"
        assert collected.data.devices[0].name == "Intel UHD"

    def test_two_devices_selects_larger(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on(STRUCTURED_QUERY, f"{ROW_3070}\n{ROW_A5000}\n")
        collected = _collector(fake_executor).collect(CycleContext())
        assert not collected.degraded
        assert collected.source == "nvidia-smi"
        assert collected.data.active_index == 1
        assert collected.data.active_device.memory_total == 24576 * MIB
        assert fake_executor.count(TABLE_QUERY) == 0

    def test_power_fallback_uses_table(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on(STRUCTURED_QUERY, ROW_NO_POWER)
        fake_executor.on(TABLE_QUERY, TABLE)
        collected = _collector(fake_executor).collect(CycleContext())
        (device,) = collected.data.devices
        assert (device.power_draw, device.power_limit) == (6.0, 120.0)

    def test_table_failure_keeps_unknown_power(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on(STRUCTURED_QUERY, ROW_NO_POWER)
        collected = _collector(fake_executor).collect(CycleContext())
        assert collected.data.devices[0].power_draw == UNKNOWN
        assert not collected.degraded

    def test_stale_devices_after_failure(self, fake_executor: FakeExecutor) -> None:
        collector = _collector(fake_executor)
        fake_executor.on(STRUCTURED_QUERY, ROW_3070)
        collector.collect(CycleContext(cache_ttl_s=0.0))
        fake_executor.on(STRUCTURED_QUERY, ExecutionError(ExecutionErrorKind.TIMEOUT, "hung"))
        collected = collector.collect(CycleContext(cache_ttl_s=0.0))
        assert collected.degraded
        assert collected.source == "nvidia-smi"
        assert collected.data.devices[0].name == "NVIDIA GeForce RTX 3070"

    def test_processes_correlated_and_truncated(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on(STRUCTURED_QUERY, ROW_3070)
        fake_executor.on_script(ENGINE_COUNTER_SCRIPT, _counter_json(
            ("pid_4821_luid_0x0_phys_0_eng_3_engtype_Compute", 12.5),
            ("pid_4821_luid_0x0_phys_0_eng_4_engtype_Compute", 7.5),
            ("pid_100_luid_0x0_phys_0_eng_0_engtype_3D", 3.0),
        ))
        fake_executor.on_script(MEMORY_COUNTER_SCRIPT, _counter_json(
            ("pid_4821_luid_0x0_phys_0", 1048576),
        ))
        collected = _collector(fake_executor).collect(CycleContext(top_n=1))
        (record,) = collected.data.processes
        assert record.pid == 4821
        assert record.utilization == 20.0
        assert record.memory_used == 1048576
        assert record.engine_type is EngineType.COMPUTE
        assert record.name == "proc4821"

    def test_memory_counters_failing_keeps_processes(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on(STRUCTURED_QUERY, ROW_3070)
        fake_executor.on_script(ENGINE_COUNTER_SCRIPT, _counter_json(("pid_1_engtype_3D", 5.0)))
        collected = _collector(fake_executor).collect(CycleContext())
        assert [p.memory_used for p in collected.data.processes] == [0]

    def test_processes_disabled_by_option(self, fake_executor: FakeExecutor) -> None:
        fake_executor.on(STRUCTURED_QUERY, ROW_3070)
        collected = _collector(fake_executor).collect(CycleContext(options={"show_processes": False}))
        assert collected.data.processes == ()
        assert fake_executor.count_script(ENGINE_COUNTER_SCRIPT) == 0
