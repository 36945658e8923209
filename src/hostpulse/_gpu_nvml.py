"""NVIDIA pynvml inventory, the first fallback when nvidia-smi cannot run."""

from __future__ import annotations

import logging
import warnings

from hostpulse._errors import ExecutionError, ExecutionErrorKind
from hostpulse._types import GpuDeviceRecord

logger = logging.getLogger("hostpulse.gpu.nvml")

# pynvml is optional at runtime, the inventory is skipped when unavailable.
warnings.filterwarnings("ignore", category=FutureWarning, message=".*pynvml.*deprecated.*")
try:
    import pynvml

    _HAS_PYNVML = True
except ImportError:
    pynvml = None  # type: ignore[assignment,unused-ignore]
    _HAS_PYNVML = False


def _text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class NvmlInventory:
    """Static device facts (name, driver, memory) read through NVML.

    Dynamic telemetry is left unknown and ``available`` is False: this is a
    lower-fidelity stand-in, not a replacement for the query tool.
    """

    source = "nvml"

    def __init__(self) -> None:
        if not _HAS_PYNVML:
            raise RuntimeError("pynvml is not installed")

    def read(self) -> list[GpuDeviceRecord]:
        assert pynvml is not None
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            raise ExecutionError(ExecutionErrorKind.NOT_FOUND, f"NVML init failed: {exc}") from exc
        try:
            driver = _text(pynvml.nvmlSystemGetDriverVersion())
            devices: list[GpuDeviceRecord] = []
            for i in range(pynvml.nvmlDeviceGetCount()):
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                mem_info = pynvml.nvmlDeviceGetMemoryInfo(handle)
                devices.append(GpuDeviceRecord(
                    index=i,
                    name=_text(pynvml.nvmlDeviceGetName(handle)),
                    memory_total=int(mem_info.total),
                    driver_version=driver,
                    available=False,
                ))
            return devices
        except pynvml.NVMLError as exc:
            raise ExecutionError(ExecutionErrorKind.NOT_FOUND, f"NVML query failed: {exc}") from exc
        finally:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError:
                logger.debug("nvmlShutdown failed", exc_info=True)


def create_nvml_inventory() -> NvmlInventory | None:
    """Factory: an ``NvmlInventory`` if pynvml is importable, else None."""
    if not _HAS_PYNVML:
        logger.info("pynvml not available, NVML inventory disabled")
        return None
    return NvmlInventory()
