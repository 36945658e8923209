"""Disk domain: fixed volumes and physical disk health."""

from __future__ import annotations

import logging

import psutil

from hostpulse._collector import CycleContext, FallbackCollector
from hostpulse._errors import ExecutionError, ParseError
from hostpulse._parsing import as_int, as_str, parse_json_rows
from hostpulse._types import Collected, DiskData, Domain, PhysicalDiskInfo, VolumeInfo

logger = logging.getLogger("hostpulse.disk")

VOLUME_SCRIPT = (
    "Get-CimInstance Win32_LogicalDisk -Filter 'DriveType=3' | Select-Object "
    "DeviceID, VolumeName, FileSystem, Size, FreeSpace | ConvertTo-Json -Compress"
)
PHYSICAL_SCRIPT = (
    "Get-PhysicalDisk | Select-Object DeviceId, FriendlyName, "
    "@{Name='MediaType';Expression={[string]$_.MediaType}}, "
    "@{Name='HealthStatus';Expression={[string]$_.HealthStatus}}, Size | ConvertTo-Json -Compress"
)


def parse_volumes(text: str) -> list[VolumeInfo]:
    volumes = []
    for row in parse_json_rows(text):
        letter = as_str(row.get("DeviceID"))
        if not letter:
            raise ParseError(f"Logical disk without DeviceID: {row!r}")
        volumes.append(VolumeInfo(
            letter=letter,
            label=as_str(row.get("VolumeName")),
            file_system=as_str(row.get("FileSystem")),
            total=as_int(row.get("Size"), 0),
            free=as_int(row.get("FreeSpace"), 0),
        ))
    volumes.sort(key=lambda v: v.letter.upper())
    return volumes


def parse_physical_disks(text: str) -> list[PhysicalDiskInfo]:
    disks = [
        PhysicalDiskInfo(
            index=as_int(row.get("DeviceId"), 0),
            name=as_str(row.get("FriendlyName"), "Unknown"),
            media_type=as_str(row.get("MediaType"), "Unspecified"),
            health=as_str(row.get("HealthStatus"), "Unknown"),
            size=as_int(row.get("Size"), 0),
        )
        for row in parse_json_rows(text)
    ]
    disks.sort(key=lambda d: d.index)
    return disks


class DiskCollector(FallbackCollector):
    domain = Domain.DISK

    def _collect_primary(self, context: CycleContext) -> Collected:
        volumes = parse_volumes(self._run(self._ps(VOLUME_SCRIPT, context), context).unwrap())
        try:
            physical = parse_physical_disks(
                self._run(self._ps(PHYSICAL_SCRIPT, context), context).unwrap()
            )
        except (ExecutionError, ParseError) as exc:
            # Get-PhysicalDisk needs the Storage module and often elevation.
            logger.info("Physical disk query unavailable: %s", exc)
            physical = []
        return Collected(
            data=DiskData(volumes=tuple(volumes), physical_disks=tuple(physical)),
            source="cim",
        )

    def _collect_fallback(self, context: CycleContext) -> DiskData:
        volumes = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                continue
            volumes.append(VolumeInfo(
                letter=part.device,
                label=part.mountpoint,
                file_system=part.fstype,
                total=int(usage.total),
                free=int(usage.free),
            ))
        volumes.sort(key=lambda v: v.letter.upper())
        return DiskData(volumes=tuple(volumes))
