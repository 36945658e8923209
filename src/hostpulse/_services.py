"""Services domain: Windows service listing and control."""

from __future__ import annotations

import logging
import re
from typing import Any

import psutil

from hostpulse._cache import TTLCache
from hostpulse._collector import CycleContext, FallbackCollector
from hostpulse._errors import ExecutionError, ExecutionErrorKind
from hostpulse._executor import Executor, powershell
from hostpulse._parsing import as_str, parse_json_rows
from hostpulse._types import Collected, Domain, ServiceData, ServiceEntry, ServiceStartType, ServiceStatus

logger = logging.getLogger("hostpulse.services")

SERVICES_SCRIPT = (
    "Get-Service | Select-Object Name, DisplayName, "
    "@{Name='Status';Expression={[string]$_.Status}}, "
    "@{Name='StartType';Expression={[string]$_.StartType}}, "
    "CanStop, CanPauseAndContinue, "
    "@{Name='DependentServices';Expression={($_.DependentServices | ForEach-Object { $_.Name }) -join ','}} "
    "| ConvertTo-Json -Compress"
)

# ServiceControllerStatus / ServiceStartMode numeric renderings.
_STATUS_CODES = {
    1: ServiceStatus.STOPPED,
    2: ServiceStatus.START_PENDING,
    3: ServiceStatus.STOP_PENDING,
    4: ServiceStatus.RUNNING,
    5: ServiceStatus.CONTINUE_PENDING,
    6: ServiceStatus.PAUSE_PENDING,
    7: ServiceStatus.PAUSED,
}
_START_TYPE_CODES = {
    0: ServiceStartType.BOOT,
    1: ServiceStartType.SYSTEM,
    2: ServiceStartType.AUTOMATIC,
    3: ServiceStartType.MANUAL,
    4: ServiceStartType.DISABLED,
}

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.\-$@ ]{1,256}$")

_SETTABLE_START_TYPES = (
    ServiceStartType.AUTOMATIC,
    ServiceStartType.MANUAL,
    ServiceStartType.DISABLED,
    ServiceStartType.AUTOMATIC_DELAYED_START,
)


def _normalise(token: str) -> str:
    return token.replace("_", "").replace(" ", "").lower()


def _lookup(value: Any, codes: dict[int, Any], enum_type: Any, unknown: Any) -> Any:
    if isinstance(value, bool):
        return unknown
    if isinstance(value, int):
        return codes.get(value, unknown)
    if isinstance(value, str):
        token = _normalise(value)
        if token.isdigit():
            return codes.get(int(token), unknown)
        for member in enum_type:
            if _normalise(member.value) == token:
                return member
    return unknown


def parse_status(value: Any) -> ServiceStatus:
    return _lookup(value, _STATUS_CODES, ServiceStatus, ServiceStatus.UNKNOWN)


def parse_start_type(value: Any) -> ServiceStartType:
    return _lookup(value, _START_TYPE_CODES, ServiceStartType, ServiceStartType.UNKNOWN)


def _dependents(value: Any) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(as_str(v) for v in value if as_str(v))
    return tuple(part.strip() for part in as_str(value).split(",") if part.strip())


def parse_services(text: str) -> list[ServiceEntry]:
    services = []
    for row in parse_json_rows(text):
        name = as_str(row.get("Name"))
        if not name:
            continue
        services.append(ServiceEntry(
            name=name,
            display_name=as_str(row.get("DisplayName"), name) or name,
            status=parse_status(row.get("Status")),
            start_type=parse_start_type(row.get("StartType")),
            description=as_str(row.get("Description")) or None,
            can_stop=row.get("CanStop") is True,
            can_pause_and_continue=row.get("CanPauseAndContinue") is True,
            dependent_services=_dependents(row.get("DependentServices")),
        ))
    services.sort(key=lambda s: s.name.lower())
    return services


class ServiceCollector(FallbackCollector):
    domain = Domain.SERVICES

    def _collect_primary(self, context: CycleContext) -> Collected:
        text = self._run(self._ps(SERVICES_SCRIPT, context), context).unwrap()
        return Collected(data=ServiceData(services=tuple(parse_services(text))), source="get-service")

    def _collect_fallback(self, context: CycleContext) -> ServiceData:
        service_iter = getattr(psutil, "win_service_iter", None)
        if service_iter is None:
            raise ExecutionError(ExecutionErrorKind.NOT_FOUND, "service enumeration requires Windows")
        services = []
        for svc in service_iter():
            try:
                info = svc.as_dict()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            services.append(ServiceEntry(
                name=info["name"],
                display_name=info.get("display_name") or info["name"],
                status=parse_status(info.get("status")),
                start_type=parse_start_type(info.get("start_type")),
                description=info.get("description") or None,
            ))
        services.sort(key=lambda s: s.name.lower())
        return ServiceData(services=tuple(services))


class ServiceController:
    """Issues service control cmdlets and invalidates the cached listing."""

    def __init__(
        self,
        executor: Executor,
        cache: TTLCache,
        *,
        executable: str = "powershell",
        timeout_s: float = 30.0,
    ) -> None:
        self._executor = executor
        self._cache = cache
        self._executable = executable
        self._timeout_s = timeout_s

    def start(self, name: str) -> None:
        self._control(f"Start-Service -Name '{_checked(name)}'")

    def stop(self, name: str) -> None:
        self._control(f"Stop-Service -Name '{_checked(name)}'")

    def restart(self, name: str) -> None:
        self._control(f"Restart-Service -Name '{_checked(name)}'")

    def set_startup_type(self, name: str, start_type: ServiceStartType) -> None:
        if start_type not in _SETTABLE_START_TYPES:
            raise ValueError(f"Cannot set startup type to {start_type.value}")
        self._control(f"Set-Service -Name '{_checked(name)}' -StartupType {start_type.value}")

    def _control(self, script: str) -> None:
        logger.info("Service control: %s", script)
        try:
            self._executor.execute(powershell(script, self._executable), self._timeout_s).unwrap()
        finally:
            self._cache.clear(powershell(SERVICES_SCRIPT, self._executable))


def _checked(name: str) -> str:
    if not _SAFE_NAME.match(name):
        raise ValueError(f"Invalid service name: {name!r}")
    return name
