"""Shared collector plumbing: per-cycle context, cached queries, fallback."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from hostpulse._cache import ErrorPolicy, TTLCache
from hostpulse._config import MonitorConfig
from hostpulse._errors import ExecutionError, ParseError
from hostpulse._executor import ExecutionResult, Executor, Query, powershell
from hostpulse._types import Collected, Domain

logger = logging.getLogger("hostpulse.collector")


@dataclass(frozen=True)
class CycleContext:
    """Settings frozen for the duration of one collection cycle."""

    cache_ttl_s: float = 2.0
    timeout_s: float = 10.0
    use_cache: bool = True
    bypass_cache: bool = False
    top_n: int = 10
    powershell_executable: str = "powershell"
    options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_config(
        cls, config: MonitorConfig, domain: Domain, *, bypass_cache: bool = False
    ) -> CycleContext:
        settings = config.domain(domain)
        return cls(
            cache_ttl_s=config.cache_ttl_s(domain),
            timeout_s=config.powershell.timeout_seconds,
            use_cache=config.powershell.use_cache,
            bypass_cache=bypass_cache,
            top_n=settings.top_processes_count,
            powershell_executable=config.powershell.executable,
            options=settings.options,
        )

    @property
    def effective_ttl_s(self) -> float:
        if self.bypass_cache or not self.use_cache:
            return 0.0
        return self.cache_ttl_s

    def truncate(self, items: list[Any]) -> tuple[Any, ...]:
        if self.top_n > 0:
            return tuple(items[: self.top_n])
        return tuple(items)


@runtime_checkable
class Collector(Protocol):
    """One telemetry domain's data source."""

    domain: Domain

    def collect(self, context: CycleContext) -> Collected: ...


class QueryCollector:
    """Base for collectors that run cached external queries."""

    domain: Domain

    def __init__(self, executor: Executor, cache: TTLCache) -> None:
        self._executor = executor
        self._cache = cache

    def _run(
        self,
        query: Query,
        context: CycleContext,
        *,
        on_error: ErrorPolicy = ErrorPolicy.PROPAGATE,
    ) -> ExecutionResult:
        return self._cache.get_or_execute(
            query,
            context.effective_ttl_s,
            self._executor,
            on_error=on_error,
            timeout_s=context.timeout_s,
        )

    @staticmethod
    def _ps(script: str, context: CycleContext) -> Query:
        return powershell(script, context.powershell_executable)


class FallbackCollector(QueryCollector, ABC):
    """Query-backed collector with a psutil fallback.

    A process- or parse-level failure of the primary source switches to the
    fallback and marks the result degraded; a fallback failure propagates
    to the scheduler, which keeps the previous snapshot.
    """

    fallback_source = "psutil"

    def collect(self, context: CycleContext) -> Collected:
        try:
            return self._collect_primary(context)
        except (ExecutionError, ParseError) as exc:
            logger.warning(
                "%s primary source failed, falling back to %s: %s",
                self.domain.value, self.fallback_source, exc,
            )
            data = self._collect_fallback(context)
            return Collected(data=data, degraded=True, source=self.fallback_source, note=str(exc))

    @abstractmethod
    def _collect_primary(self, context: CycleContext) -> Collected: ...

    @abstractmethod
    def _collect_fallback(self, context: CycleContext) -> Any: ...
