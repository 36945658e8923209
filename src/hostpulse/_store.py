"""Versioned per-domain snapshot store with lock-free reads."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable

from hostpulse._types import Collected, Domain, Snapshot


class VersionedCell:
    """Holds the latest snapshot for one domain.

    Publishing takes a writer lock so versions stay strictly increasing;
    reading is a single attribute load, which CPython performs atomically,
    so readers always see either the old or the new snapshot in full.
    """

    def __init__(self, domain: Domain) -> None:
        self._domain = domain
        self._lock = threading.Lock()
        self._snapshot: Snapshot | None = None
        self._version = 0

    def publish(self, collected: Collected, produced_at: float) -> Snapshot:
        with self._lock:
            version = self._version + 1
            snapshot = Snapshot(
                domain=self._domain,
                version=version,
                produced_at=produced_at,
                data=collected.data,
                degraded=collected.degraded,
                source=collected.source,
                note=collected.note,
            )
            self._snapshot = snapshot
            self._version = version
        return snapshot

    def read(self) -> Snapshot | None:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version


class SnapshotStore:
    """One ``VersionedCell`` per domain; version 0 means never published."""

    def __init__(
        self,
        domains: Iterable[Domain] = tuple(Domain),
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cells = {domain: VersionedCell(domain) for domain in domains}
        self._clock = clock

    def publish(self, domain: Domain, collected: Collected) -> Snapshot:
        return self._cell(domain).publish(collected, self._clock())

    def read(self, domain: Domain) -> Snapshot | None:
        return self._cell(domain).read()

    def version(self, domain: Domain) -> int:
        return self._cell(domain).version

    def read_all(self) -> dict[Domain, Snapshot]:
        snapshots = {}
        for domain, cell in self._cells.items():
            snapshot = cell.read()
            if snapshot is not None:
                snapshots[domain] = snapshot
        return snapshots

    @property
    def domains(self) -> tuple[Domain, ...]:
        return tuple(self._cells)

    def _cell(self, domain: Domain) -> VersionedCell:
        try:
            return self._cells[domain]
        except KeyError:
            raise KeyError(f"Domain {domain.value} is not tracked by this store") from None
