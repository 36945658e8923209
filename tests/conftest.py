"""Shared fixtures: a scripted executor standing in for real subprocesses."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from hostpulse._errors import ExecutionError, ExecutionErrorKind
from hostpulse._executor import ExecutionResult, Query, powershell

Response = Any


class FakeExecutor:
    """Answers queries from a table keyed by ``Query.key``.

    Unregistered queries fail with ``NOT_FOUND``, like a missing tool.
    """

    def __init__(self) -> None:
        self.responses: dict[str, Response] = {}
        self.calls: list[Query] = []
        self._lock = threading.Lock()

    def on(self, query: Query, response: Response) -> None:
        self.responses[query.key] = response

    def on_script(self, script: str, response: Response) -> None:
        self.on(powershell(script), response)

    def count(self, query: Query) -> int:
        with self._lock:
            return sum(1 for q in self.calls if q.key == query.key)

    def count_script(self, script: str) -> int:
        return self.count(powershell(script))

    def execute(self, query: Query, timeout_s: float | None = None) -> ExecutionResult:
        with self._lock:
            self.calls.append(query)
        response = self.responses.get(query.key)
        if response is None:
            return ExecutionResult(
                error=ExecutionError(ExecutionErrorKind.NOT_FOUND, f"{query.program} not scripted")
            )
        if callable(response):
            response = response()
        if isinstance(response, ExecutionResult):
            return response
        if isinstance(response, ExecutionError):
            return ExecutionResult(error=response)
        return ExecutionResult(text=response)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()
