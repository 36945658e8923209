"""External query execution: spawn, capture stdout, enforce a timeout."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass, field, replace
from typing import Protocol

from hostpulse._errors import ExecutionError, ExecutionErrorKind

logger = logging.getLogger("hostpulse.executor")

_BOM = "\ufeff"


@dataclass(frozen=True)
class Query:
    """An external command. Identity is its exact textual form."""

    program: str
    args: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def key(self) -> str:
        return shlex.join(self.argv)

    def __str__(self) -> str:
        return self.key


def powershell(script: str, executable: str = "powershell") -> Query:
    """Build a non-interactive PowerShell query for ``script``."""
    return Query(executable, ("-NoProfile", "-NonInteractive", "-Command", script.strip()))


def nvidia_smi(*args: str) -> Query:
    return Query("nvidia-smi", tuple(args))


@dataclass(frozen=True)
class ExecutionResult:
    """Either raw text or the typed error that prevented it."""

    text: str | None = None
    error: ExecutionError | None = None
    degraded: bool = False
    produced_at: float = field(default_factory=time.monotonic)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> str:
        """Return the text or raise the stored ``ExecutionError``."""
        if self.error is not None:
            raise self.error
        return self.text or ""

    def as_degraded(self) -> ExecutionResult:
        return replace(self, degraded=True)


class Executor(Protocol):
    """Anything that can run a ``Query``; real or fake."""

    def execute(self, query: Query, timeout_s: float | None = None) -> ExecutionResult: ...


class CommandExecutor:
    """Runs queries as short-lived subprocesses.

    Tool absence, timeouts, non-zero exits and undecodable output are all
    returned as ``ExecutionResult.error``; nothing here raises for them.
    """

    def __init__(self, *, default_timeout_s: float = 10.0) -> None:
        self._default_timeout_s = default_timeout_s

    def execute(self, query: Query, timeout_s: float | None = None) -> ExecutionResult:
        timeout = self._default_timeout_s if timeout_s is None else timeout_s
        try:
            completed = subprocess.run(
                query.argv,  # noqa: S603
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            return _failure(ExecutionErrorKind.NOT_FOUND, f"{query.program} not found")
        except subprocess.TimeoutExpired:
            # subprocess.run kills the child before re-raising.
            return _failure(ExecutionErrorKind.TIMEOUT, f"{query.program} exceeded {timeout:.1f}s")
        except OSError as exc:
            return _failure(ExecutionErrorKind.NOT_FOUND, str(exc))

        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            return _failure(
                ExecutionErrorKind.NON_ZERO_EXIT,
                stderr[:200],
                exit_code=completed.returncode,
            )

        try:
            text = completed.stdout.decode("utf-8")
        except UnicodeDecodeError as exc:
            return _failure(ExecutionErrorKind.ENCODING, str(exc))

        return ExecutionResult(text=text.lstrip(_BOM))


def _failure(
    kind: ExecutionErrorKind, message: str, *, exit_code: int | None = None
) -> ExecutionResult:
    error = ExecutionError(kind, message, exit_code=exit_code)
    logger.debug("Query failed: %s", error)
    return ExecutionResult(error=error)
