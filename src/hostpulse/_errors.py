"""Error taxonomy for the collection pipeline."""

from __future__ import annotations

import enum


class HostPulseError(Exception):
    """Base class for every error raised by hostpulse."""


class ExecutionErrorKind(enum.Enum):
    """Why an external query did not produce usable output."""

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    ENCODING = "encoding"


class ExecutionError(HostPulseError):
    """An external query failed at the process level."""

    def __init__(
        self,
        kind: ExecutionErrorKind,
        message: str = "",
        *,
        exit_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.exit_code = exit_code
        self.message = message
        detail = f"{kind.value}"
        if exit_code is not None:
            detail += f" (exit {exit_code})"
        if message:
            detail += f": {message}"
        super().__init__(detail)


class ParseError(HostPulseError):
    """Query output had an unexpected structural shape."""


class ConfigError(HostPulseError):
    """The configuration document is unreadable or invalid."""
