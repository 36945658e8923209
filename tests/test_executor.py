"""Tests for the command executor (subprocess is monkeypatched)."""

from __future__ import annotations

import subprocess
from typing import Any

import pytest

from hostpulse._errors import ExecutionError, ExecutionErrorKind
from hostpulse._executor import CommandExecutor, ExecutionResult, Query, nvidia_smi, powershell


def _completed(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> subprocess.CompletedProcess[bytes]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestQuery:
    def test_powershell_is_non_interactive(self) -> None:
        q = powershell("  Get-Date  ")
        assert q.argv == ["powershell", "-NoProfile", "-NonInteractive", "-Command", "Get-Date"]

    def test_powershell_custom_executable(self) -> None:
        assert powershell("Get-Date", "pwsh").program == "pwsh"

    def test_key_is_exact_text(self) -> None:
        assert nvidia_smi("-L").key == "nvidia-smi -L"
        assert nvidia_smi("-L").key != nvidia_smi("-q").key

    def test_equal_queries_share_key(self) -> None:
        assert Query("a", ("b c",)).key == Query("a", ("b c",)).key
        assert str(Query("a", ("b c",))) == "a 'b c'"


class TestExecutionResult:
    def test_unwrap_text(self) -> None:
        assert ExecutionResult(text="x").unwrap() == "x"

    def test_unwrap_raises_error(self) -> None:
        err = ExecutionError(ExecutionErrorKind.TIMEOUT, "slow")
        with pytest.raises(ExecutionError) as info:
            ExecutionResult(error=err).unwrap()
        assert info.value.kind is ExecutionErrorKind.TIMEOUT

    def test_as_degraded_keeps_text(self) -> None:
        result = ExecutionResult(text="x").as_degraded()
        assert result.degraded
        assert result.text == "x"


class TestCommandExecutor:
    def test_success_returns_stdout(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: dict[str, Any] = {}

        def fake_run(argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            seen["argv"] = argv
            seen.update(kwargs)
            return _completed(stdout=b"hello\n")

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = CommandExecutor(default_timeout_s=7.0).execute(nvidia_smi("-L"))
        assert result.ok
        assert result.text == "hello\n"
        assert seen["argv"] == ["nvidia-smi", "-L"]
        assert seen["timeout"] == 7.0
        assert seen["check"] is False

    def test_explicit_timeout_overrides_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: dict[str, Any] = {}

        def fake_run(argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            seen.update(kwargs)
            return _completed()

        monkeypatch.setattr(subprocess, "run", fake_run)
        CommandExecutor().execute(nvidia_smi(), timeout_s=1.5)
        assert seen["timeout"] == 1.5

    def test_strips_byte_order_mark(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            subprocess, "run", lambda argv, **kw: _completed(stdout="\ufeff[1]".encode())
        )
        assert CommandExecutor().execute(powershell("x")).text == "[1]"

    def test_missing_tool_is_not_found(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fake_run(argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            raise FileNotFoundError(argv[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = CommandExecutor().execute(nvidia_smi())
        assert result.error is not None
        assert result.error.kind is ExecutionErrorKind.NOT_FOUND

    def test_permission_error_is_not_found(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fake_run(argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            raise PermissionError("denied")

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = CommandExecutor().execute(nvidia_smi())
        assert result.error is not None
        assert result.error.kind is ExecutionErrorKind.NOT_FOUND

    def test_timeout(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fake_run(argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = CommandExecutor().execute(powershell("Start-Sleep 100"), timeout_s=0.1)
        assert result.error is not None
        assert result.error.kind is ExecutionErrorKind.TIMEOUT

    def test_non_zero_exit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            subprocess, "run", lambda argv, **kw: _completed(returncode=9, stderr=b"NVIDIA-SMI has failed")
        )
        result = CommandExecutor().execute(nvidia_smi())
        assert result.error is not None
        assert result.error.kind is ExecutionErrorKind.NON_ZERO_EXIT
        assert result.error.exit_code == 9
        assert "NVIDIA-SMI has failed" in str(result.error)

    def test_undecodable_output(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(subprocess, "run", lambda argv, **kw: _completed(stdout=b"\xff\xfe\xfa"))
        result = CommandExecutor().execute(nvidia_smi())
        assert result.error is not None
        assert result.error.kind is ExecutionErrorKind.ENCODING
