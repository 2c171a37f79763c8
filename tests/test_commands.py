"""Tests for the external command runner."""

import subprocess
import sys

import pytest

from dashtop.commands import run_command, try_command
from dashtop.errors import DashtopError, ProbeError


def test_missing_command_raises_probe_error():
    """Test a missing executable raises ProbeError."""
    with pytest.raises(ProbeError, match="not installed"):
        run_command(["definitely-not-a-real-dashtop-tool"])


def test_probe_error_is_dashtop_error():
    """Test the error hierarchy."""
    assert issubclass(ProbeError, DashtopError)


def test_nonzero_exit(monkeypatch):
    """Test a non-zero exit raises ProbeError."""

    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(args, 3, stdout="", stderr="bad")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(ProbeError, match="exit 3"):
        run_command(["lspci"])


def test_timeout(monkeypatch):
    """Test a timeout raises ProbeError."""

    def fake_run(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(ProbeError, match="timed out"):
        run_command(["nvidia-smi"], timeout=0.2)


def test_returns_stdout():
    """Test standard output is returned."""
    assert run_command([sys.executable, "-c", "print('ok')"], timeout=10).strip() == "ok"


def test_try_command_swallows_failure():
    """Test try_command returns None instead of raising."""
    assert try_command(["definitely-not-a-real-dashtop-tool"]) is None


def test_undecodable_output_is_replaced():
    """Test invalid UTF-8 in the output does not escape as a decode error."""
    script = "import sys; sys.stdout.buffer.write(b'0, GPU \\xff, 1, 2\\n')"

    output = try_command([sys.executable, "-c", script], timeout=10)

    assert output is not None
    assert output.startswith("0, GPU \ufffd")
