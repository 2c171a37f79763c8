"""Bounded execution of external probe commands."""

import logging
import subprocess

from dashtop.errors import ProbeError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 0.8


def run_command(args: list[str], timeout: float = DEFAULT_TIMEOUT) -> str:
    """
    Run a command and return its standard output.

    The child is killed when the timeout expires. There are no retries.
    Bytes that are not valid UTF-8 are replaced rather than raised.

    Raises:
        ProbeError: The command is missing, exited non-zero or timed out.
    """
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ProbeError(f"{args[0]}: not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise ProbeError(f"{args[0]}: timed out after {timeout:.1f}s") from exc
    except OSError as exc:
        raise ProbeError(f"{args[0]}: {exc}") from exc

    if result.returncode != 0:
        raise ProbeError(f"{args[0]} exit {result.returncode}")
    return result.stdout


def try_command(args: list[str], timeout: float = DEFAULT_TIMEOUT) -> str | None:
    """Run a command, returning None instead of raising on failure."""
    try:
        return run_command(args, timeout)
    except ProbeError as exc:
        log.debug("probe failed: %s", exc)
        return None
