"""Shared subprocess handling for the external tools vhostctl drives."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence

LOGGER = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 1024 * 1024
TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127


class ExternalToolError(RuntimeError):
    """Base class for failures reported by an external command."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def cap_output(text: str | None) -> str:
    """Trim *text* to the retained output limit, keeping the tail."""
    if not text:
        return ""
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[-MAX_OUTPUT_CHARS:]


def combined_output(result: subprocess.CompletedProcess[str]) -> str:
    """Return stdout and stderr of *result* joined, capped."""
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return cap_output("\n".join(part for part in (stdout, stderr) if part))


def run_process(args: Sequence[str], *, timeout: float | None) -> subprocess.CompletedProcess[str]:
    """Run *args* and return the completed process without raising on exit status.

    A missing executable or an expired *timeout* is reported as a completed
    process with a 127 or 124 exit status so callers handle every failure the
    same way.
    """
    command = list(args)
    LOGGER.debug("Running %s", " ".join(command))
    try:
        result = subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(
            command,
            returncode=NOT_FOUND_RETURNCODE,
            stdout="",
            stderr=f"{command[0]} not found: {exc}",
        )
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout or ""
        if isinstance(partial, bytes):
            partial = partial.decode("utf-8", errors="replace")
        return subprocess.CompletedProcess(
            command,
            returncode=TIMEOUT_RETURNCODE,
            stdout=cap_output(partial),
            stderr=f"{command[0]} timed out after {timeout}s",
        )
    return subprocess.CompletedProcess(
        command,
        returncode=result.returncode,
        stdout=cap_output(result.stdout),
        stderr=cap_output(result.stderr),
    )


__all__ = [
    "ExternalToolError",
    "MAX_OUTPUT_CHARS",
    "cap_output",
    "combined_output",
    "run_process",
]
