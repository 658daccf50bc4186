"""Apache provider: configuration syntax test and graceful reload."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .process import ExternalToolError, combined_output, run_process

SYNTAX_OK_MARKER = "Syntax OK"

_MISSING_CERTIFICATE_RE = re.compile(
    r"SSLCertificate(?:Key|Chain)?File.*(?:does not exist|is empty|No such file)",
    re.IGNORECASE,
)


class ApacheError(ExternalToolError):
    """Raised when an Apache command fails."""


@dataclass(slots=True)
class ConfigTestResult:
    """Outcome of ``apachectl configtest``."""

    ok: bool
    output: str
    returncode: int

    @property
    def missing_certificate(self) -> bool:
        """Return True when the failure names a missing certificate file."""
        return bool(_MISSING_CERTIFICATE_RE.search(self.output))


@dataclass(slots=True)
class ApacheProvider:
    """Run the configured Apache test and reload commands."""

    configtest_command: Sequence[str] = ("apachectl", "configtest")
    reload_command: Sequence[str] = ("sudo", "systemctl", "reload", "httpd")
    timeout: float | None = 120.0

    def test_config(self) -> ConfigTestResult:
        """Run the syntax test; success is the marker in the output, not the exit code."""
        result = self._run_command(self.configtest_command)
        output = combined_output(result)
        return ConfigTestResult(
            ok=SYNTAX_OK_MARKER in output,
            output=output,
            returncode=result.returncode,
        )

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload Apache, raising :class:`ApacheError` on a non-zero exit."""
        result = self._run_command(self.reload_command)
        if result.returncode != 0:
            output = combined_output(result)
            message = output.strip() or "no output"
            raise ApacheError(
                f"{' '.join(self.reload_command)} failed (exit {result.returncode}): {message}",
                output=output,
            )
        return result

    # ------------------------------------------------------------------
    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run_process(args, timeout=self.timeout)


__all__ = ["ApacheError", "ApacheProvider", "ConfigTestResult", "SYNTAX_OK_MARKER"]
