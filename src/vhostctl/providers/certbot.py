"""Certbot provider: certificate issuance and renewal."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .process import ExternalToolError, combined_output, run_process


class CertbotError(ExternalToolError):
    """Raised when certbot fails to issue or renew a certificate."""


@dataclass(slots=True)
class CertbotProvider:
    """Invoke certbot non-interactively for a single domain."""

    command: Sequence[str] = ("sudo", "certbot")
    timeout: float | None = 120.0

    def obtain(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Issue a certificate for *domain* and let certbot wire it into Apache."""
        return self._certbot(
            [
                "--apache",
                "-d",
                domain,
                "--non-interactive",
                "--agree-tos",
                "--redirect",
            ],
            action="obtain",
        )

    def renew(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Renew the certificate lineage named after *domain*."""
        return self._certbot(["renew", "--cert-name", domain], action="renew")

    # ------------------------------------------------------------------
    def _certbot(self, args: Sequence[str], *, action: str) -> subprocess.CompletedProcess[str]:
        result = self._run_command([*self.command, *args])
        if result.returncode != 0:
            output = combined_output(result)
            message = output.strip() or "no output"
            raise CertbotError(
                f"certbot {action} failed (exit {result.returncode}): {message}",
                output=output,
            )
        return result

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run_process(args, timeout=self.timeout)


__all__ = ["CertbotError", "CertbotProvider"]
