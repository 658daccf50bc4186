"""Privileged file operations used to commit configuration changes.

The mutation engine only depends on the three verbs of
:class:`PrivilegedFileOps`. :class:`SudoFileOps` shells out through ``sudo``
for hosts where vhostctl runs unprivileged; :class:`LocalFileOps` works on the
filesystem directly when the process already owns the files.
"""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..config import PrivilegedConfig
from .process import ExternalToolError, combined_output, run_process


class FileOperationError(ExternalToolError):
    """Raised when a copy, chmod or delete fails."""


class PrivilegedFileOps(Protocol):
    """Copy, permission-set and delete, the only writes the engine performs."""

    def copy(self, source: Path, destination: Path) -> None:
        """Copy *source* over *destination*."""

    def chmod(self, path: Path, mode: int) -> None:
        """Set the permission bits of *path* to *mode*."""

    def delete(self, path: Path) -> None:
        """Remove *path*; a missing file is not an error."""


@dataclass(slots=True)
class SudoFileOps:
    """Run ``cp``/``chmod``/``rm`` through sudo."""

    sudo_bin: str = "sudo"
    timeout: float | None = 120.0

    def copy(self, source: Path, destination: Path) -> None:
        """Copy *source* over *destination* as root."""
        self._run([self.sudo_bin, "cp", str(source), str(destination)], "copy")

    def chmod(self, path: Path, mode: int) -> None:
        """Set *mode* on *path* as root."""
        self._run([self.sudo_bin, "chmod", f"{mode:o}", str(path)], "chmod")

    def delete(self, path: Path) -> None:
        """Remove *path* as root."""
        self._run([self.sudo_bin, "rm", "-f", str(path)], "delete")

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str], verb: str) -> None:
        result = self._run_command(args)
        if result.returncode != 0:
            output = combined_output(result)
            message = output.strip() or "no output"
            raise FileOperationError(
                f"{verb} failed (exit {result.returncode}): {message}",
                output=output,
            )

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run_process(args, timeout=self.timeout)


class LocalFileOps:
    """Perform file operations in-process."""

    def copy(self, source: Path, destination: Path) -> None:
        """Copy *source* over *destination*."""
        try:
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise FileOperationError(f"copy failed: {exc}") from exc

    def chmod(self, path: Path, mode: int) -> None:
        """Set *mode* on *path*."""
        try:
            Path(path).chmod(mode)
        except OSError as exc:
            raise FileOperationError(f"chmod failed: {exc}") from exc

    def delete(self, path: Path) -> None:
        """Remove *path* if present."""
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            raise FileOperationError(f"delete failed: {exc}") from exc


def build_file_ops(config: PrivilegedConfig, *, timeout: float | None = None) -> PrivilegedFileOps:
    """Return the file operations implementation selected by *config*."""
    if config.mode == "local":
        return LocalFileOps()
    return SudoFileOps(sudo_bin=config.sudo_bin, timeout=timeout)


__all__ = [
    "FileOperationError",
    "LocalFileOps",
    "PrivilegedFileOps",
    "SudoFileOps",
    "build_file_ops",
]
