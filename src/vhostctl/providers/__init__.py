"""Provider interfaces for vhostctl."""
from __future__ import annotations

from .apache import ApacheError, ApacheProvider, ConfigTestResult
from .certbot import CertbotError, CertbotProvider
from .privileged import (
    FileOperationError,
    LocalFileOps,
    PrivilegedFileOps,
    SudoFileOps,
    build_file_ops,
)
from .process import ExternalToolError

__all__ = [
    "ApacheError",
    "ApacheProvider",
    "CertbotError",
    "CertbotProvider",
    "ConfigTestResult",
    "ExternalToolError",
    "FileOperationError",
    "LocalFileOps",
    "PrivilegedFileOps",
    "SudoFileOps",
    "build_file_ops",
]
