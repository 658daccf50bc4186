"""Input checks applied before any configuration file is touched."""
from __future__ import annotations

import re
from pathlib import PurePosixPath

MIN_PORT = 1024
MAX_PORT = 65535

FORBIDDEN_ROOTS = (
    "/etc",
    "/root",
    "/sys",
    "/proc",
    "/dev",
    "/boot",
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
)

_DOMAIN_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$",
    re.IGNORECASE,
)
_MAX_DOMAIN_LENGTH = 253


class ValidationError(ValueError):
    """Raised when operator input is rejected."""

    def __init__(self, field: str, detail: str) -> None:
        super().__init__(f"validation failed: {field}: {detail}")
        self.field = field
        self.detail = detail


def validate_domain(value: str) -> str:
    """Return *value* stripped when it is a syntactically valid domain name."""
    domain = (value or "").strip()
    if not domain:
        raise ValidationError("domain", "must not be empty")
    if len(domain) > _MAX_DOMAIN_LENGTH:
        raise ValidationError("domain", f"longer than {_MAX_DOMAIN_LENGTH} characters")
    if not _DOMAIN_RE.match(domain):
        raise ValidationError("domain", f"'{domain}' is not a valid domain name")
    return domain


def validate_port(value: object) -> int:
    """Return *value* as an int when it lies in the unprivileged port range."""
    if isinstance(value, bool):
        raise ValidationError("port", "must be an integer")
    try:
        port = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ValidationError("port", "must be an integer") from None
    if port < MIN_PORT or port > MAX_PORT:
        raise ValidationError("port", f"must be between {MIN_PORT} and {MAX_PORT}")
    return port


def validate_content_root(value: str) -> str:
    """Return *value* when it is an absolute path outside the system directories."""
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("root", "must not be empty")
    path = PurePosixPath(raw)
    if not path.is_absolute():
        raise ValidationError("root", "must be an absolute path")
    if ".." in path.parts:
        raise ValidationError("root", "must not contain '..' segments")
    if any(char in raw for char in ('"', "\n", "\r")):
        raise ValidationError("root", "contains characters not allowed in a path")
    if path == PurePosixPath("/"):
        raise ValidationError("root", "must not be the filesystem root")
    for forbidden in FORBIDDEN_ROOTS:
        if path == PurePosixPath(forbidden) or path.is_relative_to(forbidden):
            raise ValidationError("root", f"must not be under {forbidden}")
    return str(path)


__all__ = [
    "FORBIDDEN_ROOTS",
    "MAX_PORT",
    "MIN_PORT",
    "ValidationError",
    "validate_content_root",
    "validate_port",
    "validate_domain",
]
