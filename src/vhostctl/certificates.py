"""Certificate expiry metadata read from certbot's renewal bookkeeping.

Certbot keeps one ``<domain>.conf`` file per certificate lineage under its
renewal directory. The loader reads the ``expiry_date`` line from each file
and turns it into a status relative to *now*. When the line is missing but
the file names the live certificate (``cert = /path``), the certificate's own
``notAfter`` is used instead.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from cryptography import x509

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRING_DAYS = 7
RENEWAL_SUFFIX = ".conf"

_FALLBACK_FORMATS = (
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
    "%b %d %H:%M:%S %Y %Z",
)


class CertificateStatus(Enum):
    """Health of a domain's certificate."""

    NONE = "none"
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class CertificateMetadata:
    """Expiry details for one renewal lineage."""

    domain: str
    expires_at: datetime
    days_remaining: int
    status: CertificateStatus
    source: Path

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "domain": self.domain,
            "expires_at": self.expires_at.isoformat(),
            "days_remaining": self.days_remaining,
            "status": self.status.value,
            "source": str(self.source),
        }


def classify_expiry(
    expires_at: datetime,
    *,
    now: datetime,
    expiring_days: int = DEFAULT_EXPIRING_DAYS,
) -> tuple[int, CertificateStatus]:
    """Return ``(days_remaining, status)`` for a certificate expiring at *expires_at*."""
    days = math.floor((_as_utc(expires_at) - _as_utc(now)) / timedelta(days=1))
    if days < 0:
        return days, CertificateStatus.EXPIRED
    if days <= expiring_days:
        return days, CertificateStatus.EXPIRING
    return days, CertificateStatus.ACTIVE


def parse_expiry(value: str) -> datetime | None:
    """Parse an ``expiry_date`` value; naive timestamps are taken as UTC."""
    text = value.strip().strip("'\"")
    if not text:
        return None
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in _FALLBACK_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def read_renewal_file(path: Path) -> dict[str, str]:
    """Return the ``key = value`` pairs of a renewal file.

    Every line is considered, including those under section headers such as
    ``[renewalparams]``; the first occurrence of a key wins.
    """
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line or line.startswith(("#", "[")):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values.setdefault(key.strip().lower(), value.strip())
    return values


def load_certificate_metadata(
    renewal_dir: Path,
    *,
    now: datetime | None = None,
    expiring_days: int = DEFAULT_EXPIRING_DAYS,
) -> dict[str, CertificateMetadata]:
    """Return a ``domain -> CertificateMetadata`` mapping for *renewal_dir*.

    A missing directory yields an empty mapping. Files that cannot be read or
    carry no usable expiry are skipped with a debug log entry.
    """
    directory = Path(renewal_dir)
    if not directory.is_dir():
        return {}
    moment = now or datetime.now(tz=UTC)
    metadata: dict[str, CertificateMetadata] = {}
    for path in sorted(directory.glob(f"*{RENEWAL_SUFFIX}")):
        if not path.is_file():
            continue
        domain = path.name[: -len(RENEWAL_SUFFIX)]
        try:
            fields = read_renewal_file(path)
        except OSError as exc:
            LOGGER.debug("Skipping unreadable renewal file %s: %s", path, exc)
            continue
        expires_at = _expiry_from_fields(fields)
        if expires_at is None:
            LOGGER.debug("No expiry information in %s", path)
            continue
        days, status = classify_expiry(expires_at, now=moment, expiring_days=expiring_days)
        metadata[domain] = CertificateMetadata(
            domain=domain,
            expires_at=expires_at,
            days_remaining=days,
            status=status,
            source=path,
        )
    return metadata


def certificate_not_after(path: Path) -> datetime:
    """Return the ``notAfter`` timestamp of the PEM or DER certificate at *path*."""
    data = Path(path).read_bytes()
    try:
        certificate = x509.load_pem_x509_certificate(data)
    except ValueError:
        certificate = x509.load_der_x509_certificate(data)
    not_after = getattr(certificate, "not_valid_after_utc", None)
    if isinstance(not_after, datetime):
        return not_after
    return _as_utc(certificate.not_valid_after)  # pragma: no cover - older cryptography


def _expiry_from_fields(fields: Mapping[str, str]) -> datetime | None:
    raw = fields.get("expiry_date")
    if raw:
        parsed = parse_expiry(raw)
        if parsed is not None:
            return parsed
    cert_path = fields.get("cert")
    if not cert_path:
        return None
    try:
        return certificate_not_after(Path(cert_path))
    except (OSError, ValueError) as exc:
        LOGGER.debug("Unable to read certificate %s: %s", cert_path, exc)
        return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = [
    "CertificateMetadata",
    "CertificateStatus",
    "DEFAULT_EXPIRING_DAYS",
    "certificate_not_after",
    "classify_expiry",
    "load_certificate_metadata",
    "parse_expiry",
    "read_renewal_file",
]
