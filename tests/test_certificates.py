"""Tests for the certbot renewal metadata loader."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from conftest import FIXED_NOW
from vhostctl.certificates import (
    CertificateStatus,
    certificate_not_after,
    classify_expiry,
    load_certificate_metadata,
    parse_expiry,
)


def _create_self_signed_cert(tmp_path: Path, *, common_name: str, valid_to: datetime) -> Path:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_to - timedelta(days=90))
        .not_valid_after(valid_to)
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / f"{common_name}.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return cert_path


def _write_renewal(directory: Path, domain: str, body: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{domain}.conf"
    path.write_text(body, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    ("delta", "days", "status"),
    [
        (timedelta(days=30), 30, CertificateStatus.ACTIVE),
        (timedelta(days=8), 8, CertificateStatus.ACTIVE),
        (timedelta(days=7), 7, CertificateStatus.EXPIRING),
        (timedelta(hours=5), 0, CertificateStatus.EXPIRING),
        (timedelta(hours=-5), -1, CertificateStatus.EXPIRED),
        (timedelta(days=-3), -3, CertificateStatus.EXPIRED),
    ],
)
def test_classify_expiry_boundaries(
    delta: timedelta,
    days: int,
    status: CertificateStatus,
) -> None:
    """Days are floored and mapped onto active, expiring or expired."""
    assert classify_expiry(FIXED_NOW + delta, now=FIXED_NOW) == (days, status)


def test_classify_expiry_honours_custom_window() -> None:
    """A wider expiring window reclassifies otherwise active certificates."""
    _, status = classify_expiry(FIXED_NOW + timedelta(days=20), now=FIXED_NOW, expiring_days=30)

    assert status is CertificateStatus.EXPIRING


def test_parse_expiry_formats() -> None:
    """ISO timestamps and certbot-style values parse; naive values become UTC."""
    assert parse_expiry("2026-04-01T00:00:00+00:00") == datetime(2026, 4, 1, tzinfo=UTC)
    assert parse_expiry("2026-04-01 10:30:00") == datetime(2026, 4, 1, 10, 30, tzinfo=UTC)
    assert parse_expiry("'2026-04-01'") == datetime(2026, 4, 1, tzinfo=UTC)
    assert parse_expiry("not a date") is None
    assert parse_expiry("") is None


def test_load_metadata_reads_expiry_lines(tmp_path: Path) -> None:
    """Each renewal file maps its domain to computed metadata."""
    renewal = tmp_path / "renewal"
    _write_renewal(
        renewal,
        "example.com",
        "# renew_before_expiry = 30 days\n"
        f"expiry_date = {(FIXED_NOW + timedelta(days=45)).isoformat()}\n"
        "version = 2.11.0\n"
        "\n"
        "[renewalparams]\n"
        "authenticator = apache\n",
    )
    _write_renewal(
        renewal,
        "old.example.com",
        f"expiry_date = {(FIXED_NOW - timedelta(days=2)).isoformat()}\n",
    )
    (renewal / "notes.txt").write_text("ignored", encoding="utf-8")

    metadata = load_certificate_metadata(renewal, now=FIXED_NOW)

    assert sorted(metadata) == ["example.com", "old.example.com"]
    assert metadata["example.com"].days_remaining == 45
    assert metadata["example.com"].status is CertificateStatus.ACTIVE
    assert metadata["old.example.com"].status is CertificateStatus.EXPIRED
    assert metadata["example.com"].to_dict()["status"] == "active"


def test_load_metadata_missing_directory_is_empty(tmp_path: Path) -> None:
    """An absent renewal directory is not an error."""
    assert load_certificate_metadata(tmp_path / "nope", now=FIXED_NOW) == {}


def test_load_metadata_skips_files_without_expiry(tmp_path: Path) -> None:
    """Files with neither an expiry line nor a readable certificate are skipped."""
    renewal = tmp_path / "renewal"
    _write_renewal(renewal, "example.com", "version = 2.11.0\n")
    _write_renewal(renewal, "broken.example.com", f"cert = {tmp_path / 'missing.pem'}\n")

    assert load_certificate_metadata(renewal, now=FIXED_NOW) == {}


def test_load_metadata_falls_back_to_certificate(tmp_path: Path) -> None:
    """Without expiry_date the live certificate's notAfter is used."""
    valid_to = FIXED_NOW + timedelta(days=3)
    cert_path = _create_self_signed_cert(tmp_path, common_name="api.example.com", valid_to=valid_to)
    renewal = tmp_path / "renewal"
    _write_renewal(
        renewal,
        "api.example.com",
        f"archive_dir = /etc/letsencrypt/archive/api.example.com\ncert = {cert_path}\n",
    )

    metadata = load_certificate_metadata(renewal, now=FIXED_NOW)

    entry = metadata["api.example.com"]
    assert entry.expires_at == valid_to
    assert entry.days_remaining == 3
    assert entry.status is CertificateStatus.EXPIRING
    assert certificate_not_after(cert_path) == valid_to


def test_load_metadata_reads_expiry_under_section(tmp_path: Path) -> None:
    """An expiry line below a section header still counts."""
    renewal = tmp_path / "renewal"
    _write_renewal(
        renewal,
        "example.com",
        "version = 2.0\n"
        "[renewalparams]\n"
        "authenticator = apache\n"
        f"expiry_date = {(FIXED_NOW + timedelta(days=10)).isoformat()}\n",
    )

    metadata = load_certificate_metadata(renewal, now=FIXED_NOW)

    assert metadata["example.com"].days_remaining == 10
    assert metadata["example.com"].status is CertificateStatus.ACTIVE
