"""Turn parsed VirtualHost blocks into site records.

The read path is ``extract_blocks -> tokenize -> build_site_records`` for each
configuration file, then ``merge_sites`` over the plaintext and TLS files,
then ``classify_sites`` over the merged set, and finally
``apply_certificates`` with the renewal metadata. Records are rebuilt from the
files on every read; nothing here is persisted.
"""
from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from ..certificates import CertificateMetadata, CertificateStatus
from .blocks import extract_blocks
from .directives import DirectiveMap, first_value, has_any, tokenize
from .syntax import Block

PROXY_DIRECTIVES = ("proxypass", "proxypassmatch")
HANDLER_DIRECTIVES = ("addhandler", "sethandler")
CONTENT_ROOT_DIRECTIVE = "documentroot"
TLS_DIRECTIVES = ("sslengine", "sslcertificatefile", "sslcertificatekeyfile")
LEGACY_INTERPRETER = "php"

_LOOPBACK_TARGET_RE = re.compile(
    r"(?:https?|wss?)://(?:127\.0\.0\.1|localhost):(\d+)", re.IGNORECASE
)


class SiteKind(Enum):
    """How a site serves its content."""

    PROXY = "proxy"
    STATIC = "static"
    LEGACY = "legacy"


@dataclass(slots=True)
class TlsState:
    """TLS details merged from the configuration and certbot metadata."""

    enabled: bool = False
    status: CertificateStatus = CertificateStatus.NONE
    expires_at: datetime | None = None
    days_remaining: int | None = None
    certificate_file: str | None = None
    certificate_key_file: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "enabled": self.enabled,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "days_remaining": self.days_remaining,
            "certificate_file": self.certificate_file,
            "certificate_key_file": self.certificate_key_file,
        }


@dataclass(slots=True)
class SiteRecord:
    """One externally addressable site declared by a VirtualHost block."""

    id: str
    domain_name: str
    alias_names: list[str]
    kind: SiteKind
    routing_target: int | None
    content_root: str | None
    tls: TlsState
    raw_block_text: str
    error_log: str | None = None
    access_log: str | None = None
    source_file: Path | None = None
    is_subordinate: bool = False
    parent_domain_name: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "id": self.id,
            "domain_name": self.domain_name,
            "alias_names": list(self.alias_names),
            "kind": self.kind.value,
            "routing_target": self.routing_target,
            "content_root": self.content_root,
            "tls": self.tls.to_dict(),
            "error_log": self.error_log,
            "access_log": self.access_log,
            "source_file": str(self.source_file) if self.source_file else None,
            "is_subordinate": self.is_subordinate,
            "parent_domain_name": self.parent_domain_name,
            "raw_block_text": self.raw_block_text,
        }


@dataclass(slots=True)
class SiteGroup:
    """A principal site and the subordinate sites hanging off it."""

    principal: SiteRecord
    children: list[SiteRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "principal": self.principal.to_dict(),
            "children": [child.to_dict() for child in self.children],
        }


def site_id(domain_name: str) -> str:
    """Return the stable identifier derived from *domain_name*."""
    return hashlib.sha256(domain_name.encode("utf-8")).hexdigest()[:12]


def declared_names(directives: DirectiveMap) -> list[str]:
    """Return ServerName followed by every ServerAlias name, without duplicates."""
    names: list[str] = []
    server_name = first_value(directives, "servername")
    if server_name:
        names.extend(server_name.split()[:1])
    for value in directives.get("serveralias", []):
        names.extend(value.split())
    return list(dict.fromkeys(name for name in names if name))


def build_site_record(
    domain_name: str,
    directives: DirectiveMap,
    raw_block_text: str,
    *,
    alias_names: Iterable[str] = (),
    source_file: Path | None = None,
) -> SiteRecord:
    """Build the record for *domain_name* from one block's directive map."""
    kind = classify_kind(directives)
    routing_target = proxy_port(directives) if kind is SiteKind.PROXY else None
    content_root = None
    if kind is not SiteKind.PROXY:
        root = first_value(directives, CONTENT_ROOT_DIRECTIVE)
        content_root = _unquote(root) if root else None
    custom_log = first_value(directives, "customlog")
    error_log = first_value(directives, "errorlog")
    return SiteRecord(
        id=site_id(domain_name),
        domain_name=domain_name,
        alias_names=list(alias_names),
        kind=kind,
        routing_target=routing_target,
        content_root=content_root,
        tls=declared_tls(directives),
        raw_block_text=raw_block_text,
        error_log=_unquote(error_log) if error_log else None,
        access_log=_unquote(custom_log.split()[0]) if custom_log else None,
        source_file=source_file,
    )


def build_site_records(block: Block, *, source_file: Path | None = None) -> list[SiteRecord]:
    """Return one record per name declared by *block*."""
    directives = tokenize(block.interior)
    names = declared_names(directives)
    return [
        build_site_record(
            name,
            directives,
            block.raw,
            alias_names=[other for other in names if other != name],
            source_file=source_file,
        )
        for name in names
    ]


def classify_kind(directives: DirectiveMap) -> SiteKind:
    """Return the site kind implied by *directives*; the first matching rule wins."""
    if has_any(directives, PROXY_DIRECTIVES):
        return SiteKind.PROXY
    if _uses_legacy_interpreter(directives):
        return SiteKind.LEGACY
    if has_any(directives, (CONTENT_ROOT_DIRECTIVE,)):
        return SiteKind.STATIC
    return SiteKind.STATIC


def proxy_port(directives: DirectiveMap) -> int | None:
    """Return the loopback port targeted by the first matching proxy directive."""
    for name in PROXY_DIRECTIVES:
        for value in directives.get(name, []):
            match = _LOOPBACK_TARGET_RE.search(value)
            if match:
                return int(match.group(1))
    return None


def declared_tls(directives: DirectiveMap) -> TlsState:
    """Return the TLS state declared by the block itself."""
    if not has_any(directives, TLS_DIRECTIVES):
        return TlsState()
    engine = first_value(directives, "sslengine")
    certificate = first_value(directives, "sslcertificatefile")
    key = first_value(directives, "sslcertificatekeyfile")
    return TlsState(
        enabled=engine is None or engine.strip().lower() == "on",
        certificate_file=_unquote(certificate) if certificate else None,
        certificate_key_file=_unquote(key) if key else None,
    )


def parse_config_text(text: str, *, source_file: Path | None = None) -> list[SiteRecord]:
    """Return the records declared by every VirtualHost block in *text*."""
    records: list[SiteRecord] = []
    for block in extract_blocks(text):
        records.extend(build_site_records(block, source_file=source_file))
    return records


def read_config_text(path: Path) -> str:
    """Return the text of *path* with its line endings untouched.

    Bytes that are not valid UTF-8 decode to surrogates so that writing the
    text back with ``errors="surrogateescape"`` reproduces them exactly.
    """
    with Path(path).open(encoding="utf-8", errors="surrogateescape", newline="") as handle:
        return handle.read()


def parse_config_file(path: Path) -> list[SiteRecord]:
    """Return the records of the file at *path*; a missing file has none."""
    target = Path(path)
    if not target.exists():
        return []
    return parse_config_text(read_config_text(target), source_file=target)


def merge_sites(
    http_records: Iterable[SiteRecord],
    tls_records: Iterable[SiteRecord],
) -> list[SiteRecord]:
    """Merge plaintext and TLS records into one list keyed by domain name.

    The first plaintext occurrence of a domain wins. A TLS record for a domain
    already present contributes its ``tls`` field; one for a new domain is
    appended as is.
    """
    merged: dict[str, SiteRecord] = {}
    for record in http_records:
        merged.setdefault(record.domain_name, record)
    for record in tls_records:
        existing = merged.get(record.domain_name)
        if existing is None:
            merged[record.domain_name] = record
        elif record.tls.enabled or record.tls.certificate_file:
            existing.tls = replace(record.tls)
    return list(merged.values())


def parent_candidate(domain_name: str) -> str | None:
    """Return the two-label parent of *domain_name*, or None for two labels or fewer."""
    labels = domain_name.split(".")
    if len(labels) <= 2:
        return None
    return ".".join(labels[-2:])


def classify_sites(records: list[SiteRecord]) -> list[SiteRecord]:
    """Set subordinate flags over the whole resolved set, in place."""
    index = {record.domain_name for record in records}
    for record in records:
        parent = parent_candidate(record.domain_name)
        if parent is not None and parent != record.domain_name and parent in index:
            record.is_subordinate = True
            record.parent_domain_name = parent
        else:
            record.is_subordinate = False
            record.parent_domain_name = None
    return records


def apply_certificates(
    records: list[SiteRecord],
    certificates: Mapping[str, CertificateMetadata],
) -> list[SiteRecord]:
    """Attach certbot expiry metadata to each record by domain name."""
    for record in records:
        metadata = certificates.get(record.domain_name)
        if metadata is None:
            continue
        record.tls.enabled = True
        record.tls.status = metadata.status
        record.tls.expires_at = metadata.expires_at
        record.tls.days_remaining = metadata.days_remaining
    return records


def read_sites(
    http_path: Path,
    tls_path: Path,
    certificates: Mapping[str, CertificateMetadata] | None = None,
) -> list[SiteRecord]:
    """Run the full read path over both configuration files."""
    records = merge_sites(parse_config_file(http_path), parse_config_file(tls_path))
    classify_sites(records)
    return apply_certificates(records, certificates or {})


def group_sites(records: Iterable[SiteRecord]) -> list[SiteGroup]:
    """Group subordinate records under their principal, in record order."""
    items = list(records)
    groups: dict[str, SiteGroup] = {}
    for record in items:
        if not record.is_subordinate:
            groups.setdefault(record.domain_name, SiteGroup(principal=record))
    for record in items:
        if record.is_subordinate and record.parent_domain_name in groups:
            groups[record.parent_domain_name].children.append(record)
    return list(groups.values())


def _uses_legacy_interpreter(directives: DirectiveMap) -> bool:
    for name in HANDLER_DIRECTIVES:
        for value in directives.get(name, []):
            if LEGACY_INTERPRETER in value.lower():
                return True
    return any(name.startswith(f"{LEGACY_INTERPRETER}_") for name in directives)


def _unquote(value: str) -> str:
    return value.strip().strip('"').strip("'")


__all__ = [
    "SiteGroup",
    "SiteKind",
    "SiteRecord",
    "TlsState",
    "apply_certificates",
    "build_site_record",
    "build_site_records",
    "classify_kind",
    "classify_sites",
    "declared_names",
    "declared_tls",
    "group_sites",
    "merge_sites",
    "parent_candidate",
    "parse_config_file",
    "parse_config_text",
    "proxy_port",
    "read_config_text",
    "read_sites",
    "site_id",
]
