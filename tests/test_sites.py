"""Tests for site record building, merging and classification."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import FIXED_NOW
from vhostctl.apache.blocks import extract_blocks
from vhostctl.apache.directives import tokenize
from vhostctl.apache.sites import (
    SiteKind,
    SiteRecord,
    build_site_record,
    build_site_records,
    classify_sites,
    group_sites,
    merge_sites,
    parse_config_text,
    read_sites,
    site_id,
)
from vhostctl.certificates import CertificateStatus, load_certificate_metadata

PROXY_BLOCK = (
    "<VirtualHost *:80>\n"
    "    ServerName app.example.com\n"
    "    ServerAlias www.app.example.com\n"
    "    ProxyPass / ws://localhost:3000/\n"
    "    ProxyPassReverse / ws://localhost:3000/\n"
    "    ErrorLog /var/log/httpd/app-error.log\n"
    "    CustomLog \"/var/log/httpd/app-access.log\" combined\n"
    "</VirtualHost>\n"
)

LEGACY_BLOCK = (
    "<VirtualHost *:80>\n"
    "    ServerName legacy.example.org\n"
    "    DocumentRoot \"/srv/legacy\"\n"
    "    <FilesMatch \\.php$>\n"
    "        SetHandler \"proxy:unix:/run/php-fpm/www.sock|fcgi://localhost\"\n"
    "    </FilesMatch>\n"
    "</VirtualHost>\n"
)

STATIC_BLOCK = (
    "<VirtualHost *:80>\n"
    "    ServerName example.com\n"
    "    DocumentRoot /var/www/example\n"
    "</VirtualHost>\n"
)


def _records(names: list[str]) -> list[SiteRecord]:
    return [
        build_site_record(name, tokenize(f"ServerName {name}\n"), f"ServerName {name}")
        for name in names
    ]


def test_proxy_block_yields_record_per_name() -> None:
    """Each declared name becomes a proxy record with the loopback port."""
    records = parse_config_text(PROXY_BLOCK)

    assert [record.domain_name for record in records] == [
        "app.example.com",
        "www.app.example.com",
    ]
    primary = records[0]
    assert primary.kind is SiteKind.PROXY
    assert primary.routing_target == 3000
    assert primary.content_root is None
    assert primary.alias_names == ["www.app.example.com"]
    assert records[1].alias_names == ["app.example.com"]
    assert primary.error_log == "/var/log/httpd/app-error.log"
    assert primary.access_log == "/var/log/httpd/app-access.log"
    assert primary.raw_block_text == PROXY_BLOCK.rstrip("\n")
    assert primary.id == site_id("app.example.com")
    assert primary.tls.status is CertificateStatus.NONE


def test_proxy_to_remote_host_has_no_target() -> None:
    """Only loopback targets are reported as routing targets."""
    records = parse_config_text(
        "<VirtualHost *:80>\n"
        "    ServerName remote.example.com\n"
        "    ProxyPass / http://10.0.0.5:8080/\n"
        "</VirtualHost>\n"
    )

    assert records[0].kind is SiteKind.PROXY
    assert records[0].routing_target is None


def test_php_handler_marks_legacy() -> None:
    """A handler mentioning PHP classifies the site as legacy."""
    (record,) = parse_config_text(LEGACY_BLOCK)

    assert record.kind is SiteKind.LEGACY
    assert record.content_root == "/srv/legacy"


def test_document_root_alone_is_static() -> None:
    """A document root without proxy or handler directives is static."""
    (record,) = parse_config_text(STATIC_BLOCK)

    assert record.kind is SiteKind.STATIC
    assert record.content_root == "/var/www/example"
    assert record.routing_target is None


def test_tls_directives_do_not_change_kind() -> None:
    """Certificate directives set the declared TLS state only."""
    (record,) = parse_config_text(
        "<VirtualHost *:443>\n"
        "    ServerName example.com\n"
        "    DocumentRoot /var/www/example\n"
        "    SSLEngine on\n"
        "    SSLCertificateFile /etc/letsencrypt/live/example.com/fullchain.pem\n"
        "    SSLCertificateKeyFile /etc/letsencrypt/live/example.com/privkey.pem\n"
        "</VirtualHost>\n"
    )

    assert record.kind is SiteKind.STATIC
    assert record.tls.enabled is True
    assert record.tls.status is CertificateStatus.NONE
    assert record.tls.certificate_file == "/etc/letsencrypt/live/example.com/fullchain.pem"
    assert record.tls.certificate_key_file == "/etc/letsencrypt/live/example.com/privkey.pem"


@pytest.mark.parametrize("text", [PROXY_BLOCK, LEGACY_BLOCK, STATIC_BLOCK])
def test_reparsing_raw_block_is_idempotent(text: str) -> None:
    """Parsing a record's raw block text again yields an equivalent record."""
    for record in parse_config_text(text):
        (block,) = extract_blocks(record.raw_block_text)
        again = {item.domain_name: item for item in build_site_records(block)}
        assert again[record.domain_name] == record


@pytest.mark.parametrize(
    ("names", "expected"),
    [
        (["example.com", "api.example.com"], {"api.example.com": "example.com"}),
        (["a.b.example.com", "example.com"], {"a.b.example.com": "example.com"}),
        (["a.b.example.com", "b.example.com"], {}),
        (["a.b.c.example.net"], {}),
        (["example.com", "example.com.au", "shop.example.com.au"], {}),
        (["com", "example.com"], {}),
    ],
)
def test_subordinate_iff_parent_present(names: list[str], expected: dict[str, str]) -> None:
    """A record is subordinate exactly when its two-label parent is in the set."""
    records = classify_sites(_records(names))

    for record in records:
        parent = expected.get(record.domain_name)
        assert record.is_subordinate is (parent is not None)
        assert record.parent_domain_name == parent


def test_classification_is_reevaluated_over_the_set() -> None:
    """Removing the parent from the set turns a child back into a principal."""
    records = classify_sites(_records(["example.com", "api.example.com"]))
    assert records[1].is_subordinate

    survivors = classify_sites([records[1]])

    assert survivors[0].is_subordinate is False
    assert survivors[0].parent_domain_name is None


def test_merge_takes_tls_from_tls_file_and_keeps_first_http_copy() -> None:
    """The TLS copy supplies tls; duplicate plaintext copies are dropped."""
    http = parse_config_text(STATIC_BLOCK + STATIC_BLOCK.replace("/var/www/example", "/other"))
    tls = parse_config_text(
        "<IfModule mod_ssl.c>\n"
        "<VirtualHost *:443>\n"
        "    ServerName example.com\n"
        "    SSLCertificateFile /etc/letsencrypt/live/example.com/fullchain.pem\n"
        "</VirtualHost>\n"
        "<VirtualHost *:443>\n"
        "    ServerName secure.example.com\n"
        "    SSLEngine on\n"
        "</VirtualHost>\n"
        "</IfModule>\n"
    )

    merged = classify_sites(merge_sites(http, tls))

    assert [record.domain_name for record in merged] == ["example.com", "secure.example.com"]
    assert merged[0].content_root == "/var/www/example"
    assert merged[0].tls.enabled is True
    assert merged[1].is_subordinate is True
    assert merged[1].parent_domain_name == "example.com"


def test_shop_scenario_merges_certificate_metadata(tmp_path: Path) -> None:
    """Plaintext and TLS copies plus renewal metadata give one active record."""
    http_path = tmp_path / "vhost.conf"
    tls_path = tmp_path / "vhost-le-ssl.conf"
    renewal = tmp_path / "renewal"
    renewal.mkdir()
    http_path.write_text(
        "<VirtualHost *:80>\n"
        "    ServerName shop.example.com\n"
        "    ProxyPass / http://127.0.0.1:4000/\n"
        "</VirtualHost>\n",
        encoding="utf-8",
    )
    tls_path.write_text(
        "<IfModule mod_ssl.c>\n"
        "<VirtualHost *:443>\n"
        "    ServerName shop.example.com\n"
        "    ProxyPass / http://127.0.0.1:4000/\n"
        "    SSLCertificateFile /etc/letsencrypt/live/shop.example.com/fullchain.pem\n"
        "    SSLCertificateKeyFile /etc/letsencrypt/live/shop.example.com/privkey.pem\n"
        "</VirtualHost>\n"
        "</IfModule>\n",
        encoding="utf-8",
    )
    expiry = FIXED_NOW + timedelta(days=10)
    (renewal / "shop.example.com.conf").write_text(
        f"expiry_date = {expiry.isoformat()}\nversion = 2.11.0\n",
        encoding="utf-8",
    )

    records = read_sites(
        http_path,
        tls_path,
        load_certificate_metadata(renewal, now=FIXED_NOW),
    )

    assert len(records) == 1
    (record,) = records
    assert record.tls.status is CertificateStatus.ACTIVE
    assert record.tls.days_remaining == 10
    assert record.tls.enabled is True
    assert record.routing_target == 4000
    assert record.is_subordinate is False


def test_read_sites_with_missing_files_is_empty(tmp_path: Path) -> None:
    """Absent configuration files simply contribute no records."""
    assert read_sites(tmp_path / "a.conf", tmp_path / "b.conf") == []


def test_group_sites_attaches_children() -> None:
    """Subordinate records are grouped under their principal."""
    records = classify_sites(
        _records(["example.com", "api.example.com", "other.org", "www.example.com"])
    )

    groups = group_sites(records)

    assert [group.principal.domain_name for group in groups] == ["example.com", "other.org"]
    assert [child.domain_name for child in groups[0].children] == [
        "api.example.com",
        "www.example.com",
    ]
    assert groups[1].children == []
