"""Read and mutate the Apache VirtualHost configuration files.

Every mutation follows the same pipeline: stage the new content in a private
temporary file, back up the current file, copy the staged file over it with
the privileged file operations, run the Apache syntax test and reload Apache.
A failed syntax test restores the backup without reloading; a failed reload
restores the backup and reloads once more. The staging file is always removed.
Mutations hold the global lock plus a lock per configuration file they touch.
"""
from __future__ import annotations

import logging
import os
import platform
import re
import subprocess
import sys
import tempfile
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__
from .apache.blocks import extract_blocks, remove_blocks, replace_block
from .apache.directives import tokenize
from .apache.sites import (
    SiteKind,
    SiteRecord,
    declared_names,
    read_config_text,
    read_sites,
)
from .apache.syntax import Block
from .certificates import load_certificate_metadata
from .config import AppConfig
from .locking import LockManager
from .providers.apache import ApacheError, ApacheProvider
from .providers.certbot import CertbotError, CertbotProvider
from .providers.privileged import FileOperationError, PrivilegedFileOps, build_file_ops
from .providers.process import ExternalToolError
from .templates import PROXY_TEMPLATE, STATIC_TEMPLATE, TemplateEngine
from .validation import (
    ValidationError,
    validate_content_root,
    validate_domain,
    validate_port,
)

LOGGER = logging.getLogger(__name__)

HTTP_FILE = "http"
TLS_FILE = "tls"
CONFIG_FILES = (HTTP_FILE, TLS_FILE)
BACKUP_INFIX = ".backup."
ERROR_SUFFIX = ".error"

_OPEN_TAG_RE = re.compile(r"<\s*VirtualHost\b", re.IGNORECASE)
_CLOSE_TAG_RE = re.compile(r"<\s*/\s*VirtualHost\s*>", re.IGNORECASE)
_PROXY_PORT_RE = re.compile(
    r"^(?P<prefix>[ \t]*ProxyPass(?:Match|Reverse)?[ \t]+\S+[ \t]+\"?"
    r"(?:https?|wss?)://(?:127\.0\.0\.1|localhost):)(?P<port>\d+)",
    re.IGNORECASE | re.MULTILINE,
)
_DOCUMENT_ROOT_RE = re.compile(
    r'^(?P<prefix>[ \t]*DocumentRoot[ \t]+)(?P<quote>"?)(?P<path>[^"\r\n]*?)(?P=quote)[ \t]*$',
    re.IGNORECASE | re.MULTILINE,
)


class NotFoundError(LookupError):
    """Raised when the target of an update or removal does not exist."""


class SyntaxCheckError(ExternalToolError):
    """Raised when the syntax test rejects a change; the change was rolled back."""

    def __init__(
        self,
        message: str,
        *,
        output: str,
        error_path: Path | None,
        restored: bool = True,
    ) -> None:
        super().__init__(message, output=output)
        self.error_path = error_path
        self.restored = restored


class ReloadError(ExternalToolError):
    """Raised when Apache refuses to reload after a change."""

    def __init__(self, message: str, *, output: str, restored: bool) -> None:
        super().__init__(message, output=output)
        self.restored = restored


@dataclass(slots=True)
class ApplyResult:
    """Outcome of writing one configuration file."""

    path: Path
    changed: bool
    backup: Path | None = None
    output: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "path": str(self.path),
            "changed": self.changed,
            "backup": str(self.backup) if self.backup else None,
            "output": self.output,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class AddResult:
    """Outcome of adding a site; certificate failures do not undo the addition."""

    domain: str
    apply: ApplyResult
    certificate_requested: bool = False
    certificate_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "domain": self.domain,
            "apply": self.apply.to_dict(),
            "certificate_requested": self.certificate_requested,
            "certificate_error": self.certificate_error,
        }


def normalise_newlines(text: str) -> str:
    """Return *text* with ``\\r\\n`` and ``\\r`` line endings folded to ``\\n``."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


class SiteManager:
    """Entry point for every read and write of the VirtualHost files."""

    def __init__(
        self,
        config: AppConfig,
        *,
        templates: TemplateEngine,
        apache: ApacheProvider,
        certbot: CertbotProvider,
        file_ops: PrivilegedFileOps,
        locks: LockManager,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Bind the manager to *config* and its collaborators."""
        self.config = config
        self.templates = templates
        self.apache = apache
        self.certbot = certbot
        self.file_ops = file_ops
        self.locks = locks
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    @classmethod
    def from_config(cls, config: AppConfig, *, locks: LockManager | None = None) -> SiteManager:
        """Build a manager wired to the real providers described by *config*."""
        timeout = config.command_timeout
        return cls(
            config,
            templates=TemplateEngine.with_overrides(config.templates_dir),
            apache=ApacheProvider(
                configtest_command=config.apache.configtest_command,
                reload_command=config.apache.reload_command,
                timeout=timeout,
            ),
            certbot=CertbotProvider(command=config.certbot.command, timeout=timeout),
            file_ops=build_file_ops(config.privileged, timeout=timeout),
            locks=locks or LockManager(config.runtime_dir, default_timeout=config.lock_timeout),
        )

    # ------------------------------------------------------------------
    # Reads
    def config_path(self, which: str) -> Path:
        """Return the path of the ``http`` or ``tls`` configuration file."""
        if which == HTTP_FILE:
            return self.config.apache.http_config
        if which == TLS_FILE:
            return self.config.apache.tls_config
        raise ValidationError("file", f"must be one of {', '.join(CONFIG_FILES)}")

    def list_sites(self) -> list[SiteRecord]:
        """Return every site declared by both files, classified and with TLS status."""
        certificates = load_certificate_metadata(
            self.config.certbot.renewal_dir,
            now=self._clock(),
            expiring_days=self.config.certbot.expiring_days,
        )
        return read_sites(
            self.config.apache.http_config,
            self.config.apache.tls_config,
            certificates,
        )

    def get_site(self, domain: str) -> SiteRecord:
        """Return the record for *domain*."""
        for record in self.list_sites():
            if record.domain_name == domain:
                return record
        raise NotFoundError(f"domain not found: {domain}")

    def read_config_file(self, which: str) -> str:
        """Return the current text of the ``http`` or ``tls`` file."""
        path = self.config_path(which)
        if not path.exists():
            return ""
        return read_config_text(path)

    # ------------------------------------------------------------------
    # Mutations
    def add_site(
        self,
        domain: str,
        kind: SiteKind | str,
        *,
        port: int | None = None,
        root: str | None = None,
        issue_certificate: bool | None = None,
    ) -> AddResult:
        """Append a new VirtualHost for *domain* and optionally request a certificate."""
        domain = validate_domain(domain)
        site_kind = _parse_kind(kind)
        context: dict[str, object] = {
            "server_name": domain,
            "log_dir": str(self.config.apache.log_dir),
        }
        if site_kind is SiteKind.PROXY:
            if port is None:
                raise ValidationError("port", "required for proxy sites")
            context["port"] = validate_port(port)
            template = PROXY_TEMPLATE
        else:
            if root is None:
                raise ValidationError("root", "required for static sites")
            context["document_root"] = validate_content_root(root)
            template = STATIC_TEMPLATE
        wants_certificate = (
            self.config.certbot.auto_issue if issue_certificate is None else issue_certificate
        )

        http_path = self.config.apache.http_config
        tls_path = self.config.apache.tls_config
        with self._mutation_lock([http_path, tls_path]):
            if domain in self._declared_domains():
                raise ValidationError("domain", f"{domain} is already configured")
            block = self.templates.render_to_string(template, context)
            current = self.read_config_file(HTTP_FILE)
            applied = self._apply(http_path, _append_block(current, block))
            result = AddResult(domain=domain, apply=applied)
            if wants_certificate:
                result.certificate_requested = True
                try:
                    self.certbot.obtain(domain)
                except CertbotError as exc:
                    LOGGER.warning("Certificate issuance for %s failed: %s", domain, exc)
                    result.certificate_error = str(exc)
        LOGGER.info("Added %s site %s", site_kind.value, domain)
        return result

    def update_site(
        self,
        domain: str,
        *,
        port: int | None = None,
        root: str | None = None,
    ) -> ApplyResult:
        """Change the proxy port or document root of the block declaring *domain*."""
        domain = validate_domain(domain)
        if port is None and root is None:
            raise ValidationError("update", "give a port or a root to change")
        new_port = validate_port(port) if port is not None else None
        new_root = validate_content_root(root) if root is not None else None

        http_path = self.config.apache.http_config
        with self._mutation_lock([http_path]):
            text = self.read_config_file(HTTP_FILE)
            block = _find_block(text, domain)
            if block is None:
                raise NotFoundError(f"not found or no change: {domain}")
            updated = block.raw
            if new_port is not None:
                updated = _substitute_port(updated, new_port)
            if new_root is not None:
                updated = _substitute_root(updated, new_root)
            if updated == block.raw:
                raise NotFoundError(f"not found or no change: {domain}")
            result = self._apply(http_path, replace_block(text, block, updated))
        LOGGER.info("Updated site %s", domain)
        return result

    def remove_site(self, domain: str) -> list[ApplyResult]:
        """Remove every block declaring *domain* from both files."""
        domain = validate_domain(domain)
        paths = [self.config.apache.http_config, self.config.apache.tls_config]
        results: list[ApplyResult] = []
        with self._mutation_lock(paths):
            for which in CONFIG_FILES:
                text = self.read_config_file(which)
                matched = [block for block in extract_blocks(text) if _declares(block, domain)]
                if not matched:
                    continue
                results.append(
                    self._apply(
                        self.config_path(which),
                        remove_blocks(text, matched),
                        tolerate_missing_certificate=True,
                    )
                )
        if not results:
            raise NotFoundError(f"domain not found: {domain}")
        LOGGER.info("Removed site %s from %d file(s)", domain, len(results))
        return results

    def replace_config_file(self, which: str, content: str) -> ApplyResult:
        """Replace the whole ``http`` or ``tls`` file with *content*."""
        path = self.config_path(which)
        if not _OPEN_TAG_RE.search(content) or not _CLOSE_TAG_RE.search(content):
            raise ValidationError("content", "must contain at least one <VirtualHost> block")
        with self._mutation_lock([path]):
            return self._apply(path, content)

    def obtain_certificate(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Request a certificate for *domain* through certbot."""
        domain = validate_domain(domain)
        with self._mutation_lock([self.config.apache.http_config, self.config.apache.tls_config]):
            return self.certbot.obtain(domain)

    def renew_certificate(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Renew the certificate for *domain* through certbot."""
        domain = validate_domain(domain)
        with self._mutation_lock([self.config.apache.tls_config]):
            return self.certbot.renew(domain)

    def diagnostics(self) -> dict[str, object]:
        """Return the state of the files and directories vhostctl depends on."""
        http_path = self.config.apache.http_config
        tls_path = self.config.apache.tls_config
        renewal_dir = self.config.certbot.renewal_dir
        return {
            "version": __version__,
            "python": sys.version.split()[0],
            "platform": platform.platform(),
            "http_config": {"path": str(http_path), "exists": http_path.exists()},
            "tls_config": {"path": str(tls_path), "exists": tls_path.exists()},
            "renewal_dir": {"path": str(renewal_dir), "exists": renewal_dir.is_dir()},
            "privileged_mode": self.config.privileged.mode,
        }

    # ------------------------------------------------------------------
    # Pipeline
    @contextmanager
    def _mutation_lock(self, paths: Sequence[Path]) -> Iterator[None]:
        with self.locks.mutate_files(paths, timeout=self.config.lock_timeout) as bundle:
            if bundle.wait_ms:
                LOGGER.debug("Waited %d ms for configuration locks", bundle.wait_ms)
            yield

    def _apply(
        self,
        target: Path,
        content: str,
        *,
        tolerate_missing_certificate: bool = False,
    ) -> ApplyResult:
        """Commit *content* to *target*, test, reload, and roll back on failure."""
        exists = target.exists()
        if exists:
            current = read_config_text(target)
            if normalise_newlines(current) == normalise_newlines(content):
                LOGGER.info("%s already up to date; nothing to apply", target)
                return ApplyResult(path=target, changed=False)

        fd, staging_name = tempfile.mkstemp(prefix="vhostctl-", suffix=".conf")
        staging = Path(staging_name)
        try:
            with os.fdopen(
                fd, "w", encoding="utf-8", errors="surrogateescape", newline=""
            ) as handle:
                handle.write(content)
            backup = self._backup(target) if exists else None
            self._commit(staging, target, backup)

            check = self.apache.test_config()
            warnings: list[str] = []
            if not check.ok:
                if tolerate_missing_certificate and check.missing_certificate:
                    message = "syntax check reported a missing certificate file; continuing"
                    LOGGER.warning("%s: %s", target, message)
                    warnings.append(message)
                else:
                    error_path = self._preserve_failed(staging, target)
                    restored = self._try_restore(target, backup)
                    raise SyntaxCheckError(
                        f"syntax check failed: {check.output.strip() or 'no output'}",
                        output=check.output,
                        error_path=error_path,
                        restored=restored,
                    )

            try:
                self.apache.reload()
            except ApacheError as exc:
                restored = self._try_restore(target, backup)
                try:
                    self.apache.reload()
                except ApacheError as retry_exc:
                    LOGGER.error("Reload after restoring %s failed: %s", target, retry_exc)
                raise ReloadError(
                    f"reload failed: {exc.output.strip() or exc}",
                    output=exc.output,
                    restored=restored,
                ) from exc
            return ApplyResult(
                path=target,
                changed=True,
                backup=backup,
                output=check.output,
                warnings=warnings,
            )
        finally:
            staging.unlink(missing_ok=True)

    def _commit(self, staging: Path, target: Path, backup: Path | None) -> None:
        try:
            self.file_ops.copy(staging, target)
            self.file_ops.chmod(target, self.config.apache.file_mode)
        except FileOperationError:
            self._try_restore(target, backup)
            raise

    def _backup(self, target: Path) -> Path:
        directory = self.config.backups.directory or target.parent
        stamp = self._clock().strftime("%Y%m%d-%H%M%S")
        backup = directory / f"{target.name}{BACKUP_INFIX}{stamp}"
        counter = 1
        while backup.exists():
            backup = directory / f"{target.name}{BACKUP_INFIX}{stamp}-{counter}"
            counter += 1
        self.file_ops.copy(target, backup)
        LOGGER.debug("Backed up %s to %s", target, backup)
        return backup

    def _restore(self, target: Path, backup: Path | None) -> None:
        if backup is None:
            self.file_ops.delete(target)
            LOGGER.warning("Removed new file %s after failure", target)
            return
        self.file_ops.copy(backup, target)
        self.file_ops.chmod(target, self.config.apache.file_mode)
        LOGGER.warning("Restored %s from %s", target, backup)

    def _try_restore(self, target: Path, backup: Path | None) -> bool:
        """Restore *target*, reporting failure instead of raising it."""
        try:
            self._restore(target, backup)
        except FileOperationError as exc:
            LOGGER.error("Unable to restore %s: %s", target, exc)
            return False
        return True

    def _preserve_failed(self, staging: Path, target: Path) -> Path | None:
        error_path = target.with_name(f"{target.name}{ERROR_SUFFIX}")
        try:
            self.file_ops.copy(staging, error_path)
        except FileOperationError as exc:
            LOGGER.error("Unable to keep failing configuration at %s: %s", error_path, exc)
            return None
        return error_path

    def _declared_domains(self) -> set[str]:
        names: set[str] = set()
        for which in CONFIG_FILES:
            for block in extract_blocks(self.read_config_file(which)):
                names.update(declared_names(tokenize(block.interior)))
        return names


def _parse_kind(kind: SiteKind | str) -> SiteKind:
    try:
        site_kind = kind if isinstance(kind, SiteKind) else SiteKind(str(kind).lower())
    except ValueError:
        raise ValidationError("kind", f"unknown site kind '{kind}'") from None
    if site_kind is SiteKind.LEGACY:
        raise ValidationError("kind", "legacy sites cannot be created")
    return site_kind


def _append_block(text: str, block: str) -> str:
    if not text:
        return block
    separator = "" if text.endswith("\n") else "\n"
    return f"{text}{separator}\n{block}"


def _declares(block: Block, domain: str) -> bool:
    return domain in declared_names(tokenize(block.interior))


def _find_block(text: str, domain: str) -> Block | None:
    for block in extract_blocks(text):
        if _declares(block, domain):
            return block
    return None


def _substitute_port(block_text: str, port: int) -> str:
    return _PROXY_PORT_RE.sub(lambda match: f"{match.group('prefix')}{port}", block_text)


def _substitute_root(block_text: str, root: str) -> str:
    match = _DOCUMENT_ROOT_RE.search(block_text)
    if match is None:
        return block_text
    old_root = match.group("path")

    def _document_root(found: re.Match[str]) -> str:
        quote = found.group("quote")
        return f"{found.group('prefix')}{quote}{root}{quote}"

    updated = _DOCUMENT_ROOT_RE.sub(_document_root, block_text)
    if not old_root:
        return updated
    directory_re = re.compile(
        r"(<\s*Directory\s+)(\"?)" + re.escape(old_root) + r"\2(\s*>)",
        re.IGNORECASE,
    )
    return directory_re.sub(
        lambda found: f"{found.group(1)}{found.group(2)}{root}{found.group(2)}{found.group(3)}",
        updated,
    )


__all__ = [
    "AddResult",
    "ApplyResult",
    "NotFoundError",
    "ReloadError",
    "SiteManager",
    "SyntaxCheckError",
    "normalise_newlines",
]
