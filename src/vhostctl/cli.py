"""Typer-powered command line interface for ``vhostctl``.

Every command runs inside a structured operation log entry. Engine failures
are converted here into a red message, an error record and an exit code from
:mod:`vhostctl.exit_codes`.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from . import __version__
from .apache.sites import SiteRecord, group_sites, read_config_text
from .certificates import CertificateStatus
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manager import (
    ApplyResult,
    NotFoundError,
    ReloadError,
    SiteManager,
    SyntaxCheckError,
)
from .providers import CertbotError, ExternalToolError
from .templates import TemplateError
from .validation import ValidationError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vhostctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)
FILE_ARGUMENT = typer.Argument(..., help="Which configuration file: http or tls.")

_STATUS_STYLES = {
    CertificateStatus.NONE: "dim",
    CertificateStatus.ACTIVE: "green",
    CertificateStatus.EXPIRING: "yellow",
    CertificateStatus.EXPIRED: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Apache VirtualHost manager.

        Reads the plaintext and certbot-generated TLS configuration files,
        reports every site they declare, and applies changes with a backup,
        an Apache syntax test and a reload, rolling back on failure.
        """
    ).strip(),
)
sites_app = typer.Typer(help="List, add, update and remove sites.")
config_app = typer.Typer(help="Inspect vhostctl settings and the Apache files.")
ssl_app = typer.Typer(help="Certificate status, issuance and renewal.")

app.add_typer(sites_app, name="sites")
app.add_typer(config_app, name="config")
app.add_typer(ssl_app, name="ssl")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    manager: SiteManager


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        manager=SiteManager.from_config(config, locks=locks),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Log engine activity to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"vhostctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _engine_error(op: OperationScope, exc: Exception) -> NoReturn:
    """Map an engine exception onto the matching exit code."""
    if isinstance(exc, ValidationError):
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    if isinstance(exc, NotFoundError):
        _command_error(op, str(exc), rc=int(ExitCode.NOT_FOUND))
    if isinstance(exc, (LockTimeoutError, ConfigError, TemplateError)):
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    errors = [str(exc)]
    if isinstance(exc, SyntaxCheckError):
        if exc.error_path is not None:
            errors.append(f"failing configuration kept at {exc.error_path}")
        if not exc.restored:
            errors.append("restore failed")
    if isinstance(exc, ReloadError):
        errors.append("previous configuration restored" if exc.restored else "restore failed")
    _command_error(op, str(exc), rc=int(ExitCode.PROVIDER), errors=errors)


_ENGINE_ERRORS = (
    ValidationError,
    NotFoundError,
    LockTimeoutError,
    ConfigError,
    TemplateError,
    ExternalToolError,
)


def _report_apply(result: ApplyResult) -> None:
    if not result.changed:
        console.print(f"[yellow]{result.path} unchanged; nothing applied.[/yellow]")
        return
    console.print(f"[green]Updated {result.path}.[/green]")
    if result.backup is not None:
        console.print(f"  backup: {result.backup}")
    for warning in result.warnings:
        console.print(f"  [yellow]warning:[/yellow] {warning}")


def _printable(text: str) -> str:
    """Replace undecodable bytes kept as surrogates with U+FFFD for display."""
    return text.encode("utf-8", errors="surrogateescape").decode("utf-8", errors="replace")


def _format_tls(record: SiteRecord) -> str:
    status = record.tls.status
    style = _STATUS_STYLES[status]
    text = status.value
    if record.tls.days_remaining is not None:
        text = f"{text} ({record.tls.days_remaining}d)"
    return f"[{style}]{text}[/{style}]"


def _format_target(record: SiteRecord) -> str:
    if record.routing_target is not None:
        return f"127.0.0.1:{record.routing_target}"
    return record.content_root or ""


def _sites_table(records: Sequence[SiteRecord]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain", style="bold")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("TLS")
    table.add_column("Parent")
    if not records:
        table.add_row("(none)", "", "", "", "")
        return table
    for record in records:
        table.add_row(
            record.domain_name,
            record.kind.value,
            _format_target(record),
            _format_tls(record),
            record.parent_domain_name or "",
        )
    return table


def _sites_tree(records: Sequence[SiteRecord]) -> Tree:
    tree = Tree("[bold]sites[/bold]")
    for group in group_sites(records):
        branch = tree.add(
            f"[bold]{group.principal.domain_name}[/bold] "
            f"{group.principal.kind.value} {_format_tls(group.principal)}"
        )
        for child in group.children:
            branch.add(f"{child.domain_name} {child.kind.value} {_format_tls(child)}")
    return tree


@sites_app.command("list")
def sites_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    tree: bool = typer.Option(
        False,
        "--tree",
        help="Group subordinate sites under their principal domain.",
    ),
) -> None:
    """List every site declared by the Apache configuration files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sites list",
        args={"json": json_output, "tree": tree},
        target={"kind": "site", "scope": "all"},
    ) as op:
        records = runtime.manager.list_sites()
        if json_output:
            if tree:
                console.print_json(
                    data={"groups": [group.to_dict() for group in group_sites(records)]},
                    ensure_ascii=True,
                )
            else:
                console.print_json(
                    data={"sites": [record.to_dict() for record in records]},
                    ensure_ascii=True,
                )
            op.success("Reported site list as JSON.", changed=0, context={"count": len(records)})
            return
        console.print(_sites_tree(records) if tree else _sites_table(records))
        op.success("Reported site list.", changed=0, context={"count": len(records)})


@sites_app.command("show")
def sites_show(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain name of the site."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one site, including the raw block it came from."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sites show",
        args={"json": json_output},
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            record = runtime.manager.get_site(domain)
        except NotFoundError as exc:
            _engine_error(op, exc)
        if json_output:
            console.print_json(data=record.to_dict(), ensure_ascii=True)
            op.success("Reported site as JSON.", changed=0)
            return
        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Domain", record.domain_name)
        table.add_row("Aliases", ", ".join(record.alias_names))
        table.add_row("Kind", record.kind.value)
        table.add_row("Target", _format_target(record))
        table.add_row("TLS", _format_tls(record))
        table.add_row("Parent", record.parent_domain_name or "")
        table.add_row("Error log", record.error_log or "")
        table.add_row("Access log", record.access_log or "")
        table.add_row("Source", str(record.source_file or ""))
        console.print(table)
        console.print(_printable(record.raw_block_text), markup=False, highlight=False)
        op.success("Reported site.", changed=0)


@sites_app.command("add")
def sites_add(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain name of the new site."),
    kind: str = typer.Option(..., "--kind", help="Site kind: proxy or static."),
    port: int | None = typer.Option(None, "--port", help="Loopback port for proxy sites."),
    root: str | None = typer.Option(None, "--root", help="Document root for static sites."),
    no_certificate: bool = typer.Option(
        False,
        "--no-certificate",
        help="Skip requesting a certificate after the site is added.",
    ),
) -> None:
    """Add a VirtualHost for DOMAIN and request its certificate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sites add",
        args={"kind": kind, "port": port, "root": root, "no_certificate": no_certificate},
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            result = runtime.manager.add_site(
                domain,
                kind,
                port=port,
                root=root,
                issue_certificate=False if no_certificate else None,
            )
        except _ENGINE_ERRORS as exc:
            _engine_error(op, exc)
        _report_apply(result.apply)
        backups = [str(result.apply.backup)] if result.apply.backup else []
        if result.certificate_error:
            console.print(
                f"[yellow]Certificate request failed: {result.certificate_error}[/yellow]"
            )
            op.warning(
                f"Added site {result.domain}; certificate request failed.",
                warnings=[result.certificate_error],
                changed=1,
                backups=backups,
                context=result.to_dict(),
            )
            return
        op.success(
            f"Added site {result.domain}.",
            changed=1,
            backups=backups,
            context=result.to_dict(),
        )


@sites_app.command("update")
def sites_update(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain name of the site to change."),
    port: int | None = typer.Option(None, "--port", help="New loopback port."),
    root: str | None = typer.Option(None, "--root", help="New document root."),
) -> None:
    """Change the proxy port or document root of DOMAIN."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sites update",
        args={"port": port, "root": root},
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            result = runtime.manager.update_site(domain, port=port, root=root)
        except _ENGINE_ERRORS as exc:
            _engine_error(op, exc)
        _report_apply(result)
        op.success(
            f"Updated site {domain}.",
            changed=1 if result.changed else 0,
            backups=[str(result.backup)] if result.backup else [],
            context=result.to_dict(),
        )


@sites_app.command("remove")
def sites_remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain name of the site to remove."),
) -> None:
    """Remove every block declaring DOMAIN from both files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sites remove",
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            results = runtime.manager.remove_site(domain)
        except _ENGINE_ERRORS as exc:
            _engine_error(op, exc)
        for result in results:
            _report_apply(result)
        warnings = [warning for result in results for warning in result.warnings]
        op.success(
            f"Removed site {domain}.",
            changed=sum(1 for result in results if result.changed),
            warnings=warnings,
            backups=[str(result.backup) for result in results if result.backup],
            context={"files": [result.to_dict() for result in results]},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("dump")
def config_dump(
    ctx: typer.Context,
    which: str = FILE_ARGUMENT,
) -> None:
    """Print the current contents of the http or tls file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config dump",
        target={"kind": "apache-config", "file": which},
    ) as op:
        try:
            text = runtime.manager.read_config_file(which)
        except ValidationError as exc:
            _engine_error(op, exc)
        console.print(_printable(text), markup=False, highlight=False, end="")
        op.success(f"Printed {which} configuration.", changed=0)


@config_app.command("upload")
def config_upload(
    ctx: typer.Context,
    which: str = FILE_ARGUMENT,
    source: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="File holding the replacement configuration.",
    ),
) -> None:
    """Replace the http or tls file with SOURCE."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config upload",
        args={"source": source},
        target={"kind": "apache-config", "file": which},
    ) as op:
        content = read_config_text(source)
        try:
            result = runtime.manager.replace_config_file(which, content)
        except _ENGINE_ERRORS as exc:
            _engine_error(op, exc)
        _report_apply(result)
        op.success(
            f"Uploaded {which} configuration." if result.changed else "Configuration unchanged.",
            changed=1 if result.changed else 0,
            backups=[str(result.backup)] if result.backup else [],
            context=result.to_dict(),
        )


@ssl_app.command("status")
def ssl_status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report certificate status for every site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ssl status",
        args={"json": json_output},
        target={"kind": "certificate", "scope": "all"},
    ) as op:
        records = runtime.manager.list_sites()
        if json_output:
            console.print_json(
                data={
                    "certificates": [
                        {"domain": record.domain_name, **record.tls.to_dict()}
                        for record in records
                    ]
                }
            )
            op.success("Reported certificate status as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Domain", style="bold")
        table.add_column("Status")
        table.add_column("Expires")
        for record in records:
            expires = record.tls.expires_at.isoformat() if record.tls.expires_at else ""
            table.add_row(record.domain_name, _format_tls(record), expires)
        console.print(table)
        op.success("Reported certificate status.", changed=0)


@ssl_app.command("obtain")
def ssl_obtain(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to request a certificate for."),
) -> None:
    """Request a certificate for DOMAIN with certbot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ssl obtain",
        target={"kind": "certificate", "domain": domain},
    ) as op:
        try:
            runtime.manager.obtain_certificate(domain)
        except (ValidationError, LockTimeoutError, CertbotError) as exc:
            _engine_error(op, exc)
        console.print(f"[green]Certificate issued for {domain}.[/green]")
        op.success(f"Certificate issued for {domain}.", changed=1)


@ssl_app.command("renew")
def ssl_renew(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain whose certificate to renew."),
) -> None:
    """Renew the certificate for DOMAIN with certbot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ssl renew",
        target={"kind": "certificate", "domain": domain},
    ) as op:
        try:
            runtime.manager.renew_certificate(domain)
        except (ValidationError, LockTimeoutError, CertbotError) as exc:
            _engine_error(op, exc)
        console.print(f"[green]Certificate renewed for {domain}.[/green]")
        op.success(f"Certificate renewed for {domain}.", changed=1)


@app.command()
def diagnostics(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that the configuration files and renewal directory exist."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnostics",
        args={"json": json_output},
        target={"kind": "meta", "scope": "diagnostics"},
    ) as op:
        report = runtime.manager.diagnostics()
        if json_output:
            console.print_json(data=report)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Check", style="bold")
            table.add_column("Value")
            for key, value in report.items():
                if isinstance(value, dict):
                    mark = "[green]ok[/green]" if value.get("exists") else "[red]missing[/red]"
                    table.add_row(key, f"{value.get('path')} {mark}")
                else:
                    table.add_row(key, str(value))
            console.print(table)
        missing = [
            key
            for key, value in report.items()
            if isinstance(value, dict) and not value.get("exists")
        ]
        if missing:
            op.warning(
                "Diagnostics found missing paths.",
                warnings=[f"{key} missing" for key in missing],
                context=report,
            )
            return
        op.success("Diagnostics passed.", changed=0, context=report)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
