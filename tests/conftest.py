"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from vhostctl.config import AppConfig, load_config
from vhostctl.locking import LockManager
from vhostctl.manager import SiteManager
from vhostctl.providers.apache import ApacheProvider
from vhostctl.providers.certbot import CertbotProvider
from vhostctl.providers.privileged import FileOperationError, LocalFileOps
from vhostctl.templates import TemplateEngine

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
BAD_DIRECTIVE = "ThisIsNotADirective"


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class RecordingFileOps(LocalFileOps):
    """Local file operations that remember every call.

    ``fail_copy`` decides per ``(source, destination)`` pair whether a copy is
    refused the way a denied ``sudo cp`` would be.
    """

    def __init__(self) -> None:
        """Start with an empty call log."""
        self.calls: list[tuple[str, ...]] = []
        self.fail_copy: Callable[[Path, Path], bool] | None = None

    def copy(self, source: Path, destination: Path) -> None:
        """Record and perform the copy."""
        self.calls.append(("copy", str(source), str(destination)))
        if self.fail_copy is not None and self.fail_copy(Path(source), Path(destination)):
            raise FileOperationError(f"copy failed: permission denied: {destination}")
        super().copy(source, destination)

    def chmod(self, path: Path, mode: int) -> None:
        """Record and perform the chmod."""
        self.calls.append(("chmod", str(path), oct(mode)))
        super().chmod(path, mode)

    def delete(self, path: Path) -> None:
        """Record and perform the delete."""
        self.calls.append(("delete", str(path)))
        super().delete(path)


class ApacheTool:
    """Scripted replacement for ``apachectl configtest`` and the reload command.

    The syntax test fails whenever one of the watched files contains
    ``BAD_DIRECTIVE``; ``configtest_output`` forces a specific failure.
    """

    def __init__(self) -> None:
        """Start with a passing syntax test and succeeding reloads."""
        self.calls: list[tuple[str, ...]] = []
        self.watch: list[Path] = []
        self.configtest_output: str | None = None
        self.reload_returncodes: list[int] = []

    def __call__(self, provider: ApacheProvider, args: Sequence[str]) -> DummyResult:
        """Answer one command invocation."""
        command = tuple(args)
        self.calls.append(command)
        if command == tuple(provider.configtest_command):
            if self.configtest_output is not None:
                return DummyResult(1, "", self.configtest_output)
            for path in self.watch:
                if path.exists() and BAD_DIRECTIVE.encode() in path.read_bytes():
                    return DummyResult(
                        1,
                        "",
                        f"AH00526: Syntax error on line 3 of {path}:\n"
                        f"Invalid command '{BAD_DIRECTIVE}'",
                    )
            return DummyResult(0, "", "Syntax OK")
        returncode = self.reload_returncodes.pop(0) if self.reload_returncodes else 0
        stderr = "" if returncode == 0 else "Job for httpd.service failed."
        return DummyResult(returncode, "", stderr)

    def count(self, command: Sequence[str]) -> int:
        """Return how often *command* ran."""
        return sum(1 for call in self.calls if call == tuple(command))


class CertbotTool:
    """Scripted replacement for certbot."""

    def __init__(self) -> None:
        """Start with certbot succeeding."""
        self.calls: list[tuple[str, ...]] = []
        self.returncode = 0

    def __call__(self, provider: CertbotProvider, args: Sequence[str]) -> DummyResult:
        """Answer one certbot invocation."""
        self.calls.append(tuple(args))
        if self.returncode:
            return DummyResult(self.returncode, "", "Challenge failed for domain")
        return DummyResult(0, "Successfully received certificate.", "")


def make_config(tmp_path: Path, **certbot: object) -> AppConfig:
    """Return a configuration rooted entirely under *tmp_path*."""
    (tmp_path / "conf").mkdir(exist_ok=True)
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 1.0,
            "apache": {
                "http_config": str(tmp_path / "conf" / "vhost.conf"),
                "tls_config": str(tmp_path / "conf" / "vhost-le-ssl.conf"),
                "log_dir": "/var/log/httpd",
            },
            "certbot": {"renewal_dir": str(tmp_path / "renewal"), **certbot},
            "privileged": {"mode": "local"},
        },
    )


@pytest.fixture
def apache_tool(monkeypatch: pytest.MonkeyPatch) -> ApacheTool:
    """Route every Apache command through an :class:`ApacheTool`."""
    tool = ApacheTool()
    monkeypatch.setattr(
        ApacheProvider,
        "_run_command",
        lambda self, args: tool(self, args),
    )
    return tool


@pytest.fixture
def certbot_tool(monkeypatch: pytest.MonkeyPatch) -> CertbotTool:
    """Route every certbot command through a :class:`CertbotTool`."""
    tool = CertbotTool()
    monkeypatch.setattr(
        CertbotProvider,
        "_run_command",
        lambda self, args: tool(self, args),
    )
    return tool


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration confined to the temporary directory."""
    return make_config(tmp_path)


@pytest.fixture
def file_ops() -> RecordingFileOps:
    """Return recording local file operations."""
    return RecordingFileOps()


@pytest.fixture
def manager(
    app_config: AppConfig,
    apache_tool: ApacheTool,
    certbot_tool: CertbotTool,
    file_ops: RecordingFileOps,
) -> SiteManager:
    """Return a manager wired to scripted tools and local file operations."""
    apache_tool.watch = [app_config.apache.http_config, app_config.apache.tls_config]
    return SiteManager(
        app_config,
        templates=TemplateEngine.with_overrides(None),
        apache=ApacheProvider(
            configtest_command=app_config.apache.configtest_command,
            reload_command=app_config.apache.reload_command,
        ),
        certbot=CertbotProvider(command=app_config.certbot.command),
        file_ops=file_ops,
        locks=LockManager(app_config.runtime_dir, default_timeout=1.0),
        clock=lambda: FIXED_NOW,
    )
