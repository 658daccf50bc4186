"""Tests for the privileged file operations."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from conftest import DummyResult
from vhostctl.config import PrivilegedConfig
from vhostctl.providers.privileged import (
    FileOperationError,
    LocalFileOps,
    SudoFileOps,
    build_file_ops,
)


def test_sudo_file_ops_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    """Each verb maps onto a single sudo invocation."""
    calls: list[list[str]] = []

    def fake_run(self: SudoFileOps, args: Sequence[str]) -> DummyResult:
        calls.append(list(args))
        return DummyResult()

    monkeypatch.setattr(SudoFileOps, "_run_command", fake_run)
    ops = SudoFileOps()

    ops.copy(Path("/tmp/staged.conf"), Path("/etc/httpd/conf.d/vhost.conf"))
    ops.chmod(Path("/etc/httpd/conf.d/vhost.conf"), 0o644)
    ops.delete(Path("/etc/httpd/conf.d/vhost.conf"))

    assert calls == [
        ["sudo", "cp", "/tmp/staged.conf", "/etc/httpd/conf.d/vhost.conf"],
        ["sudo", "chmod", "644", "/etc/httpd/conf.d/vhost.conf"],
        ["sudo", "rm", "-f", "/etc/httpd/conf.d/vhost.conf"],
    ]


def test_sudo_file_ops_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing command raises FileOperationError with its output."""
    monkeypatch.setattr(
        SudoFileOps,
        "_run_command",
        lambda self, args: DummyResult(1, "", "sudo: a password is required"),
    )

    with pytest.raises(FileOperationError, match="password is required"):
        SudoFileOps().copy(Path("/tmp/a"), Path("/tmp/b"))


def test_local_file_ops_round_trip(tmp_path: Path) -> None:
    """Local operations copy, chmod and delete in-process."""
    source = tmp_path / "source.conf"
    target = tmp_path / "target.conf"
    source.write_text("<VirtualHost *:80>\n</VirtualHost>\n", encoding="utf-8")
    ops = LocalFileOps()

    ops.copy(source, target)
    ops.chmod(target, 0o600)

    assert target.read_text(encoding="utf-8") == source.read_text(encoding="utf-8")
    assert target.stat().st_mode & 0o777 == 0o600

    ops.delete(target)
    ops.delete(target)
    assert not target.exists()


def test_local_copy_failure_is_wrapped(tmp_path: Path) -> None:
    """Filesystem errors surface as FileOperationError."""
    with pytest.raises(FileOperationError):
        LocalFileOps().copy(tmp_path / "missing", tmp_path / "target")


def test_build_file_ops_selects_mode() -> None:
    """The privileged mode picks the implementation."""
    assert isinstance(build_file_ops(PrivilegedConfig(mode="local")), LocalFileOps)
    sudo = build_file_ops(PrivilegedConfig(mode="sudo", sudo_bin="/usr/bin/sudo"), timeout=5)
    assert isinstance(sudo, SudoFileOps)
    assert sudo.sudo_bin == "/usr/bin/sudo"
    assert sudo.timeout == 5
