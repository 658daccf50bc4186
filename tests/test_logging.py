"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from vhostctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_appends_one_record_per_command(tmp_path: Path) -> None:
    """Each operation becomes one JSON line with its command and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("sites add", args={"domain": "app.example.com"}) as op:
        op.success("added", changed=1, backups=[tmp_path / "vhost.conf.backup.1"])
    with logger.operation("sites list") as op:
        op.success("listed")

    first, second = _records(logger)
    assert first["command"] == "sites add"
    assert first["args"] == {"domain": "app.example.com"}
    result = first["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1
    assert result["backups"] == [str(tmp_path / "vhost.conf.backup.1")]
    assert second["command"] == "sites list"
    assert first["op_id"] != second["op_id"]


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="bad port"):
        with logger.operation("sites update"):
            raise ValueError("bad port")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["bad port"]
    assert result["rc"] == 1


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("sites list", args={"json": True}) as op:
        op.success("done")


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.path

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("config upload") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("config upload") as op:
        op.success("done")


def test_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("sites remove", target={"file": Path("/etc/httpd")}) as op:
        op.warning(
            "removed with warnings",
            warnings=("missing certificate tolerated",),
            changed=1,
            context={"path": Path("/var/www"), "obj": Custom(), "ports": (3000, 3001)},
        )

    (record,) = _records(logger)
    assert record["target"] == {"file": "/etc/httpd"}
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["warnings"] == ["missing certificate tolerated"]
    assert result["context"] == {"path": "/var/www", "obj": "<custom>", "ports": [3000, 3001]}


def test_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("ssl obtain") as op:
        op.error("certbot failed", rc=4, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["errors"] == ["certbot failed"]
    assert result["rc"] == 4
    assert result["context"] == {"value": "{1, 2}"}
