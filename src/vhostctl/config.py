"""Settings for vhostctl.

Sources are merged in increasing precedence: built-in ``DEFAULTS``, the YAML
file (``/etc/vhostctl/config.yml``, ``--config-file`` or
``VHOSTCTL_CONFIG_FILE``), ``VHOSTCTL_*`` environment variables and finally
overrides passed by the CLI. A double underscore in an environment key walks
into a section::

    VHOSTCTL_APACHE__HTTP_CONFIG=/etc/httpd/conf.d/sites.conf
    VHOSTCTL_CERTBOT__AUTO_ISSUE=false

Environment values go through ``yaml.safe_load`` so ``false`` and ``14`` arrive
as a bool and an int. Commands may be given as a string (split with
:mod:`shlex`) or as a list.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "VHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ApacheConfig:
    """Locations of the managed VirtualHost files and Apache commands."""

    http_config: Path = Path("/etc/httpd/conf.d/vhost.conf")
    tls_config: Path = Path("/etc/httpd/conf.d/vhost-le-ssl.conf")
    log_dir: Path = Path("/var/log/httpd")
    configtest_command: tuple[str, ...] = ("apachectl", "configtest")
    reload_command: tuple[str, ...] = ("sudo", "systemctl", "reload", "httpd")
    file_mode: int = 0o644

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "http_config": str(self.http_config),
            "tls_config": str(self.tls_config),
            "log_dir": str(self.log_dir),
            "configtest_command": list(self.configtest_command),
            "reload_command": list(self.reload_command),
            "file_mode": f"{self.file_mode:04o}",
        }


@dataclass(frozen=True)
class CertbotConfig:
    """Certificate tool invocation and renewal bookkeeping."""

    renewal_dir: Path = Path("/etc/letsencrypt/renewal")
    command: tuple[str, ...] = ("sudo", "certbot")
    expiring_days: int = 7
    auto_issue: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "renewal_dir": str(self.renewal_dir),
            "command": list(self.command),
            "expiring_days": self.expiring_days,
            "auto_issue": self.auto_issue,
        }


@dataclass(frozen=True)
class PrivilegedConfig:
    """How protected files are copied, chmod-ed and deleted."""

    mode: str = "sudo"
    sudo_bin: str = "sudo"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"mode": self.mode, "sudo_bin": self.sudo_bin}


@dataclass(frozen=True)
class BackupConfig:
    """Where pre-mutation backups of configuration files are written."""

    directory: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"dir": str(self.directory) if self.directory is not None else None}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    command_timeout: float
    apache: ApacheConfig
    certbot: CertbotConfig
    privileged: PrivilegedConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "apache": self.apache.to_dict(),
            "certbot": self.certbot.to_dict(),
            "privileged": self.privileged.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostctl/config.yml",
    "logs_dir": "/var/log/vhostctl",
    "runtime_dir": "/run/vhostctl",
    "templates_dir": "/etc/vhostctl/templates",
    "lock_timeout": 30.0,
    "command_timeout": 120.0,
    "apache": {
        "http_config": "/etc/httpd/conf.d/vhost.conf",
        "tls_config": "/etc/httpd/conf.d/vhost-le-ssl.conf",
        "log_dir": "/var/log/httpd",
        "configtest_command": "apachectl configtest",
        "reload_command": "sudo systemctl reload httpd",
        "file_mode": "0644",
    },
    "certbot": {
        "renewal_dir": "/etc/letsencrypt/renewal",
        "command": "sudo certbot",
        "expiring_days": 7,
        "auto_issue": True,
    },
    "privileged": {
        "mode": "sudo",
        "sudo_bin": "sudo",
    },
    "backups": {
        "dir": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "apache": {
        "http_config",
        "tls_config",
        "log_dir",
        "configtest_command",
        "reload_command",
        "file_mode",
    },
    "certbot": {"renewal_dir", "command", "expiring_days", "auto_issue"},
    "privileged": {"mode", "sudo_bin"},
    "backups": {"dir"},
}
ALLOWED_PRIVILEGED_MODES = {"sudo", "local"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    privileged = _as_dict(raw.get("privileged"), "privileged")
    mode = privileged.get("mode")
    if mode is not None and str(mode) not in ALLOWED_PRIVILEGED_MODES:
        allowed_modes = ", ".join(sorted(ALLOWED_PRIVILEGED_MODES))
        raise ConfigError(
            f"Unsupported privileged mode '{mode}'. Allowed: {allowed_modes}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    command_timeout = _expect_positive_float(
        raw.get("command_timeout"), "command_timeout", default=120.0
    )

    apache_mapping = _as_dict(raw.get("apache"), "apache")
    apache = ApacheConfig(
        http_config=_to_path(
            apache_mapping.get("http_config", "/etc/httpd/conf.d/vhost.conf")
        ),
        tls_config=_to_path(
            apache_mapping.get("tls_config", "/etc/httpd/conf.d/vhost-le-ssl.conf")
        ),
        log_dir=_to_path(apache_mapping.get("log_dir", "/var/log/httpd")),
        configtest_command=_to_command(
            apache_mapping.get("configtest_command"), "apache.configtest_command"
        ),
        reload_command=_to_command(
            apache_mapping.get("reload_command"), "apache.reload_command"
        ),
        file_mode=_parse_permission_mode(
            apache_mapping.get("file_mode", "0644"), "apache.file_mode"
        ),
    )

    certbot_mapping = _as_dict(raw.get("certbot"), "certbot")
    expiring_days = _expect_int(
        certbot_mapping.get("expiring_days"), "certbot.expiring_days", default=7
    )
    if expiring_days < 0:
        raise ConfigError("certbot.expiring_days must be non-negative.")
    certbot = CertbotConfig(
        renewal_dir=_to_path(certbot_mapping.get("renewal_dir", "/etc/letsencrypt/renewal")),
        command=_to_command(certbot_mapping.get("command"), "certbot.command"),
        expiring_days=expiring_days,
        auto_issue=bool(certbot_mapping.get("auto_issue", True)),
    )

    privileged_mapping = _as_dict(raw.get("privileged"), "privileged")
    privileged = PrivilegedConfig(
        mode=str(privileged_mapping.get("mode", "sudo")),
        sudo_bin=str(privileged_mapping.get("sudo_bin", "sudo")),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_dir_value = backups_mapping.get("dir")
    backups = BackupConfig(
        directory=_to_path(backups_dir_value) if backups_dir_value else None,
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        command_timeout=command_timeout,
        apache=apache,
        certbot=certbot,
        privileged=privileged,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _to_command(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, (list, tuple)):
        parts = [str(item) for item in value]
    else:
        raise ConfigError(f"{label} must be a string or a list of arguments.")
    if not parts:
        raise ConfigError(f"{label} must not be empty.")
    return tuple(parts)


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigError(f"{label} must be an octal integer string.")
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an octal integer string.") from exc
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ApacheConfig",
    "BackupConfig",
    "CertbotConfig",
    "ConfigError",
    "PrivilegedConfig",
    "load_config",
]
