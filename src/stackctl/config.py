"""Configuration loader for stackctl.

Values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/stackctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STACKCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STACKCTL_BACKUPS__RETENTION=7
    export STACKCTL_UPDATE__SETTLE_SECONDS=20

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "STACKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, f"{ENV_PREFIX}BACKUP_PASSWORD"}

DEFAULT_REFERENCE_URL = (
    "https://raw.githubusercontent.com/supabase/supabase/master/docker/docker-compose.yml"
)

DEFAULT_SERVICES: tuple[str, ...] = (
    "studio",
    "kong",
    "auth",
    "rest",
    "realtime",
    "storage",
    "imgproxy",
    "meta",
    "functions",
    "analytics",
    "db",
    "vector",
    "supavisor",
)

# Services with dependents come first so restarts happen bottom-up.
DEFAULT_UPDATE_ORDER: tuple[str, ...] = (
    "vector",
    "db",
    "analytics",
    "auth",
    "rest",
    "realtime",
    "meta",
    "supavisor",
    "imgproxy",
    "storage",
    "functions",
    "kong",
    "studio",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    temp_dir: Path | None = None
    retention: int | None = None
    encryption_iterations: int = 100_000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "temp_dir": str(self.temp_dir) if self.temp_dir is not None else None,
            "retention": self.retention,
            "encryption_iterations": self.encryption_iterations,
        }


@dataclass(frozen=True)
class UpdateConfig:
    """Update pipeline tunables."""

    reference_url: str = DEFAULT_REFERENCE_URL
    fetch_timeout: float = 30.0
    settle_seconds: float = 10.0
    health_timeout: float = 0.0
    health_interval: float = 5.0
    services: tuple[str, ...] = DEFAULT_SERVICES
    order: tuple[str, ...] = DEFAULT_UPDATE_ORDER

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "reference_url": self.reference_url,
            "fetch_timeout": self.fetch_timeout,
            "settle_seconds": self.settle_seconds,
            "health_timeout": self.health_timeout,
            "health_interval": self.health_interval,
            "services": list(self.services),
            "order": list(self.order),
        }


@dataclass(frozen=True)
class HealthConfig:
    """Thresholds used by the post-restart health evaluator."""

    liveness_path: str = "/rest/v1/"
    alive_statuses: tuple[int, ...] = (200, 401)
    probe_timeout: float = 5.0
    probe_delay: float = 5.0
    log_tail: int = 20
    log_markers: tuple[str, ...] = ("error", "fatal", "panic")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "liveness_path": self.liveness_path,
            "alive_statuses": list(self.alive_statuses),
            "probe_timeout": self.probe_timeout,
            "probe_delay": self.probe_delay,
            "log_tail": self.log_tail,
            "log_markers": list(self.log_markers),
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime integration values."""

    docker_bin: str = "docker"
    helper_image: str = "alpine"
    db_service: str = "db"
    db_user: str = "postgres"
    db_name: str = "postgres"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "helper_image": self.helper_image,
            "db_service": self.db_service,
            "db_user": self.db_user,
            "db_name": self.db_name,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    backups: BackupConfig
    update: UpdateConfig
    health: HealthConfig
    docker: DockerConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "backups": self.backups.to_dict(),
            "update": self.update.to_dict(),
            "health": self.health.to_dict(),
            "docker": self.docker.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackctl/config.yml",
    "state_dir": "/var/lib/stackctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/stackctl",
    "runtime_dir": "/run/stackctl",
    "lock_timeout": 30.0,
    "backups": {
        "root": "/srv/stackctl/backups",
        "temp_dir": None,
        "retention": None,
        "encryption_iterations": 100_000,
    },
    "update": {
        "reference_url": DEFAULT_REFERENCE_URL,
        "fetch_timeout": 30.0,
        "settle_seconds": 10.0,
        "health_timeout": 0.0,
        "health_interval": 5.0,
        "services": list(DEFAULT_SERVICES),
        "order": list(DEFAULT_UPDATE_ORDER),
    },
    "health": {
        "liveness_path": "/rest/v1/",
        "alive_statuses": [200, 401],
        "probe_timeout": 5.0,
        "probe_delay": 5.0,
        "log_tail": 20,
        "log_markers": ["error", "fatal", "panic"],
    },
    "docker": {
        "docker_bin": "docker",
        "helper_image": "alpine",
        "db_service": "db",
        "db_user": "postgres",
        "db_name": "postgres",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("backups", "update", "health", "docker")
}


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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    retention = backups_map.get("retention")
    if retention is not None:
        if _expect_int(retention, "backups.retention", default=0) < 0:
            raise ConfigError("backups.retention must be zero or greater.")

    health_map = _as_dict(raw.get("health"), "health")
    liveness_path = health_map.get("liveness_path")
    if liveness_path is not None and not str(liveness_path).startswith("/"):
        raise ConfigError("health.liveness_path must start with '/'.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    temp_dir_value = backups_mapping.get("temp_dir")
    retention_value = backups_mapping.get("retention")
    backups = BackupConfig(
        root=_to_path(backups_mapping.get("root", "/srv/stackctl/backups")),
        temp_dir=_to_path(temp_dir_value) if temp_dir_value else None,
        retention=(
            _expect_int(retention_value, "backups.retention", default=0)
            if retention_value is not None
            else None
        ),
        encryption_iterations=_expect_int(
            backups_mapping.get("encryption_iterations"),
            "backups.encryption_iterations",
            default=100_000,
        ),
    )
    if backups.encryption_iterations <= 0:
        raise ConfigError("backups.encryption_iterations must be greater than zero.")

    update_mapping = _as_dict(raw.get("update"), "update")
    update = UpdateConfig(
        reference_url=str(update_mapping.get("reference_url", DEFAULT_REFERENCE_URL)),
        fetch_timeout=_expect_positive_float(
            update_mapping.get("fetch_timeout"), "update.fetch_timeout", default=30.0
        ),
        settle_seconds=_expect_non_negative_float(
            update_mapping.get("settle_seconds"), "update.settle_seconds", default=10.0
        ),
        health_timeout=_expect_non_negative_float(
            update_mapping.get("health_timeout"), "update.health_timeout", default=0.0
        ),
        health_interval=_expect_positive_float(
            update_mapping.get("health_interval"), "update.health_interval", default=5.0
        ),
        services=_expect_str_tuple(
            update_mapping.get("services"), "update.services", default=DEFAULT_SERVICES
        ),
        order=_expect_str_tuple(
            update_mapping.get("order"), "update.order", default=DEFAULT_UPDATE_ORDER
        ),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    statuses_raw = health_mapping.get("alive_statuses")
    alive_statuses: tuple[int, ...] = (200, 401)
    if statuses_raw is not None:
        alive_statuses = tuple(
            _expect_int(item, f"health.alive_statuses[{index}]", default=200)
            for index, item in enumerate(_as_sequence(statuses_raw, "health.alive_statuses"))
        )
    health = HealthConfig(
        liveness_path=str(health_mapping.get("liveness_path", "/rest/v1/")),
        alive_statuses=alive_statuses,
        probe_timeout=_expect_positive_float(
            health_mapping.get("probe_timeout"), "health.probe_timeout", default=5.0
        ),
        probe_delay=_expect_non_negative_float(
            health_mapping.get("probe_delay"), "health.probe_delay", default=5.0
        ),
        log_tail=_expect_int(health_mapping.get("log_tail"), "health.log_tail", default=20),
        log_markers=_expect_str_tuple(
            health_mapping.get("log_markers"),
            "health.log_markers",
            default=("error", "fatal", "panic"),
        ),
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        helper_image=str(docker_mapping.get("helper_image", "alpine")),
        db_service=str(docker_mapping.get("db_service", "db")),
        db_user=str(docker_mapping.get("db_user", "postgres")),
        db_name=str(docker_mapping.get("db_name", "postgres")),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        backups=backups,
        update=update,
        health=health,
        docker=docker,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _expect_str_tuple(
    value: object | None,
    label: str,
    *,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    if value is None:
        return default
    items = tuple(str(item).strip() for item in _as_sequence(value, label))
    if not all(items):
        raise ConfigError(f"{label} entries must be non-empty strings.")
    return items


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


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
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
    "BackupConfig",
    "ConfigError",
    "DEFAULT_UPDATE_ORDER",
    "DockerConfig",
    "HealthConfig",
    "UpdateConfig",
    "load_config",
]
