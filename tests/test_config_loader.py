"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from stackctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/stackctl")
    assert config.registry_dir == Path("/var/lib/stackctl/registry")
    assert config.backups.root == Path("/srv/stackctl/backups")
    assert config.backups.retention is None
    assert config.update.settle_seconds == 10.0
    assert config.update.order[0] == "vector"
    assert config.health.alive_statuses == (200, 401)
    assert config.docker.db_service == "db"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text(
        "state_dir: {state}\n"
        "backups:\n"
        "  root: {root}\n"
        "  retention: 7\n"
        "update:\n"
        "  settle_seconds: 0\n"
        "  services: [db, auth]\n"
        "health:\n"
        "  liveness_path: /health\n"
        "  alive_statuses: [200]\n".format(
            state=tmp_path / "state", root=tmp_path / "backups"
        )
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.registry_dir == tmp_path / "state" / "registry"
    assert config.backups.root == tmp_path / "backups"
    assert config.backups.retention == 7
    assert config.update.settle_seconds == 0.0
    assert config.update.services == ("db", "auth")
    assert config.health.liveness_path == "/health"
    assert config.health.alive_statuses == (200,)


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  retention: 3\n")
    env = {
        "STACKCTL_CONFIG_FILE": str(cfg),
        "STACKCTL_BACKUPS__RETENTION": "9",
        "STACKCTL_LOCK_TIMEOUT": "45",
        "STACKCTL_DOCKER__DB_SERVICE": "postgres",
        "STACKCTL_BACKUP_PASSWORD": "not-a-config-key",
        "UNRELATED": "ignored",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.backups.retention == 9
    assert config.lock_timeout == 45.0
    assert config.docker.db_service == "postgres"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"STACKCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("update:\n  settle: 3\n")

    with pytest.raises(ConfigError, match="Unknown update configuration keys"):
        load_config(config_file=cfg, env={})


def test_negative_retention_raises(tmp_path: Path) -> None:
    """Retention below zero is invalid."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  retention: -1\n")

    with pytest.raises(ConfigError, match="retention"):
        load_config(config_file=cfg, env={})


def test_liveness_path_must_be_absolute(tmp_path: Path) -> None:
    """The liveness path is appended to a host and must start with a slash."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("health:\n  liveness_path: rest/v1\n")

    with pytest.raises(ConfigError, match="liveness_path"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The rendered configuration uses plain JSON types."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["backups"]["root"] == "/srv/stackctl/backups"  # type: ignore[index]
    assert data["update"]["order"][-1] == "studio"  # type: ignore[index]
    assert data["health"]["log_markers"] == ["error", "fatal", "panic"]  # type: ignore[index]
