"""Tests for the compose and postgres providers."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from fakes import make_target
from stackctl.errors import ExternalToolError, ValidationError
from stackctl.providers import compose as compose_module
from stackctl.providers import ComposeProvider, PostgresProvider, read_env_file


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


Responder = Callable[[list[str]], DummyResult]


def _patch_run(
    monkeypatch: pytest.MonkeyPatch,
    responder: Responder | None = None,
) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    def fake_run(args: list[str], **kwargs: Any) -> DummyResult:
        calls.append({"args": list(args), "cwd": kwargs.get("cwd"), "env": kwargs.get("env")})
        return responder(list(args)) if responder else DummyResult()

    monkeypatch.setattr(compose_module.subprocess, "run", fake_run)
    return calls


def test_compose_commands_use_project_and_docker_dir(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Compose calls carry ``-p <target>`` and run from the docker directory."""
    target = make_target(tmp_path)
    calls = _patch_run(monkeypatch)
    provider = ComposeProvider()

    provider.up(target)
    provider.up(target, ["db"])
    provider.down(target, remove_orphans=False)
    provider.down(target)

    assert [call["args"] for call in calls] == [
        ["docker", "compose", "-p", "alpha", "up", "-d"],
        ["docker", "compose", "-p", "alpha", "up", "-d", "db"],
        ["docker", "compose", "-p", "alpha", "down"],
        ["docker", "compose", "-p", "alpha", "down", "--remove-orphans"],
    ]
    assert {call["cwd"] for call in calls} == {str(target.docker_dir)}


def test_compose_failure_raises_external_tool_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A non-zero exit becomes ExternalToolError with the captured stderr."""
    target = make_target(tmp_path)
    _patch_run(monkeypatch, lambda args: DummyResult(1, stderr="no such service: web"))

    with pytest.raises(ExternalToolError, match="no such service") as excinfo:
        ComposeProvider().pull(target)

    assert excinfo.value.returncode == 1
    assert excinfo.value.command[:3] == ["docker", "compose", "-p"]


def test_missing_binary_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing docker binary is reported as ExternalToolError."""
    target = make_target(tmp_path)

    def fake_run(args: list[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(compose_module.subprocess, "run", fake_run)

    with pytest.raises(ExternalToolError, match="not found"):
        ComposeProvider(docker_bin="/nope/docker").up(target)


@pytest.mark.parametrize("line_delimited", [True, False])
def test_ps_parses_json_output(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    line_delimited: bool,
) -> None:
    """Both the array and the line-delimited JSON formats are understood."""
    target = make_target(tmp_path)
    rows = [
        {"Name": "alpha-db-1", "Service": "db", "State": "running", "Status": "Up 3 minutes"},
        {
            "Name": "alpha-auth-1",
            "Service": "auth",
            "State": "restarting",
            "Status": "Restarting (1) 2 seconds ago",
        },
    ]
    output = "\n".join(json.dumps(row) for row in rows) if line_delimited else json.dumps(rows)
    _patch_run(monkeypatch, lambda args: DummyResult(stdout=output))

    containers = ComposeProvider().ps(target)

    assert [container.service for container in containers] == ["db", "auth"]
    assert containers[0].running and not containers[0].restarting
    assert containers[1].restarting and not containers[1].running


def test_volume_list_filters_by_prefix(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Only volumes belonging to the target are returned."""
    _patch_run(
        monkeypatch,
        lambda args: DummyResult(stdout="beta_db-data\nalpha_db-config\nalpha_storage\n"),
    )

    assert ComposeProvider().volume_list("alpha_") == ["alpha_db-config", "alpha_storage"]


def test_replace_volume_recreates_and_imports(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Replacing a volume removes, creates and fills it through the helper image."""
    calls = _patch_run(monkeypatch)

    ComposeProvider(helper_image="busybox").replace_volume(
        "alpha_db-config", tmp_path, "volume_alpha_db-config.tar.gz"
    )

    commands = [call["args"] for call in calls]
    assert commands[0] == ["docker", "volume", "inspect", "alpha_db-config"]
    assert commands[1] == ["docker", "volume", "rm", "alpha_db-config"]
    assert commands[2] == ["docker", "volume", "create", "alpha_db-config"]
    assert commands[3][:3] == ["docker", "run", "--rm"]
    assert "busybox" in commands[3]
    assert "/backup/volume_alpha_db-config.tar.gz" in commands[3]


def test_read_env_file_ignores_comments(tmp_path: Path) -> None:
    """Environment files are parsed as KEY=VALUE lines."""
    env = tmp_path / ".env"
    env.write_text("# comment\nPOSTGRES_PASSWORD='pw'\n\nEMPTY=\nBROKEN\n", encoding="utf-8")

    assert read_env_file(env) == {"POSTGRES_PASSWORD": "pw", "EMPTY": ""}
    assert read_env_file(tmp_path / "missing") == {}


def test_postgres_dump_runs_in_db_container(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Dumps run pg_dump with the password passed by name only, then copy the file out."""
    target = make_target(tmp_path)
    calls = _patch_run(monkeypatch)
    postgres = PostgresProvider(ComposeProvider())

    destination = postgres.dump(target, tmp_path / "out" / "database.dump", fmt="custom")

    assert destination == tmp_path / "out" / "database.dump"
    commands = [call["args"] for call in calls]
    assert commands[0][4:] == [
        "exec",
        "-T",
        "-e",
        "PGPASSWORD",
        "db",
        "pg_dump",
        "-U",
        "postgres",
        "-Fc",
        "-f",
        "/tmp/database.dump",
        "postgres",
    ]
    assert commands[1][4:] == ["cp", "db:/tmp/database.dump", str(destination)]
    assert commands[2][-3:] == ["rm", "-f", "/tmp/database.dump"]
    assert calls[0]["env"]["PGPASSWORD"] == "secret"
    assert all("PGPASSWORD=secret" not in command for command in commands)


def test_postgres_restore_returns_warning_on_nonzero_exit(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """pg_restore warnings are returned rather than raised."""
    target = make_target(tmp_path)

    def responder(args: list[str]) -> DummyResult:
        if "pg_restore" in args:
            return DummyResult(1, stderr='role "supabase_admin" does not exist')
        return DummyResult()

    _patch_run(monkeypatch, responder)
    dump = tmp_path / "database.dump"
    dump.write_bytes(b"x")

    warning = PostgresProvider(ComposeProvider()).restore(target, dump, database="scratch_db")

    assert warning == 'role "supabase_admin" does not exist'


def test_postgres_rejects_unsafe_identifiers(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Database names are validated before they reach SQL."""
    target = make_target(tmp_path)
    calls = _patch_run(monkeypatch)

    with pytest.raises(ValidationError):
        PostgresProvider(ComposeProvider()).create_database(target, "x; DROP DATABASE y")
    assert calls == []


def test_postgres_count_tables(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The table count is parsed from psql's unaligned output."""
    target = make_target(tmp_path)
    _patch_run(monkeypatch, lambda args: DummyResult(stdout="42\n"))

    assert PostgresProvider(ComposeProvider()).count_tables(target, database="postgres") == 42
