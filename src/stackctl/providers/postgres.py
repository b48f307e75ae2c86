"""Database dump/restore capability running tools inside the db container."""
from __future__ import annotations

import logging
import os
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError, ValidationError
from ..state import TargetInstance
from .compose import ComposeProvider

LOGGER = logging.getLogger(__name__)

DUMP_FORMATS = {"custom", "plain", "schema"}
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CONTAINER_TMP = "/tmp"


def read_env_file(path: Path) -> dict[str, str]:
    """Parse a ``KEY=VALUE`` environment file, ignoring comments and blanks."""
    values: dict[str, str] = {}
    if not path.is_file():
        return values
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("'\"")
    return values


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValidationError(f"Invalid database identifier {name!r}.")
    return name


@dataclass(slots=True)
class PostgresProvider:
    """Run ``pg_dump``, ``pg_restore`` and ``psql`` in a target's db service."""

    compose: ComposeProvider
    service: str = "db"
    user: str = "postgres"
    database: str = "postgres"

    def dump(self, target: TargetInstance, destination: Path, *, fmt: str = "custom") -> Path:
        """Dump the primary database to *destination* on the host."""
        if fmt not in DUMP_FORMATS:
            raise ValidationError(f"Unsupported dump format {fmt!r}.")
        remote = f"{_CONTAINER_TMP}/{destination.name}"
        args = ["pg_dump", "-U", self.user]
        if fmt == "custom":
            args.append("-Fc")
        elif fmt == "schema":
            args.append("--schema-only")
        args.extend(["-f", remote, self.database])
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._exec(target, args)
            self.compose.copy_from(target, self.service, remote, destination)
        finally:
            self._exec(target, ["rm", "-f", remote], check=False)
        LOGGER.info("Dumped %s database (%s) to %s", target.id, fmt, destination)
        return destination

    def restore(self, target: TargetInstance, dump_file: Path, *, database: str) -> str | None:
        """Load a custom-format *dump_file* into *database*.

        ``pg_restore`` exits non-zero for harmless warnings (missing roles,
        pre-existing extensions), so a failing exit status is returned as a
        warning string instead of raising. Copy failures still raise.
        """
        _check_identifier(database)
        remote = f"{_CONTAINER_TMP}/stackctl_restore_{os.getpid()}.dump"
        self.compose.copy_to(target, self.service, dump_file, remote)
        try:
            result = self._exec(
                target,
                [
                    "pg_restore",
                    "-U",
                    self.user,
                    "-d",
                    database,
                    "--no-owner",
                    "--no-acl",
                    remote,
                ],
                check=False,
            )
        finally:
            self._exec(target, ["rm", "-f", remote], check=False)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            LOGGER.warning("pg_restore into %s reported warnings: %s", database, message)
            return message
        return None

    def primary_running(self, target: TargetInstance) -> bool:
        """Return ``True`` when the db service container is running."""
        return any(
            container.service == self.service and container.running
            for container in self.compose.ps(target)
        )

    def query(self, target: TargetInstance, sql: str, *, database: str | None = None) -> str:
        """Run *sql* with ``psql`` and return the unaligned tuple output."""
        result = self._exec(
            target,
            [
                "psql",
                "-U",
                self.user,
                "-d",
                database or self.database,
                "-t",
                "-A",
                "-c",
                sql,
            ],
        )
        return result.stdout.strip()

    def create_database(self, target: TargetInstance, name: str) -> None:
        """Create database *name*."""
        self.query(target, f"CREATE DATABASE {_check_identifier(name)};", database="template1")

    def drop_database(self, target: TargetInstance, name: str, *, force: bool = False) -> None:
        """Drop database *name* if it exists."""
        clause = " WITH (FORCE)" if force else ""
        self.query(
            target,
            f"DROP DATABASE IF EXISTS {_check_identifier(name)}{clause};",
            database="template1",
        )

    def count_tables(self, target: TargetInstance, *, database: str) -> int:
        """Return the number of tables in the ``public`` schema of *database*."""
        output = self.query(
            target,
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public';",
            database=database,
        )
        try:
            return int(output.split()[0]) if output else 0
        except ValueError as exc:
            raise ExternalToolError(f"Unexpected table count output: {output!r}") from exc

    # ------------------------------------------------------------------
    def _exec(
        self,
        target: TargetInstance,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        password = read_env_file(target.env_file).get("POSTGRES_PASSWORD")
        env = {"PGPASSWORD": password} if password else None
        return self.compose.exec(target, self.service, args, env=env, check=check)


__all__ = ["PostgresProvider", "read_env_file"]
