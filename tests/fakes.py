"""In-memory stand-ins for the container runtime, database and S3 client."""
from __future__ import annotations

import io
import json
import tarfile
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from botocore.exceptions import ClientError

from stackctl.errors import ExternalToolError
from stackctl.health import HealthFinding, HealthReport
from stackctl.providers.compose import ContainerStatus
from stackctl.state import TargetInstance
from stackctl.versions import read_compose_versions

COMPOSE_TEMPLATE = """\
name: {name}

services:
  db:
    image: supabase/postgres:{db}
    restart: unless-stopped
    environment:
      POSTGRES_PASSWORD: ${{POSTGRES_PASSWORD}}

  auth:
    image: supabase/gotrue:{auth}
    depends_on:
      - db

  rest:
    image: postgrest/postgrest:{rest}

  kong:
    image: "kong:{kong}"

volumes:
  db-config:
"""

CURRENT_VERSIONS = {
    "db": "15.1.0.147",
    "auth": "v2.151.0",
    "rest": "v12.0.1",
    "kong": "2.8.1",
}


def compose_text(versions: dict[str, str], name: str = "alpha") -> str:
    """Render the sample compose descriptor pinned to *versions*."""
    return COMPOSE_TEMPLATE.format(name=name, **versions)


def make_target(
    tmp_path: Path,
    name: str = "alpha",
    *,
    versions: dict[str, str] | None = None,
    api_port: int = 54321,
) -> TargetInstance:
    """Create an on-disk target with a descriptor, env file and volumes."""
    root = tmp_path / "projects" / name
    target = TargetInstance(id=name, root=root, ports={"api": api_port, "db": api_port + 1})
    target.docker_dir.mkdir(parents=True)
    target.compose_file.write_text(
        compose_text(versions or CURRENT_VERSIONS, name), encoding="utf-8"
    )
    target.env_file.write_text("POSTGRES_PASSWORD=secret\nJWT_SECRET=abc\n", encoding="utf-8")
    storage = target.volumes_dir / "storage" / "stub" / "bucket"
    storage.mkdir(parents=True)
    (storage / "object.txt").write_text("stored object", encoding="utf-8")
    functions = target.volumes_dir / "functions" / "hello"
    functions.mkdir(parents=True)
    (functions / "index.ts").write_text("export default () => 'hi'\n", encoding="utf-8")
    target.cli_config.parent.mkdir(parents=True)
    target.cli_config.write_text('project_id = "alpha"\n', encoding="utf-8")
    return target


def running(*services: str) -> list[ContainerStatus]:
    """Return running container rows for *services*."""
    return [
        ContainerStatus(name=f"alpha-{service}-1", service=service, state="running", status="Up")
        for service in services
    ]


def _tar_bytes(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name=f"./{name}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _untar_bytes(payload: bytes) -> dict[str, bytes]:
    files: dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as archive:
        for member in archive.getmembers():
            if member.isfile():
                handle = archive.extractfile(member)
                assert handle is not None
                files[member.name.removeprefix("./")] = handle.read()
    return files


class FakeCompose:
    """Record compose calls and simulate containers and named volumes."""

    def __init__(
        self,
        containers: list[ContainerStatus] | None = None,
        *,
        volumes: dict[str, dict[str, bytes]] | None = None,
        declared_volumes: Sequence[str] = (),
        logs_text: str = "",
    ) -> None:
        self.containers = list(containers or [])
        self.volumes = {name: dict(files) for name, files in (volumes or {}).items()}
        self.declared_volumes = list(declared_volumes)
        self.logs_text = logs_text
        self.calls: list[tuple[str, ...]] = []
        self.fail_on: dict[str, Exception] = {}

    def _record(self, *call: str) -> None:
        self.calls.append(call)
        error = self.fail_on.get(call[0])
        if error is not None:
            raise error

    def commands(self) -> list[str]:
        """Return the recorded command names in order."""
        return [call[0] for call in self.calls]

    # Lifecycle
    def up(self, target: TargetInstance, services: Sequence[str] | None = None) -> None:
        self._record("up", target.id, *(services or []))

    def stop(self, target: TargetInstance, services: Sequence[str] | None = None) -> None:
        self._record("stop", target.id, *(services or []))

    def start(self, target: TargetInstance, services: Sequence[str]) -> None:
        self._record("start", target.id, *services)

    def down(self, target: TargetInstance, *, remove_orphans: bool = True) -> None:
        self._record("down", target.id)

    def pull(self, target: TargetInstance) -> None:
        self._record("pull", target.id)

    # Inspection
    def ps(self, target: TargetInstance) -> list[ContainerStatus]:
        self._record("ps", target.id)
        return list(self.containers)

    def is_running(self, target: TargetInstance) -> bool:
        error = self.fail_on.get("ps")
        if error is not None:
            raise error
        return any(container.running for container in self.containers)

    def logs(self, target: TargetInstance, *, tail: int) -> str:
        self._record("logs", target.id)
        return self.logs_text

    def config_images(self, target: TargetInstance) -> list[str]:
        self._record("config_images", target.id)
        return ["supabase/postgres:15.1.0.147"]

    def config_volumes(self, target: TargetInstance) -> list[str]:
        return list(self.declared_volumes)

    # Named volumes
    def volume_list(self, prefix: str) -> list[str]:
        return sorted(name for name in self.volumes if name.startswith(prefix))

    def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    def volume_create(self, name: str) -> None:
        self._record("volume_create", name)
        self.volumes.setdefault(name, {})

    def volume_remove(self, name: str) -> None:
        self._record("volume_remove", name)
        self.volumes.pop(name, None)

    def volume_export(self, name: str, dest_dir: Path, filename: str) -> Path:
        self._record("volume_export", name)
        if name not in self.volumes:
            raise ExternalToolError(f"export volume {name} failed (exit 1): no such volume")
        path = dest_dir / filename
        path.write_bytes(_tar_bytes(self.volumes[name]))
        return path

    def volume_import(self, name: str, source_dir: Path, filename: str) -> None:
        self._record("volume_import", name)
        self.volumes[name] = _untar_bytes((source_dir / filename).read_bytes())

    def replace_volume(self, name: str, source_dir: Path, filename: str) -> None:
        self.volume_remove(name)
        self.volume_create(name)
        self.volume_import(name, source_dir, filename)

    def image_prune(self) -> None:
        self._record("image_prune")


class FakePostgres:
    """Databases modelled as lists of table names; dumps are JSON documents."""

    def __init__(
        self,
        tables: Sequence[str] = ("users", "orders", "items"),
        *,
        running: bool = True,
        database: str = "postgres",
    ) -> None:
        self.database = database
        self.databases: dict[str, list[str]] = {database: list(tables)}
        self.running = running
        self.calls: list[tuple[str, ...]] = []
        self.fail_formats: set[str] = set()

    def dump(self, target: TargetInstance, destination: Path, *, fmt: str = "custom") -> Path:
        self.calls.append(("dump", fmt))
        if fmt in self.fail_formats:
            raise ExternalToolError(f"pg_dump ({fmt}) failed (exit 1): boom")
        payload = {"format": fmt, "tables": self.databases[self.database]}
        destination.write_text(json.dumps(payload), encoding="utf-8")
        return destination

    def restore(self, target: TargetInstance, dump_file: Path, *, database: str) -> str | None:
        self.calls.append(("restore", database))
        payload = json.loads(dump_file.read_text(encoding="utf-8"))
        self.databases[database] = list(payload["tables"])
        return None

    def primary_running(self, target: TargetInstance) -> bool:
        return self.running

    def create_database(self, target: TargetInstance, name: str) -> None:
        self.calls.append(("create", name))
        self.databases[name] = []

    def drop_database(self, target: TargetInstance, name: str, *, force: bool = False) -> None:
        self.calls.append(("drop", name))
        self.databases.pop(name, None)

    def count_tables(self, target: TargetInstance, *, database: str) -> int:
        return len(self.databases.get(database, []))


class _FakePaginator:
    def __init__(self, objects: dict[tuple[str, str], bytes]) -> None:
        self._objects = objects

    def paginate(self, *, Bucket: str, Prefix: str) -> list[dict[str, object]]:  # noqa: N803
        contents = [
            {"Key": key, "Size": len(data), "LastModified": datetime(2025, 1, 1, tzinfo=UTC)}
            for (bucket, key), data in sorted(self._objects.items())
            if bucket == Bucket and key.startswith(Prefix)
        ]
        return [{"Contents": contents}] if contents else [{}]


class FakeS3Client:
    """Subset of the boto3 S3 client API backed by a dict."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}

    def upload_file(self, Filename: str, Bucket: str, Key: str) -> None:  # noqa: N803
        self.objects[(Bucket, Key)] = Path(Filename).read_bytes()

    def download_file(self, Bucket: str, Key: str, Filename: str) -> None:  # noqa: N803
        if (Bucket, Key) not in self.objects:
            raise ClientError(
                {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
            )
        Path(Filename).write_bytes(self.objects[(Bucket, Key)])

    def get_paginator(self, name: str) -> _FakePaginator:
        assert name == "list_objects_v2"
        return _FakePaginator(self.objects)

    def delete_object(self, *, Bucket: str, Key: str) -> None:  # noqa: N803
        self.objects.pop((Bucket, Key), None)


class StubResolver:
    """Read current versions from disk and return canned reference versions."""

    def __init__(self, latest: dict[str, str] | None = None) -> None:
        self.latest = dict(latest or {})

    def current_versions(self, target: TargetInstance) -> dict[str, str]:
        return read_compose_versions(target.compose_file)

    def latest_versions(self) -> dict[str, str]:
        return dict(self.latest)


class StubHealth:
    """Return a fixed health verdict without probing anything."""

    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.calls: list[tuple[str, float, float]] = []

    def wait_until_healthy(
        self, target: TargetInstance, *, timeout: float = 0.0, interval: float = 5.0
    ) -> HealthReport:
        self.calls.append((target.id, timeout, interval))
        message = "API responding (HTTP 200)." if self.healthy else "API returned HTTP 500."
        return HealthReport((HealthFinding("api-liveness", self.healthy, message),))
