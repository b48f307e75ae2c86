"""Container runtime provider wrapping ``docker compose`` for one target."""
from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError
from ..state import TargetInstance

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ContainerStatus:
    """One container reported by ``compose ps``."""

    name: str
    service: str
    state: str
    status: str
    image: str = ""

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is in the running state."""
        return self.state.lower() == "running"

    @property
    def restarting(self) -> bool:
        """Return ``True`` when the container is stuck restarting."""
        return self.state.lower() == "restarting" or "restarting" in self.status.lower()


@dataclass(slots=True)
class ComposeProvider:
    """Process control for a target's compose project.

    Every compose call runs with ``-p <target id>`` from the target's docker
    directory so the project name and relative paths match the descriptor.
    """

    docker_bin: str = "docker"
    helper_image: str = "alpine"

    # Lifecycle ---------------------------------------------------------
    def up(self, target: TargetInstance, services: Sequence[str] | None = None) -> None:
        """Create and start containers (all services when *services* is empty)."""
        self._compose(target, ["up", "-d", *(services or [])])

    def stop(self, target: TargetInstance, services: Sequence[str] | None = None) -> None:
        """Stop running containers without removing them."""
        self._compose(target, ["stop", *(services or [])])

    def start(self, target: TargetInstance, services: Sequence[str]) -> None:
        """Start previously stopped containers."""
        self._compose(target, ["start", *services])

    def down(self, target: TargetInstance, *, remove_orphans: bool = True) -> None:
        """Stop and remove the target's containers."""
        args = ["down"]
        if remove_orphans:
            args.append("--remove-orphans")
        self._compose(target, args)

    def pull(self, target: TargetInstance) -> None:
        """Pull every image referenced by the descriptor."""
        self._compose(target, ["pull"])

    # Inspection --------------------------------------------------------
    def ps(self, target: TargetInstance) -> list[ContainerStatus]:
        """Return the status of every container in the project."""
        result = self._compose(target, ["ps", "--all", "--format", "json"])
        return _parse_ps_output(result.stdout)

    def is_running(self, target: TargetInstance) -> bool:
        """Return ``True`` when at least one container is running."""
        return any(container.running for container in self.ps(target))

    def logs(self, target: TargetInstance, *, tail: int) -> str:
        """Return the last *tail* log lines of every service."""
        result = self._compose(target, ["logs", "--no-color", f"--tail={tail}"])
        return (result.stdout or "") + (result.stderr or "")

    def config_images(self, target: TargetInstance) -> list[str]:
        """Return the image references resolved from the descriptor."""
        result = self._compose(target, ["config", "--images"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def config_volumes(self, target: TargetInstance) -> list[str]:
        """Return the named volumes declared by the descriptor."""
        result = self._compose(target, ["config", "--volumes"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # Container access --------------------------------------------------
    def exec(
        self,
        target: TargetInstance,
        service: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* inside the running *service* container.

        Values in *env* reach the container through the client environment;
        only their names appear on the command line.
        """
        names = [option for name in sorted(env or {}) for option in ("-e", name)]
        return self._compose(
            target, ["exec", "-T", *names, service, *args], check=check, env=env
        )

    def copy_from(self, target: TargetInstance, service: str, source: str, dest: Path) -> None:
        """Copy *source* out of the *service* container to *dest*."""
        self._compose(target, ["cp", f"{service}:{source}", str(dest)])

    def copy_to(self, target: TargetInstance, service: str, source: Path, dest: str) -> None:
        """Copy the local *source* into the *service* container at *dest*."""
        self._compose(target, ["cp", str(source), f"{service}:{dest}"])

    # Named volumes -----------------------------------------------------
    def volume_list(self, prefix: str) -> list[str]:
        """Return named volumes whose name starts with *prefix*."""
        result = self._run([self.docker_bin, "volume", "ls", "-q"], error_prefix="volume ls")
        return sorted(
            line.strip() for line in result.stdout.splitlines() if line.strip().startswith(prefix)
        )

    def volume_exists(self, name: str) -> bool:
        """Return ``True`` when the named volume exists."""
        result = self._run(
            [self.docker_bin, "volume", "inspect", name],
            error_prefix="volume inspect",
            check=False,
        )
        return result.returncode == 0

    def volume_create(self, name: str) -> None:
        """Create the named volume."""
        self._run([self.docker_bin, "volume", "create", name], error_prefix="volume create")

    def volume_remove(self, name: str) -> None:
        """Remove the named volume if it exists."""
        if self.volume_exists(name):
            self._run([self.docker_bin, "volume", "rm", name], error_prefix="volume rm")

    def volume_export(self, name: str, dest_dir: Path, filename: str) -> Path:
        """Tar the contents of volume *name* into ``dest_dir/filename``."""
        self._run(
            [
                self.docker_bin,
                "run",
                "--rm",
                "-v",
                f"{name}:/data:ro",
                "-v",
                f"{dest_dir.resolve()}:/backup",
                self.helper_image,
                "tar",
                "-czf",
                f"/backup/{filename}",
                "-C",
                "/data",
                ".",
            ],
            error_prefix=f"export volume {name}",
        )
        return dest_dir / filename

    def volume_import(self, name: str, source_dir: Path, filename: str) -> None:
        """Extract ``source_dir/filename`` into volume *name*."""
        self._run(
            [
                self.docker_bin,
                "run",
                "--rm",
                "-v",
                f"{name}:/data",
                "-v",
                f"{source_dir.resolve()}:/backup:ro",
                self.helper_image,
                "tar",
                "-xzf",
                f"/backup/{filename}",
                "-C",
                "/data",
            ],
            error_prefix=f"import volume {name}",
        )

    def replace_volume(self, name: str, source_dir: Path, filename: str) -> None:
        """Recreate volume *name* and fill it from ``source_dir/filename``."""
        self.volume_remove(name)
        self.volume_create(name)
        self.volume_import(name, source_dir, filename)

    def image_prune(self) -> None:
        """Remove dangling images."""
        self._run([self.docker_bin, "image", "prune", "-f"], error_prefix="image prune")

    # ------------------------------------------------------------------
    def _compose(
        self,
        target: TargetInstance,
        args: Sequence[str],
        *,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, "compose", "-p", target.id, *args]
        return self._run(
            command,
            error_prefix=f"compose {args[0]} ({target.id})",
            check=check,
            cwd=target.docker_dir,
            env=env,
        )

    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                env={**os.environ, **env} if env else None,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{args[0]} not found: {exc}", command=args) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ExternalToolError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                command=args,
                returncode=result.returncode,
                output=stderr or stdout,
            )
        return result


def _parse_ps_output(output: str) -> list[ContainerStatus]:
    text = output.strip()
    if not text:
        return []
    rows: list[object]
    try:
        if text.startswith("["):
            parsed = json.loads(text)
            rows = list(parsed) if isinstance(parsed, list) else []
        else:
            rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as exc:
        raise ExternalToolError(f"Unexpected compose ps output: {exc}", output=output) from exc
    containers: list[ContainerStatus] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        containers.append(
            ContainerStatus(
                name=str(row.get("Name", "")),
                service=str(row.get("Service", "")),
                state=str(row.get("State", "")),
                status=str(row.get("Status", "")),
                image=str(row.get("Image", "")),
            )
        )
    return containers


__all__ = ["ComposeProvider", "ContainerStatus"]
