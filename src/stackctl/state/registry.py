"""Read access to the registry of managed stack instances.

The registry directory (``/var/lib/stackctl/registry`` by default) stores
``projects.yml``, written by the provisioning tooling::

    projects:
      alpha:
        directory: /srv/stacks/alpha
        ports:
          api: 54321
          db: 54322

stackctl only reads this file. Port allocation and project creation happen
elsewhere.
"""
from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..errors import NotFoundError, ValidationError

PROJECTS_FILE = "projects.yml"


class RegistryError(ValidationError):
    """Raised when the registry file is unreadable or malformed."""


@dataclass(frozen=True, slots=True)
class TargetInstance:
    """A managed stack instance and the paths derived from its root."""

    id: str
    root: Path
    ports: Mapping[str, int] = field(default_factory=dict)

    @property
    def docker_dir(self) -> Path:
        """Directory holding the compose descriptor and its environment file."""
        return self.root / "supabase" / "docker"

    @property
    def compose_file(self) -> Path:
        """Return the compose descriptor path."""
        return self.docker_dir / "docker-compose.yml"

    @property
    def env_file(self) -> Path:
        """Return the environment file used by the compose descriptor."""
        return self.docker_dir / ".env"

    @property
    def volumes_dir(self) -> Path:
        """Return the bind-mounted volume root."""
        return self.docker_dir / "volumes"

    @property
    def cli_config(self) -> Path:
        """Return the platform CLI configuration file."""
        return self.root / "supabase" / "supabase" / "config.toml"

    @property
    def api_port(self) -> int | None:
        """Return the public API port when registered."""
        value = self.ports.get("api")
        return int(value) if value is not None else None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"id": self.id, "root": str(self.root), "ports": dict(self.ports)}


@dataclass(frozen=True)
class ProjectRegistry:
    """High-level interface to ``projects.yml``."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise RegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def read_projects(self) -> dict[str, dict[str, Any]]:
        """Return the ``projects`` mapping (empty when the file is missing)."""
        value = self.read(PROJECTS_FILE, default={"projects": {}})
        if not isinstance(value, Mapping):
            raise RegistryError(f"{self.path_for(PROJECTS_FILE)} must contain a mapping.")
        projects = value.get("projects") or {}
        if not isinstance(projects, Mapping):
            raise RegistryError("The 'projects' entry must be a mapping of project ids.")
        return {
            str(key): dict(entry) for key, entry in projects.items() if isinstance(entry, Mapping)
        }

    def list_targets(self) -> list[TargetInstance]:
        """Return every registered target sorted by id."""
        projects = self.read_projects()
        return [_build_target(name, projects[name]) for name in sorted(projects)]

    def get_target(self, target_id: str) -> TargetInstance:
        """Return the target named *target_id* or raise :class:`NotFoundError`."""
        normalized = target_id.strip()
        if not normalized:
            raise RegistryError("Project identifier must be a non-empty string.")
        projects = self.read_projects()
        entry = projects.get(normalized)
        if entry is None:
            raise NotFoundError(f"Project '{normalized}' not found in registry.")
        return _build_target(normalized, entry)


def _build_target(name: str, entry: Mapping[str, Any]) -> TargetInstance:
    directory = entry.get("directory")
    if not isinstance(directory, str) or not directory.strip():
        raise RegistryError(f"Project '{name}' is missing its 'directory' entry.")
    ports_raw = entry.get("ports") or {}
    if not isinstance(ports_raw, Mapping):
        raise RegistryError(f"Project '{name}' has a malformed 'ports' entry.")
    ports: dict[str, int] = {}
    for key, value in ports_raw.items():
        try:
            ports[str(key)] = int(value)
        except (TypeError, ValueError):
            continue
    return TargetInstance(id=name, root=Path(directory).expanduser(), ports=ports)


__all__ = ["ProjectRegistry", "RegistryError", "TargetInstance"]
