"""Service image versions: read, compare with upstream, rewrite.

A target's compose descriptor pins one image per service; the text after the
image reference's tag separator is treated as that service's version. The
upstream reference descriptor is fetched over HTTP and parsed the same way.
"""
from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import requests
import yaml
from packaging.version import InvalidVersion, Version

from .errors import PolicyError, StackIOError
from .state import TargetInstance

LOGGER = logging.getLogger(__name__)

ServiceVersionMap = dict[str, str]

REWRITE_BACKUP_SUFFIX = ".update_backup"

_SERVICE_KEY_RE = re.compile(r"^(?P<indent>\s+)(?P<name>[A-Za-z0-9_.-]+):\s*(#.*)?$")
_IMAGE_RE = re.compile(
    r"^(?P<prefix>\s*image:\s*[\"']?)(?P<image>[^\"'\s#]+)(?P<suffix>[\"']?.*)$"
)


def split_image(image: str) -> tuple[str, str | None]:
    """Split *image* into repository and tag (``None`` when untagged)."""
    reference = image.split("@", 1)[0]
    repository, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, None
    return repository, tag or None


def parse_compose_versions(text: str) -> ServiceVersionMap:
    """Return ``{service: tag}`` for every tagged service image in *text*."""
    try:
        document = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise StackIOError(f"Compose descriptor is not valid YAML: {exc}") from exc
    services = document.get("services") if isinstance(document, Mapping) else None
    if not isinstance(services, Mapping):
        return {}
    versions: ServiceVersionMap = {}
    for name, definition in services.items():
        if not isinstance(definition, Mapping):
            continue
        image = definition.get("image")
        if not isinstance(image, str):
            continue
        _, tag = split_image(image.strip())
        if tag:
            versions[str(name)] = tag
    return versions


def read_compose_versions(path: Path) -> ServiceVersionMap:
    """Read *path*; a missing descriptor yields an empty map."""
    if not path.is_file():
        return {}
    return parse_compose_versions(path.read_text(encoding="utf-8"))


def classify_change(current: str, latest: str) -> str:
    """Return ``upgrade``, ``downgrade`` or ``change`` for a tag transition."""
    try:
        before, after = Version(current), Version(latest)
    except InvalidVersion:
        return "change"
    if after > before:
        return "upgrade"
    if after < before:
        return "downgrade"
    return "change"


@dataclass(frozen=True, slots=True)
class VersionChange:
    """A service whose pinned tag differs from the reference tag."""

    service: str
    current: str
    latest: str

    @property
    def kind(self) -> str:
        """Return the direction of the change."""
        return classify_change(self.current, self.latest)

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "current": self.current,
            "latest": self.latest,
            "kind": self.kind,
        }


@dataclass(slots=True)
class VersionDiff:
    """Comparison of a target's versions with the reference versions."""

    changes: list[VersionChange] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    unknown_latest: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        """Return ``True`` when no service needs a new tag."""
        return not self.changes

    def as_mapping(self) -> dict[str, str]:
        """Return ``{service: latest}`` for every change."""
        return {change.service: change.latest for change in self.changes}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "changes": [change.to_dict() for change in self.changes],
            "not_found": list(self.not_found),
            "unknown_latest": list(self.unknown_latest),
            "up_to_date": list(self.up_to_date),
        }


def order_services(services: Iterable[str], order: Sequence[str]) -> list[str]:
    """Sort *services* by *order*; unknown names keep their relative order at the end."""
    requested = list(dict.fromkeys(services))
    ranked = [name for name in order if name in requested]
    return ranked + [name for name in requested if name not in ranked]


def diff_versions(
    current: Mapping[str, str],
    latest: Mapping[str, str],
    *,
    services: Sequence[str] | None = None,
    order: Sequence[str] = (),
) -> VersionDiff:
    """Compare *current* with *latest* for *services* (default: every known service)."""
    selected = services if services else list(order) or sorted(set(current) | set(latest))
    diff = VersionDiff()
    for service in order_services(selected, order):
        have = current.get(service)
        want = latest.get(service)
        if have is None:
            diff.not_found.append(service)
        elif not want:
            diff.unknown_latest.append(service)
        elif have == want:
            diff.up_to_date.append(service)
        else:
            diff.changes.append(VersionChange(service=service, current=have, latest=want))
    return diff


def rewrite_compose_versions(path: Path, updates: Mapping[str, str]) -> Path:
    """Retag the ``image:`` line of each service in *updates*.

    Only the image line inside the matching service block changes; every other
    byte of the descriptor is preserved. A copy of the original is kept next
    to it with the ``.update_backup`` suffix, and its path is returned.
    """
    try:
        original = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StackIOError(f"Unable to read {path}: {exc}") from exc
    backup = path.with_name(path.name + REWRITE_BACKUP_SUFFIX)
    shutil.copy2(path, backup)

    lines = original.splitlines(keepends=True)
    in_services = False
    service_indent: str | None = None
    current_service: str | None = None
    pending = dict(updates)
    output: list[str] = []
    for line in lines:
        stripped = line.rstrip("\r\n")
        if stripped and not stripped[0].isspace() and not stripped.startswith("#"):
            in_services = stripped.split("#", 1)[0].strip() == "services:"
            current_service = None
            output.append(line)
            continue
        if in_services:
            match = _SERVICE_KEY_RE.match(stripped)
            if match and (service_indent is None or match.group("indent") == service_indent):
                service_indent = match.group("indent")
                current_service = match.group("name")
                output.append(line)
                continue
            if current_service in pending:
                image_match = _IMAGE_RE.match(stripped)
                if image_match:
                    repository, _ = split_image(image_match.group("image"))
                    tag = pending.pop(current_service)
                    ending = line[len(stripped) :]
                    line = (
                        f"{image_match.group('prefix')}{repository}:{tag}"
                        f"{image_match.group('suffix')}{ending}"
                    )
        output.append(line)

    if pending:
        LOGGER.warning("No image line found for: %s", ", ".join(sorted(pending)))
    try:
        path.write_text("".join(output), encoding="utf-8")
    except OSError as exc:
        shutil.copy2(backup, path)
        raise StackIOError(f"Unable to write {path}: {exc}") from exc
    return backup


def parse_service_selector(raw: str | None, known: Sequence[str]) -> list[str]:
    """Parse a comma-separated ``--only`` value against the *known* services.

    Unknown names are logged and skipped. ``None`` or an empty value selects
    nothing (meaning "all services"); a non-empty value that selects nothing
    is a :class:`PolicyError`.
    """
    if raw is None or not raw.strip():
        return []
    selected: list[str] = []
    for item in raw.split(","):
        name = item.strip()
        if not name:
            continue
        if name in known:
            if name not in selected:
                selected.append(name)
        else:
            LOGGER.warning("Unknown service '%s' - skipping", name)
    if not selected:
        raise PolicyError("No valid services specified in the service selector.")
    return selected


class VersionResolver:
    """Resolve current and reference versions for targets."""

    def __init__(
        self,
        reference_url: str,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        """Store the reference descriptor URL and HTTP settings."""
        self.reference_url = reference_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def current_versions(self, target: TargetInstance) -> ServiceVersionMap:
        """Return the versions pinned in *target*'s descriptor."""
        return read_compose_versions(target.compose_file)

    def latest_versions(self) -> ServiceVersionMap:
        """Fetch the reference descriptor; any failure yields an empty map."""
        try:
            response = self._session.get(self.reference_url, timeout=self.timeout)
            response.raise_for_status()
            return parse_compose_versions(response.text)
        except (requests.RequestException, StackIOError) as exc:
            LOGGER.warning("Reference versions unavailable from %s: %s", self.reference_url, exc)
            return {}


__all__ = [
    "REWRITE_BACKUP_SUFFIX",
    "ServiceVersionMap",
    "VersionChange",
    "VersionDiff",
    "VersionResolver",
    "classify_change",
    "diff_versions",
    "order_services",
    "parse_compose_versions",
    "parse_service_selector",
    "read_compose_versions",
    "rewrite_compose_versions",
    "split_image",
]
