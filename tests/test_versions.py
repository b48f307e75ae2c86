"""Tests for version parsing, comparison and descriptor rewriting."""
from __future__ import annotations

from pathlib import Path

import pytest
import requests

from fakes import CURRENT_VERSIONS, compose_text
from stackctl.errors import PolicyError
from stackctl.versions import (
    REWRITE_BACKUP_SUFFIX,
    VersionResolver,
    classify_change,
    diff_versions,
    parse_compose_versions,
    parse_service_selector,
    read_compose_versions,
    rewrite_compose_versions,
    split_image,
)


class DummyResponse:
    """Minimal ``requests.Response`` stand-in."""

    def __init__(self, text: str, status_code: int = 200) -> None:
        """Store the body and status."""
        self.text = text
        self.status_code = status_code

    def raise_for_status(self) -> None:
        """Raise for non-2xx statuses."""
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class DummySession:
    """Return a canned response or raise."""

    def __init__(self, response: DummyResponse | Exception) -> None:
        """Store the canned outcome."""
        self.response = response
        self.urls: list[str] = []

    def get(self, url: str, timeout: float) -> DummyResponse:
        """Record the URL and return the canned response."""
        self.urls.append(url)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.mark.parametrize(
    ("image", "expected"),
    [
        ("supabase/postgres:15.1.0.147", ("supabase/postgres", "15.1.0.147")),
        ("kong:2.8.1", ("kong", "2.8.1")),
        ("registry:5000/team/app", ("registry:5000/team/app", None)),
        ("registry:5000/team/app:v1", ("registry:5000/team/app", "v1")),
        ("postgrest/postgrest", ("postgrest/postgrest", None)),
        ("app:v1@sha256:abc", ("app", "v1")),
    ],
)
def test_split_image(image: str, expected: tuple[str, str | None]) -> None:
    """Tags are split off the last colon outside the registry host."""
    assert split_image(image) == expected


def test_parse_compose_versions() -> None:
    """Each tagged service maps to its tag."""
    assert parse_compose_versions(compose_text(CURRENT_VERSIONS)) == CURRENT_VERSIONS


def test_read_missing_descriptor_is_empty(tmp_path: Path) -> None:
    """A missing descriptor yields no versions."""
    assert read_compose_versions(tmp_path / "docker-compose.yml") == {}


def test_classify_change() -> None:
    """Comparable versions are classified by direction."""
    assert classify_change("v2.151.0", "v2.158.1") == "upgrade"
    assert classify_change("15.8.1.060", "15.1.0.147") == "downgrade"
    assert classify_change("latest", "stable") == "change"


def test_diff_versions_orders_and_categorises() -> None:
    """Changes follow the update order; missing services are reported separately."""
    current = {"db": "15.1.0.147", "auth": "v2.151.0", "kong": "2.8.1"}
    latest = {"db": "15.8.1.060", "auth": "v2.158.1", "kong": "2.8.1", "studio": "20250113"}

    diff = diff_versions(current, latest, order=("db", "auth", "kong", "studio", "rest"))

    assert [change.service for change in diff.changes] == ["db", "auth"]
    assert diff.up_to_date == ["kong"]
    assert diff.not_found == ["studio", "rest"]
    assert diff.as_mapping() == {"db": "15.8.1.060", "auth": "v2.158.1"}
    assert not diff.empty


def test_diff_versions_respects_selection() -> None:
    """Only selected services are compared."""
    diff = diff_versions({"db": "1", "auth": "1"}, {"db": "2", "auth": "2"}, services=["auth"])

    assert [change.service for change in diff.changes] == ["auth"]


def test_diff_with_unknown_latest() -> None:
    """Services absent from the reference are not treated as changes."""
    diff = diff_versions({"db": "1"}, {}, services=["db"])

    assert diff.empty
    assert diff.unknown_latest == ["db"]


def test_rewrite_changes_only_image_lines(tmp_path: Path) -> None:
    """Only the targeted image tags change; everything else is byte-identical."""
    path = tmp_path / "docker-compose.yml"
    original = compose_text(CURRENT_VERSIONS)
    path.write_text(original, encoding="utf-8")

    backup = rewrite_compose_versions(path, {"auth": "v2.158.1", "kong": "2.8.5"})

    updated = path.read_text(encoding="utf-8")
    assert backup == tmp_path / f"docker-compose.yml{REWRITE_BACKUP_SUFFIX}"
    assert backup.read_text(encoding="utf-8") == original
    assert "image: supabase/gotrue:v2.158.1\n" in updated
    assert 'image: "kong:2.8.5"\n' in updated
    assert "image: supabase/postgres:15.1.0.147\n" in updated
    assert "${POSTGRES_PASSWORD}" in updated
    assert parse_compose_versions(updated) == {
        **CURRENT_VERSIONS,
        "auth": "v2.158.1",
        "kong": "2.8.5",
    }
    assert len(updated.splitlines()) == len(original.splitlines())


def test_rewrite_ignores_images_outside_services(tmp_path: Path) -> None:
    """Keys named like a service outside ``services:`` are left alone."""
    path = tmp_path / "docker-compose.yml"
    path.write_text(
        "x-defaults:\n"
        "  db:\n"
        "    image: other/db:1\n"
        "services:\n"
        "  db:\n"
        "    image: supabase/postgres:1\n",
        encoding="utf-8",
    )

    rewrite_compose_versions(path, {"db": "2"})

    text = path.read_text(encoding="utf-8")
    assert "image: other/db:1" in text
    assert "image: supabase/postgres:2" in text


def test_parse_service_selector() -> None:
    """Unknown names are skipped; an all-unknown selection is rejected."""
    known = ("db", "auth", "kong")

    assert parse_service_selector(None, known) == []
    assert parse_service_selector("  ", known) == []
    assert parse_service_selector("auth, nope ,db,auth", known) == ["auth", "db"]
    with pytest.raises(PolicyError, match="No valid services"):
        parse_service_selector("nope,other", known)


def test_resolver_latest_versions() -> None:
    """The reference descriptor is fetched and parsed."""
    session = DummySession(DummyResponse(compose_text({**CURRENT_VERSIONS, "auth": "v3"})))
    resolver = VersionResolver(
        "https://example.test/compose.yml", session=session  # type: ignore[arg-type]
    )

    assert resolver.latest_versions()["auth"] == "v3"
    assert session.urls == ["https://example.test/compose.yml"]


@pytest.mark.parametrize(
    "outcome",
    [
        DummyResponse("", status_code=503),
        requests.ConnectionError("offline"),
        DummyResponse("services: [unterminated"),
    ],
)
def test_resolver_failure_yields_empty_map(outcome: DummyResponse | Exception) -> None:
    """Fetch and parse failures are reported as an empty map."""
    session = DummySession(outcome)
    resolver = VersionResolver("https://example.test/x", session=session)  # type: ignore[arg-type]

    assert resolver.latest_versions() == {}
