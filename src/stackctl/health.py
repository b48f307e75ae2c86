"""Post-restart health evaluation for a target.

Checks run sequentially against the live target and each yields a
:class:`HealthFinding`. A check that raises produces a failing finding rather
than aborting the evaluation, so a report always covers every check.
"""
from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import requests

from .config import HealthConfig
from .providers.compose import ComposeProvider
from .state import TargetInstance

LOGGER = logging.getLogger(__name__)

MAX_LOG_LINES = 10


@dataclass(frozen=True, slots=True)
class HealthFinding:
    """Outcome of one health check."""

    check: str
    ok: bool
    message: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "check": self.check,
            "ok": self.ok,
            "message": self.message,
            "data": dict(self.data),
        }


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Aggregate of every finding from one evaluation."""

    findings: tuple[HealthFinding, ...]

    @property
    def healthy(self) -> bool:
        """Return ``True`` when every check passed."""
        return all(finding.ok for finding in self.findings)

    @property
    def failures(self) -> list[HealthFinding]:
        """Return the failing findings."""
        return [finding for finding in self.findings if not finding.ok]

    def summary(self) -> str:
        """Return a one-line description of the report."""
        if self.healthy:
            return f"All {len(self.findings)} health checks passed."
        failed = ", ".join(finding.check for finding in self.failures)
        return f"{len(self.failures)} of {len(self.findings)} health checks failed: {failed}."

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "healthy": self.healthy,
            "summary": self.summary(),
            "findings": [finding.to_dict() for finding in self.findings],
        }


@dataclass(frozen=True, slots=True)
class HealthCheck:
    """A named check callable."""

    name: str
    run: Callable[[TargetInstance], HealthFinding]


class HealthEvaluator:
    """Run the standard health checks against a target."""

    def __init__(
        self,
        compose: ComposeProvider,
        config: HealthConfig | None = None,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Store the runtime capability, thresholds and injectable clock."""
        self.compose = compose
        self.config = config or HealthConfig()
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def checks(self) -> Sequence[HealthCheck]:
        """Return the checks in evaluation order."""
        return (
            HealthCheck("containers-running", self._containers_running),
            HealthCheck("restart-loop", self._restart_loop),
            HealthCheck("api-liveness", self._api_liveness),
            HealthCheck("error-logs", self._error_logs),
        )

    def evaluate(self, target: TargetInstance) -> HealthReport:
        """Run every check once and return the report."""
        findings = [self._run_check(check, target) for check in self.checks()]
        report = HealthReport(tuple(findings))
        LOGGER.info("Health of %s: %s", target.id, report.summary())
        return report

    def wait_until_healthy(
        self,
        target: TargetInstance,
        *,
        timeout: float = 0.0,
        interval: float = 5.0,
    ) -> HealthReport:
        """Evaluate until healthy or *timeout* seconds pass; return the last report.

        A *timeout* of zero evaluates exactly once.
        """
        deadline = self._clock() + max(timeout, 0.0)
        while True:
            report = self.evaluate(target)
            if report.healthy or self._clock() + interval > deadline:
                return report
            self._sleep(interval)

    def _run_check(self, check: HealthCheck, target: TargetInstance) -> HealthFinding:
        try:
            return check.run(target)
        except Exception as exc:  # noqa: BLE001 - reported as a failing finding
            LOGGER.warning("Health check %s raised: %s", check.name, exc)
            return HealthFinding(
                check.name,
                False,
                f"Check raised an unexpected error: {exc}",
                {"exception": repr(exc), "traceback": traceback.format_exc()},
            )

    # Checks -------------------------------------------------------------
    def _containers_running(self, target: TargetInstance) -> HealthFinding:
        containers = self.compose.ps(target)
        running = sum(1 for container in containers if container.running)
        total = len(containers)
        data = {"running": running, "total": total}
        if total == 0:
            return HealthFinding("containers-running", False, "No containers found.", data)
        if running != total:
            stopped = sorted(c.service or c.name for c in containers if not c.running)
            return HealthFinding(
                "containers-running",
                False,
                f"Only {running}/{total} containers running.",
                {**data, "not_running": stopped},
            )
        return HealthFinding(
            "containers-running", True, f"All {total} containers running.", data
        )

    def _restart_loop(self, target: TargetInstance) -> HealthFinding:
        restarting = sorted(
            container.service or container.name
            for container in self.compose.ps(target)
            if container.restarting
        )
        if restarting:
            return HealthFinding(
                "restart-loop",
                False,
                f"Containers restarting: {', '.join(restarting)}.",
                {"restarting": restarting},
            )
        return HealthFinding("restart-loop", True, "No containers restarting.")

    def _api_liveness(self, target: TargetInstance) -> HealthFinding:
        port = target.api_port
        if port is None:
            return HealthFinding("api-liveness", False, "Target has no API port assigned.")
        url = f"http://localhost:{port}{self.config.liveness_path}"
        if self.config.probe_delay > 0:
            self._sleep(self.config.probe_delay)
        try:
            response = self._session.get(url, timeout=self.config.probe_timeout)
        except requests.RequestException as exc:
            return HealthFinding(
                "api-liveness", False, f"API not reachable at {url}: {exc}", {"url": url}
            )
        data = {"url": url, "status": response.status_code}
        if response.status_code in self.config.alive_statuses:
            return HealthFinding(
                "api-liveness", True, f"API responding (HTTP {response.status_code}).", data
            )
        return HealthFinding(
            "api-liveness", False, f"API returned HTTP {response.status_code}.", data
        )

    def _error_logs(self, target: TargetInstance) -> HealthFinding:
        text = self.compose.logs(target, tail=self.config.log_tail)
        markers = [marker.lower() for marker in self.config.log_markers]
        matches = [
            line.strip()
            for line in text.splitlines()
            if any(marker in line.lower() for marker in markers)
        ]
        if matches:
            return HealthFinding(
                "error-logs",
                False,
                f"Found {len(matches)} error line(s) in recent logs.",
                {"lines": matches[:MAX_LOG_LINES]},
            )
        return HealthFinding("error-logs", True, "No errors in recent logs.")


__all__ = ["HealthCheck", "HealthEvaluator", "HealthFinding", "HealthReport"]
