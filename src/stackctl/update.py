"""Update orchestration for a single target.

The workflow is an explicit state machine. :func:`transition` is pure: given
a state and an event it returns the next state plus the effects to perform.
:class:`UpdateOrchestrator` performs those effects against the capability
providers and feeds the resulting event back in until a terminal state.

::

    IDLE -> SNAPSHOTTING -> RESOLVING -> REWRITING -> RESTARTING
         -> HEALTH_CHECKING -> AWAITING_CONFIRMATION -> COMMITTING
                           \\-> ROLLING_BACK -> ROLLED_BACK

A commit whose final restart fails twice also rolls back.

Once the descriptor rewrite begins, every failure path ends in
``ROLLED_BACK``; the target is never left partially updated.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .errors import HealthCheckError, PolicyError, StackctlError
from .health import HealthEvaluator, HealthReport
from .providers.compose import ComposeProvider
from .snapshots import POST_UPDATE, PRE_UPDATE, Snapshot, SnapshotManager
from .state import TargetInstance
from .versions import (
    VersionChange,
    VersionDiff,
    VersionResolver,
    diff_versions,
    rewrite_compose_versions,
)

LOGGER = logging.getLogger(__name__)


class UpdateState(str, Enum):
    """States of an update run."""

    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    RESOLVING = "resolving"
    REWRITING = "rewriting"
    RESTARTING = "restarting"
    HEALTH_CHECKING = "health_checking"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ROLLING_BACK = "rolling_back"
    COMMITTING = "committing"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        """Return ``True`` for states that end a run."""
        return self in (UpdateState.COMMITTING, UpdateState.ROLLED_BACK)


class UpdateEvent(str, Enum):
    """Events fed into the state machine."""

    REQUESTED = "requested"
    SNAPSHOT_CAPTURED = "snapshot_captured"
    DIFF_EMPTY = "diff_empty"
    DIFF_READY = "diff_ready"
    REWRITTEN = "rewritten"
    RESTARTED = "restarted"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    FAILED = "failed"
    ROLLBACK_DONE = "rollback_done"


class Effect(str, Enum):
    """Side effects requested by a transition, performed in order."""

    CAPTURE_SNAPSHOT = "capture_snapshot"
    RESOLVE_VERSIONS = "resolve_versions"
    REWRITE_DESCRIPTOR = "rewrite_descriptor"
    PULL_AND_RESTART = "pull_and_restart"
    EVALUATE_HEALTH = "evaluate_health"
    REQUEST_CONFIRMATION = "request_confirmation"
    RESTORE_SNAPSHOT = "restore_snapshot"
    CAPTURE_POST_UPDATE = "capture_post_update"
    DISCARD_SNAPSHOT = "discard_snapshot"
    PRUNE_IMAGES = "prune_images"
    RESTART_TARGET = "restart_target"


@dataclass(frozen=True, slots=True)
class Transition:
    """Next state and the effects that lead out of it."""

    state: UpdateState
    effects: tuple[Effect, ...] = ()


# States in which the live descriptor may differ from the pre-update snapshot.
MUTATING_STATES = frozenset(
    {
        UpdateState.REWRITING,
        UpdateState.RESTARTING,
        UpdateState.HEALTH_CHECKING,
        UpdateState.AWAITING_CONFIRMATION,
    }
)

_ROLLBACK = Transition(UpdateState.ROLLING_BACK, (Effect.RESTORE_SNAPSHOT,))

_TRANSITIONS: dict[tuple[UpdateState, UpdateEvent], Transition] = {
    (UpdateState.IDLE, UpdateEvent.REQUESTED): Transition(
        UpdateState.SNAPSHOTTING, (Effect.CAPTURE_SNAPSHOT,)
    ),
    (UpdateState.SNAPSHOTTING, UpdateEvent.SNAPSHOT_CAPTURED): Transition(
        UpdateState.RESOLVING, (Effect.RESOLVE_VERSIONS,)
    ),
    (UpdateState.RESOLVING, UpdateEvent.DIFF_EMPTY): Transition(
        UpdateState.COMMITTING, (Effect.RESTART_TARGET, Effect.DISCARD_SNAPSHOT)
    ),
    (UpdateState.RESOLVING, UpdateEvent.DIFF_READY): Transition(
        UpdateState.REWRITING, (Effect.REWRITE_DESCRIPTOR,)
    ),
    (UpdateState.REWRITING, UpdateEvent.REWRITTEN): Transition(
        UpdateState.RESTARTING, (Effect.PULL_AND_RESTART,)
    ),
    (UpdateState.RESTARTING, UpdateEvent.RESTARTED): Transition(
        UpdateState.HEALTH_CHECKING, (Effect.EVALUATE_HEALTH,)
    ),
    (UpdateState.HEALTH_CHECKING, UpdateEvent.HEALTHY): Transition(
        UpdateState.AWAITING_CONFIRMATION, (Effect.REQUEST_CONFIRMATION,)
    ),
    (UpdateState.HEALTH_CHECKING, UpdateEvent.UNHEALTHY): _ROLLBACK,
    (UpdateState.AWAITING_CONFIRMATION, UpdateEvent.CONFIRMED): Transition(
        UpdateState.COMMITTING,
        (
            Effect.CAPTURE_POST_UPDATE,
            Effect.RESTART_TARGET,
            Effect.DISCARD_SNAPSHOT,
            Effect.PRUNE_IMAGES,
        ),
    ),
    (UpdateState.AWAITING_CONFIRMATION, UpdateEvent.DECLINED): _ROLLBACK,
    (UpdateState.ROLLING_BACK, UpdateEvent.ROLLBACK_DONE): Transition(UpdateState.ROLLED_BACK),
}
for _state in MUTATING_STATES:
    _TRANSITIONS[(_state, UpdateEvent.FAILED)] = _ROLLBACK
# A commit whose final restart fails goes back to the pre-update snapshot.
_TRANSITIONS[(UpdateState.COMMITTING, UpdateEvent.FAILED)] = _ROLLBACK


def transition(state: UpdateState, event: UpdateEvent) -> Transition:
    """Return the transition for *event* in *state*.

    Raises :class:`PolicyError` for pairs the workflow does not allow.
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise PolicyError(
            f"Event '{event.value}' is not valid in update state '{state.value}'."
        ) from None


ConfirmCallback = Callable[[TargetInstance, VersionDiff], bool]


def _always_confirm(target: TargetInstance, diff: VersionDiff) -> bool:
    return True


@dataclass(slots=True)
class UpdateResult:
    """Outcome of one update run."""

    target_id: str
    state: UpdateState = UpdateState.IDLE
    changes: list[VersionChange] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    health: HealthReport | None = None
    snapshot: Snapshot | None = None
    post_update_snapshot: Snapshot | None = None
    history: list[UpdateState] = field(default_factory=list)
    declined: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def rolled_back(self) -> bool:
        """Return ``True`` when the target was restored to its pre-update state."""
        return self.state is UpdateState.ROLLED_BACK

    @property
    def committed(self) -> bool:
        """Return ``True`` when the run finished without rollback."""
        return self.state is UpdateState.COMMITTING

    def raise_for_health(self) -> None:
        """Raise :class:`HealthCheckError` when the run rolled back on failed health."""
        if self.rolled_back and self.health is not None and not self.health.healthy:
            raise HealthCheckError(
                f"Update of '{self.target_id}' rolled back: {self.health.summary()}",
                report=self.health,
            )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "target": self.target_id,
            "state": self.state.value,
            "changes": [change.to_dict() for change in self.changes],
            "not_found": list(self.not_found),
            "health": self.health.to_dict() if self.health else None,
            "snapshot": str(self.snapshot.path) if self.snapshot else None,
            "post_update_snapshot": (
                str(self.post_update_snapshot.path) if self.post_update_snapshot else None
            ),
            "history": [state.value for state in self.history],
            "declined": self.declined,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class _Run:
    target: TargetInstance
    services: Sequence[str] | None
    result: UpdateResult
    diff: VersionDiff = field(default_factory=VersionDiff)
    restarted: bool = False


class UpdateOrchestrator:
    """Drive the update state machine for one target at a time."""

    def __init__(
        self,
        compose: ComposeProvider,
        snapshots: SnapshotManager,
        resolver: VersionResolver,
        health: HealthEvaluator,
        *,
        confirm: ConfirmCallback = _always_confirm,
        order: Sequence[str] = (),
        settle_seconds: float = 10.0,
        health_timeout: float = 0.0,
        health_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store collaborators and timing settings."""
        self.compose = compose
        self.snapshots = snapshots
        self.resolver = resolver
        self.health = health
        self.confirm = confirm
        self.order = tuple(order)
        self.settle_seconds = settle_seconds
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self._sleep = sleep

    def run(self, target: TargetInstance, services: Sequence[str] | None = None) -> UpdateResult:
        """Update *target* (optionally only *services*) and return the outcome."""
        run = _Run(target=target, services=services, result=UpdateResult(target_id=target.id))
        event: UpdateEvent | None = UpdateEvent.REQUESTED
        while event is not None:
            step = self._apply(run, event)
            try:
                event = self._perform(run, step.effects)
            except Exception as exc:
                self._recover(run, exc)
                raise
        LOGGER.info("Update of %s finished in state %s", target.id, run.result.state.value)
        return run.result

    def _apply(self, run: _Run, event: UpdateEvent) -> Transition:
        step = transition(run.result.state, event)
        LOGGER.debug(
            "%s: %s --%s--> %s",
            run.target.id,
            run.result.state.value,
            event.value,
            step.state.value,
        )
        run.result.state = step.state
        run.result.history.append(step.state)
        return step

    def _recover(self, run: _Run, exc: Exception) -> None:
        state = run.result.state
        target = run.target
        unfinished_commit = (
            state is UpdateState.COMMITTING and bool(run.diff.changes) and not run.restarted
        )
        if (state in MUTATING_STATES or unfinished_commit) and run.result.snapshot is not None:
            LOGGER.error("Update of %s failed in %s: %s; rolling back", target.id, state.value, exc)
            self._apply(run, UpdateEvent.FAILED)
            self.snapshots.restore(target, run.result.snapshot)
            if run.result.post_update_snapshot is not None:
                self.snapshots.discard(run.result.post_update_snapshot)
                run.result.post_update_snapshot = None
            self._apply(run, UpdateEvent.ROLLBACK_DONE)
            return
        if state in (UpdateState.SNAPSHOTTING, UpdateState.RESOLVING):
            # Nothing was rewritten; bring the stopped target back up.
            LOGGER.error("Update of %s aborted in %s: %s", target.id, state.value, exc)
            if run.result.snapshot is not None:
                self.snapshots.discard(run.result.snapshot)
            try:
                self.compose.up(target)
            except StackctlError as restart_exc:
                LOGGER.error("Could not restart %s: %s", target.id, restart_exc)

    def _perform(self, run: _Run, effects: Sequence[Effect]) -> UpdateEvent | None:
        event: UpdateEvent | None = None
        for effect in effects:
            handler = getattr(self, f"_effect_{effect.value}")
            outcome = handler(run)
            if outcome is not None:
                event = outcome
        return event

    # Effects ------------------------------------------------------------
    def _effect_capture_snapshot(self, run: _Run) -> UpdateEvent:
        run.result.snapshot = self.snapshots.capture(run.target, PRE_UPDATE)
        return UpdateEvent.SNAPSHOT_CAPTURED

    def _effect_resolve_versions(self, run: _Run) -> UpdateEvent:
        current = self.resolver.current_versions(run.target)
        latest = self.resolver.latest_versions()
        if not latest:
            run.result.warnings.append("Reference versions unavailable; nothing to update.")
        run.diff = diff_versions(current, latest, services=run.services, order=self.order)
        run.result.changes = list(run.diff.changes)
        run.result.not_found = list(run.diff.not_found)
        return UpdateEvent.DIFF_EMPTY if run.diff.empty else UpdateEvent.DIFF_READY

    def _effect_rewrite_descriptor(self, run: _Run) -> UpdateEvent:
        rewrite_compose_versions(run.target.compose_file, run.diff.as_mapping())
        return UpdateEvent.REWRITTEN

    def _effect_pull_and_restart(self, run: _Run) -> UpdateEvent:
        self.compose.pull(run.target)
        self.compose.up(run.target)
        if self.settle_seconds > 0:
            self._sleep(self.settle_seconds)
        return UpdateEvent.RESTARTED

    def _effect_evaluate_health(self, run: _Run) -> UpdateEvent:
        report = self.health.wait_until_healthy(
            run.target, timeout=self.health_timeout, interval=self.health_interval
        )
        run.result.health = report
        return UpdateEvent.HEALTHY if report.healthy else UpdateEvent.UNHEALTHY

    def _effect_request_confirmation(self, run: _Run) -> UpdateEvent:
        if self.confirm(run.target, run.diff):
            return UpdateEvent.CONFIRMED
        run.result.declined = True
        return UpdateEvent.DECLINED

    def _effect_restore_snapshot(self, run: _Run) -> UpdateEvent:
        assert run.result.snapshot is not None
        self.snapshots.restore(run.target, run.result.snapshot)
        return UpdateEvent.ROLLBACK_DONE

    def _effect_capture_post_update(self, run: _Run) -> None:
        try:
            run.result.post_update_snapshot = self.snapshots.capture(run.target, POST_UPDATE)
        except StackctlError as exc:
            message = f"Post-update snapshot failed: {exc}"
            LOGGER.warning("%s: %s", run.target.id, message)
            run.result.warnings.append(message)

    def _effect_restart_target(self, run: _Run) -> None:
        try:
            self.compose.up(run.target)
        except StackctlError as exc:
            message = f"Restart failed, retrying once: {exc}"
            LOGGER.warning("%s: %s", run.target.id, message)
            run.result.warnings.append(message)
            self.compose.up(run.target)
        run.restarted = True

    def _effect_discard_snapshot(self, run: _Run) -> None:
        # Keep the pre-update copy when no post-update copy replaced it.
        if run.diff.changes and run.result.post_update_snapshot is None:
            return
        if run.result.snapshot is not None:
            self.snapshots.discard(run.result.snapshot)
            run.result.snapshot = None

    def _effect_prune_images(self, run: _Run) -> None:
        try:
            self.compose.image_prune()
        except StackctlError as exc:
            run.result.warnings.append(f"Image prune failed: {exc}")


__all__ = [
    "Effect",
    "MUTATING_STATES",
    "Transition",
    "UpdateEvent",
    "UpdateOrchestrator",
    "UpdateResult",
    "UpdateState",
    "transition",
]
