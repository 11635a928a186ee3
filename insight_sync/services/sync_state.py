"""Pure state transitions for one synchronization job unit.

``advance`` maps the current unit state and the outcome of the stage that
just finished to the next state plus the stage (if any) that must be
scheduled. It performs no I/O so the whole chain can be exercised without a
scheduler or database.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from insight_sync.services.retry_controller import RetryDecision


class SyncStage(str, Enum):
    OBJECT_CREATE = "object_create"
    FIELD_CREATE = "field_create"
    ACCESS_GRANT = "access_grant"
    VERIFY = "verify"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStage.DONE, SyncStage.FAILED)


@dataclass(frozen=True)
class JobUnitState:
    logical_key: str
    insight_name: str
    sync_run_id: str
    stage: SyncStage = SyncStage.OBJECT_CREATE
    attempt_count: int = 0
    last_error: Optional[str] = None
    field_create_failed: bool = False
    warnings: tuple[str, ...] = ()

    def error_text(self) -> str:
        parts = [self.last_error] if self.last_error else []
        parts.extend(warning for warning in self.warnings if warning not in parts)
        return "; ".join(parts)


@dataclass(frozen=True)
class StageOutcome:
    stage: SyncStage
    success: bool
    error: Optional[str] = None
    error_count: int = 0
    retry: Optional["RetryDecision"] = None


@dataclass(frozen=True)
class Transition:
    state: JobUnitState
    next_stage: Optional[SyncStage] = None
    run_at: Optional[datetime] = None
    notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def terminal(self) -> bool:
        return self.state.stage.is_terminal


class InvalidTransition(ValueError):
    """Raised when an outcome does not match the unit's current stage."""


def _with_warning(state: JobUnitState, warning: str) -> tuple[str, ...]:
    return state.warnings + (warning,)


def advance(state: JobUnitState, outcome: StageOutcome) -> Transition:
    if state.stage.is_terminal:
        raise InvalidTransition(f"Unit {state.logical_key} is already {state.stage.value}.")
    if outcome.stage is not state.stage:
        raise InvalidTransition(
            f"Outcome for {outcome.stage.value} does not match current stage {state.stage.value}."
        )

    if state.stage is SyncStage.OBJECT_CREATE:
        if outcome.success:
            new_state = replace(state, stage=SyncStage.FIELD_CREATE)
        else:
            error = outcome.error or "Object creation failed."
            new_state = replace(
                state,
                stage=SyncStage.FIELD_CREATE,
                last_error=error,
                warnings=_with_warning(state, f"object_create: {error}"),
            )
        return Transition(state=new_state, next_stage=SyncStage.FIELD_CREATE)

    if state.stage is SyncStage.FIELD_CREATE:
        return _advance_field_create(state, outcome)

    if state.stage is SyncStage.ACCESS_GRANT:
        if outcome.success:
            new_state = replace(state, stage=SyncStage.VERIFY)
        else:
            error = outcome.error or "Access grant failed."
            new_state = replace(
                state,
                stage=SyncStage.VERIFY,
                warnings=_with_warning(state, f"access_grant: {error}"),
            )
        return Transition(state=new_state, next_stage=SyncStage.VERIFY)

    return _advance_verify(state, outcome)


def _advance_field_create(state: JobUnitState, outcome: StageOutcome) -> Transition:
    # Local import: retry_controller depends on this module for JobUnitState.
    from insight_sync.services.retry_controller import GiveUp, Retry

    if outcome.success:
        new_state = replace(
            state,
            stage=SyncStage.ACCESS_GRANT,
            field_create_failed=False,
            last_error=None,
        )
        return Transition(state=new_state, next_stage=SyncStage.ACCESS_GRANT)

    error = outcome.error or "Field creation failed."
    decision = outcome.retry
    if isinstance(decision, Retry):
        new_state = replace(
            state,
            stage=SyncStage.FIELD_CREATE,
            attempt_count=decision.attempt_count,
            last_error=error,
            field_create_failed=True,
        )
        return Transition(state=new_state, next_stage=SyncStage.FIELD_CREATE, run_at=decision.run_at)
    if isinstance(decision, GiveUp):
        new_state = replace(
            state,
            stage=SyncStage.ACCESS_GRANT,
            last_error=error,
            field_create_failed=True,
        )
        return Transition(state=new_state, next_stage=SyncStage.ACCESS_GRANT)
    raise InvalidTransition("A failed field creation outcome requires a retry decision.")


def _advance_verify(state: JobUnitState, outcome: StageOutcome) -> Transition:
    problems: list[str] = []
    if outcome.error_count > 0:
        problems.append(f"{outcome.error_count} error(s) reported by stage jobs")
    if not outcome.success and outcome.error:
        problems.append(outcome.error)

    if state.field_create_failed or problems:
        parts = [state.last_error] if state.last_error else []
        parts.extend(problems)
        new_state = replace(
            state,
            stage=SyncStage.FAILED,
            last_error="; ".join(parts) or "Synchronization failed.",
        )
        return Transition(state=new_state, notes=tuple(problems))

    return Transition(state=replace(state, stage=SyncStage.DONE))


__all__ = [
    "InvalidTransition",
    "JobUnitState",
    "StageOutcome",
    "SyncStage",
    "Transition",
    "advance",
]
