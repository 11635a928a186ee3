from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from insight_sync.services.retry_controller import GiveUp, Retry
from insight_sync.services.sync_state import (
    InvalidTransition,
    JobUnitState,
    StageOutcome,
    SyncStage,
    advance,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _state(stage: SyncStage, **overrides) -> JobUnitState:
    values = {
        "logical_key": "Sales__insight",
        "insight_name": "Sales",
        "sync_run_id": "run-1",
        "stage": stage,
    }
    values.update(overrides)
    return JobUnitState(**values)


def test_object_create_failure_still_moves_to_field_create():
    transition = advance(
        _state(SyncStage.OBJECT_CREATE),
        StageOutcome(stage=SyncStage.OBJECT_CREATE, success=False, error="boom"),
    )

    assert transition.next_stage is SyncStage.FIELD_CREATE
    assert transition.state.stage is SyncStage.FIELD_CREATE
    assert transition.state.last_error == "boom"
    assert transition.state.warnings == ("object_create: boom",)


def test_field_create_retry_keeps_stage_and_schedules_later_attempt():
    run_at = NOW + timedelta(minutes=5)
    transition = advance(
        _state(SyncStage.FIELD_CREATE),
        StageOutcome(
            stage=SyncStage.FIELD_CREATE,
            success=False,
            error="Field limit exceeded",
            retry=Retry(delay=timedelta(minutes=5), run_at=run_at, attempt_count=1),
        ),
    )

    assert transition.state.stage is SyncStage.FIELD_CREATE
    assert transition.state.attempt_count == 1
    assert transition.state.field_create_failed is True
    assert transition.next_stage is SyncStage.FIELD_CREATE
    assert transition.run_at == run_at


def test_field_create_give_up_continues_to_access_grant():
    transition = advance(
        _state(SyncStage.FIELD_CREATE, attempt_count=1),
        StageOutcome(
            stage=SyncStage.FIELD_CREATE,
            success=False,
            error="Field limit exceeded",
            retry=GiveUp(error="Field limit exceeded", attempt_count=1),
        ),
    )

    assert transition.next_stage is SyncStage.ACCESS_GRANT
    assert transition.run_at is None
    assert transition.state.field_create_failed is True


def test_field_create_failure_requires_a_decision():
    with pytest.raises(InvalidTransition):
        advance(_state(SyncStage.FIELD_CREATE), StageOutcome(stage=SyncStage.FIELD_CREATE, success=False))


def test_field_create_success_clears_error():
    transition = advance(
        _state(SyncStage.FIELD_CREATE, last_error="old", field_create_failed=True, attempt_count=1),
        StageOutcome(stage=SyncStage.FIELD_CREATE, success=True),
    )
    assert transition.state.last_error is None
    assert transition.state.field_create_failed is False
    assert transition.next_stage is SyncStage.ACCESS_GRANT


def test_access_grant_failure_never_blocks_verify():
    transition = advance(
        _state(SyncStage.ACCESS_GRANT),
        StageOutcome(stage=SyncStage.ACCESS_GRANT, success=False, error="role missing"),
    )

    assert transition.next_stage is SyncStage.VERIFY
    assert transition.run_at is None
    assert transition.state.attempt_count == 0
    assert transition.state.warnings == ("access_grant: role missing",)


def test_verify_succeeds_without_errors():
    transition = advance(_state(SyncStage.VERIFY), StageOutcome(stage=SyncStage.VERIFY, success=True))
    assert transition.state.stage is SyncStage.DONE
    assert transition.terminal
    assert transition.next_stage is None


def test_verify_fails_on_job_errors_or_field_failure():
    with_errors = advance(
        _state(SyncStage.VERIFY),
        StageOutcome(stage=SyncStage.VERIFY, success=True, error_count=2),
    )
    assert with_errors.state.stage is SyncStage.FAILED
    assert "2 error(s)" in with_errors.state.last_error

    field_failed = advance(
        _state(SyncStage.VERIFY, field_create_failed=True, last_error="Field limit exceeded"),
        StageOutcome(stage=SyncStage.VERIFY, success=True),
    )
    assert field_failed.state.stage is SyncStage.FAILED
    assert field_failed.state.last_error == "Field limit exceeded"


def test_error_text_accumulates_warnings():
    state = _state(SyncStage.FAILED, last_error="Field limit exceeded", warnings=("access_grant: denied",))
    assert state.error_text() == "Field limit exceeded; access_grant: denied"


def test_terminal_and_mismatched_outcomes_are_rejected():
    with pytest.raises(InvalidTransition):
        advance(_state(SyncStage.DONE), StageOutcome(stage=SyncStage.DONE, success=True))
    with pytest.raises(InvalidTransition):
        advance(_state(SyncStage.VERIFY), StageOutcome(stage=SyncStage.ACCESS_GRANT, success=True))
