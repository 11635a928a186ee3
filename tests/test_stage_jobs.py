from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from insight_sync.models import StageJobRun
from insight_sync.services.stage_jobs import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_SCHEDULED,
    JobDescriptor,
    StageJobExecutor,
)


class RecordingScheduler:
    def __init__(self) -> None:
        self.running = False
        self.jobs: list[dict] = []

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False

    def add_job(self, func, **kwargs) -> None:
        self.jobs.append({"func": func, **kwargs})


def test_submit_runs_chunks_and_records_outcome(session_factory, clock):
    seen_chunks: list[list[str]] = []
    completed: list = []

    def handler(context, chunk):
        seen_chunks.append(list(chunk))
        return {"last": chunk[-1]}

    executor = StageJobExecutor(session_factory, eager=True, clock=clock)
    executor.register("demo", handler, on_complete=completed.append)

    handle = executor.submit(
        JobDescriptor(job_name="demo", logical_key="k", scope=["a", "b", "c", "d", "e"]),
        chunk_size=2,
    )

    assert seen_chunks == [["a", "b"], ["c", "d"], ["e"]]
    outcome = executor.get_outcome(handle)
    assert outcome.status == RUN_STATUS_COMPLETED
    assert outcome.processed_chunks == outcome.total_chunks == 3
    assert outcome.error_count == 0
    assert outcome.result == {"last": "e"}
    assert completed == [handle]


def test_chunk_exceptions_are_counted_not_raised(session_factory, clock):
    def handler(context, chunk):
        if chunk == ["b"]:
            raise RuntimeError("chunk exploded")
        return None

    executor = StageJobExecutor(session_factory, eager=True, clock=clock)
    executor.register("demo", handler)
    sync_run_id = str(uuid.uuid4())

    handle = executor.submit(
        JobDescriptor(job_name="demo", logical_key="k", scope=["a", "b"], sync_run_id=sync_run_id),
        chunk_size=1,
    )

    outcome = executor.get_outcome(handle)
    assert outcome.status == RUN_STATUS_COMPLETED
    assert outcome.error_count == 1
    assert outcome.error_message == "chunk exploded"
    assert executor.aggregate_error_count(sync_run_id) == 1


def test_superseded_runs_leave_the_aggregate_and_keep_parameters(session_factory, clock):
    def handler(context, chunk):
        raise RuntimeError("transient")

    executor = StageJobExecutor(session_factory, eager=True, clock=clock)
    executor.register("demo", handler)
    sync_run_id = str(uuid.uuid4())

    handle = executor.submit(
        JobDescriptor(
            job_name="demo",
            logical_key="k",
            scope=["a"],
            parameters={"role_name": "Analyst"},
            sync_run_id=sync_run_id,
        )
    )

    outcome = executor.get_outcome(handle)
    assert outcome.result == {}
    assert outcome.parameters == {"role_name": "Analyst"}
    assert executor.aggregate_error_count(sync_run_id) == 1

    executor.mark_superseded(handle)

    assert executor.aggregate_error_count(sync_run_id) == 0


def test_deferred_submission_waits_until_due(session_factory, clock):
    calls: list[str] = []
    executor = StageJobExecutor(session_factory, eager=True, clock=clock)
    executor.register("demo", lambda context, chunk: calls.append(context.logical_key))

    handle = executor.submit(
        JobDescriptor(job_name="demo", logical_key="later", run_at=clock.now + timedelta(minutes=5))
    )

    assert calls == []
    assert executor.get_outcome(handle).status == RUN_STATUS_SCHEDULED
    assert executor.run_due(clock.now + timedelta(minutes=4)) == 0

    clock.advance(minutes=5)
    assert executor.run_due() == 1
    assert calls == ["later"]
    assert executor.get_outcome(handle).status == RUN_STATUS_COMPLETED


def test_execute_is_idempotent_per_run(session_factory, clock):
    calls: list[int] = []
    executor = StageJobExecutor(session_factory, eager=True, clock=clock)
    executor.register("demo", lambda context, chunk: calls.append(1))

    handle = executor.submit(JobDescriptor(job_name="demo", logical_key="k"))
    executor.execute(str(handle.run_id))

    assert calls == [1]


def test_start_rearms_pending_runs(session_factory, clock):
    scheduler = RecordingScheduler()
    executor = StageJobExecutor(session_factory, scheduler_factory=lambda: scheduler, clock=clock)
    executor.register("demo", lambda context, chunk: None)

    handle = executor.submit(JobDescriptor(job_name="demo", logical_key="k", run_at=clock.now + timedelta(minutes=1)))
    assert scheduler.jobs == []

    executor.start()

    assert executor.running
    assert [job["id"] for job in scheduler.jobs] == [str(handle.run_id)]
    assert scheduler.jobs[0]["args"] == [str(handle.run_id)]

    executor.submit(JobDescriptor(job_name="demo", logical_key="k2"))
    assert len(scheduler.jobs) == 2

    executor.shutdown()
    assert not executor.running


def test_unregistered_jobs_are_rejected(session_factory):
    executor = StageJobExecutor(session_factory)
    with pytest.raises(KeyError):
        executor.submit(JobDescriptor(job_name="missing", logical_key="k"))


def test_submission_is_persisted(session_factory, db_session, clock):
    executor = StageJobExecutor(session_factory, clock=clock)
    executor.register("demo", lambda context, chunk: None)

    handle = executor.submit(
        JobDescriptor(job_name="demo", logical_key="k", scope=["x"], parameters={"role_name": "Analyst"})
    )

    run = db_session.get(StageJobRun, handle.run_id)
    assert run is not None
    assert run.status == RUN_STATUS_SCHEDULED
    assert run.scope == ["x"]
    assert run.parameters == {"role_name": "Analyst"}
