"""Chunked, persisted job execution on top of APScheduler.

Every submission is written to ``stage_job_runs`` before it is armed on the
scheduler, so deferred one-shot runs survive a process restart: ``start``
re-arms every run that is still ``scheduled``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Generator, Mapping, Sequence
from uuid import UUID

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from insight_sync.models import StageJobRun

logger = logging.getLogger(__name__)

RUN_STATUS_SCHEDULED = "scheduled"
RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class JobDescriptor:
    job_name: str
    logical_key: str
    scope: Sequence[str] = ()
    parameters: Mapping[str, Any] = field(default_factory=dict)
    sync_run_id: str | None = None
    run_at: datetime | None = None


@dataclass(frozen=True)
class JobHandle:
    run_id: UUID


@dataclass(frozen=True)
class JobContext:
    run_id: UUID
    job_name: str
    logical_key: str
    sync_run_id: str | None
    parameters: Mapping[str, Any]


@dataclass(frozen=True)
class JobOutcome:
    run_id: UUID
    job_name: str
    logical_key: str
    status: str
    error_count: int
    processed_chunks: int
    total_chunks: int
    error_message: str | None
    result: Mapping[str, Any]
    sync_run_id: str | None = None
    parameters: Mapping[str, Any] = field(default_factory=dict)


ChunkHandler = Callable[[JobContext, Sequence[str]], Mapping[str, Any] | None]
CompletionCallback = Callable[[JobHandle], None]


@dataclass
class _Registration:
    handler: ChunkHandler
    on_complete: CompletionCallback | None = None


class StageJobExecutor:
    """Run registered chunk handlers as persisted one-shot jobs.

    When no scheduler is running and ``eager`` is set, submissions that are
    already due execute inline; deferred submissions wait for ``run_due`` or
    for the scheduler to start.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        scheduler_factory: Callable[[], BaseScheduler] = AsyncIOScheduler,
        eager: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._scheduler_factory = scheduler_factory
        self._scheduler: BaseScheduler | None = None
        self._registrations: dict[str, _Registration] = {}
        self._eager = eager
        self._clock = clock

    def register(
        self,
        job_name: str,
        handler: ChunkHandler,
        *,
        on_complete: CompletionCallback | None = None,
    ) -> None:
        self._registrations[job_name] = _Registration(handler=handler, on_complete=on_complete)

    def start(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            return
        self._scheduler = self._scheduler_factory()
        self._scheduler.start()
        self.reload_jobs()

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def reload_jobs(self) -> int:
        scheduler = self._scheduler
        if scheduler is None:
            return 0
        with self._session_scope() as session:
            pending = (
                session.execute(
                    select(StageJobRun.id, StageJobRun.scheduled_for).where(
                        StageJobRun.status == RUN_STATUS_SCHEDULED
                    )
                )
                .all()
            )
        for run_id, scheduled_for in pending:
            self._arm(run_id, _as_utc(scheduled_for))
        if pending:
            logger.info("Re-armed %s pending stage job(s)", len(pending))
        return len(pending)

    def submit(self, descriptor: JobDescriptor, chunk_size: int = 1) -> JobHandle:
        if descriptor.job_name not in self._registrations:
            raise KeyError(f"No handler registered for job '{descriptor.job_name}'.")
        scope = [str(item) for item in descriptor.scope]
        size = max(1, int(chunk_size))
        total_chunks = max(1, (len(scope) + size - 1) // size)
        run_at = _as_utc(descriptor.run_at)

        with self._session_scope() as session:
            run = StageJobRun(
                job_name=descriptor.job_name,
                logical_key=descriptor.logical_key,
                sync_run_id=UUID(descriptor.sync_run_id) if descriptor.sync_run_id else None,
                scope=scope,
                parameters=dict(descriptor.parameters),
                result={},
                chunk_size=size,
                status=RUN_STATUS_SCHEDULED,
                total_chunks=total_chunks,
                processed_chunks=0,
                error_count=0,
                scheduled_for=run_at,
            )
            session.add(run)
            session.flush()
            run_id = run.id

        logger.debug(
            "Submitted %s for %s (run=%s, chunks=%s, run_at=%s)",
            descriptor.job_name,
            descriptor.logical_key,
            run_id,
            total_chunks,
            run_at.isoformat() if run_at else "now",
        )
        handle = JobHandle(run_id=run_id)
        if self.running:
            self._arm(run_id, run_at)
        elif self._eager and (run_at is None or run_at <= self._clock()):
            self.execute(str(run_id))
        return handle

    def run_due(self, now: datetime | None = None) -> int:
        """Execute every scheduled run whose start time has passed."""

        cutoff = _as_utc(now) or self._clock()
        with self._session_scope() as session:
            pending = (
                session.execute(
                    select(StageJobRun.id, StageJobRun.scheduled_for)
                    .where(StageJobRun.status == RUN_STATUS_SCHEDULED)
                    .order_by(StageJobRun.created_at)
                )
                .all()
            )
        executed = 0
        for run_id, scheduled_for in pending:
            due_at = _as_utc(scheduled_for)
            if due_at is None or due_at <= cutoff:
                self.execute(str(run_id))
                executed += 1
        return executed

    def execute(self, run_id: str) -> None:
        run_uuid = UUID(run_id)
        with self._session_scope() as session:
            run = session.get(StageJobRun, run_uuid)
            if run is None or run.status != RUN_STATUS_SCHEDULED:
                logger.info("Skipping stage job %s because it is missing or already started", run_uuid)
                return
            run.status = RUN_STATUS_RUNNING
            run.started_at = self._clock()
            context = JobContext(
                run_id=run.id,
                job_name=run.job_name,
                logical_key=run.logical_key,
                sync_run_id=str(run.sync_run_id) if run.sync_run_id else None,
                parameters=dict(run.parameters or {}),
            )
            scope = list(run.scope or [])
            chunk_size = run.chunk_size

        registration = self._registrations.get(context.job_name)
        if registration is None:
            self._finish(run_uuid, RUN_STATUS_FAILED, 1, 0, f"No handler registered for {context.job_name}.", {})
            logger.error("Stage job %s has no registered handler for %s", run_uuid, context.job_name)
            return

        chunks = [scope[index:index + chunk_size] for index in range(0, len(scope), chunk_size)] or [[]]
        error_count = 0
        processed = 0
        last_error: str | None = None
        result: dict[str, Any] = {}
        for chunk in chunks:
            try:
                chunk_result = registration.handler(context, chunk)
            except Exception as exc:  # noqa: BLE001
                error_count += 1
                last_error = str(exc) or exc.__class__.__name__
                logger.exception(
                    "Chunk %s/%s of stage job %s (%s) failed",
                    processed + 1,
                    len(chunks),
                    run_uuid,
                    context.job_name,
                )
            else:
                if chunk_result:
                    result.update(chunk_result)
            processed += 1

        self._finish(run_uuid, RUN_STATUS_COMPLETED, error_count, processed, last_error, result)
        logger.info(
            "Completed stage job %s for %s (chunks=%s, errors=%s)",
            context.job_name,
            context.logical_key,
            processed,
            error_count,
        )

        if registration.on_complete is not None:
            try:
                registration.on_complete(JobHandle(run_id=run_uuid))
            except Exception:  # noqa: BLE001
                logger.exception("Completion callback for stage job %s failed", run_uuid)

    def get_outcome(self, handle: JobHandle) -> JobOutcome:
        with self._session_scope() as session:
            run = session.get(StageJobRun, handle.run_id)
            if run is None:
                raise LookupError(f"Stage job run {handle.run_id} not found.")
            return JobOutcome(
                run_id=run.id,
                job_name=run.job_name,
                logical_key=run.logical_key,
                status=run.status,
                error_count=run.error_count,
                processed_chunks=run.processed_chunks,
                total_chunks=run.total_chunks,
                error_message=run.error_message,
                result=dict(run.result or {}),
                sync_run_id=str(run.sync_run_id) if run.sync_run_id else None,
                parameters=dict(run.parameters or {}),
            )

    def mark_superseded(self, handle: JobHandle) -> None:
        """Exclude a run's errors from the aggregate once a retry replaces it."""

        with self._session_scope() as session:
            run = session.get(StageJobRun, handle.run_id)
            if run is not None:
                run.superseded = True

    def aggregate_error_count(self, sync_run_id: str) -> int:
        with self._session_scope() as session:
            total = session.execute(
                select(func.coalesce(func.sum(StageJobRun.error_count), 0))
                .where(StageJobRun.sync_run_id == UUID(sync_run_id))
                .where(StageJobRun.superseded.is_(False))
            ).scalar_one()
        return int(total or 0)

    def _arm(self, run_id: UUID, run_at: datetime | None) -> None:
        scheduler = self._scheduler
        if scheduler is None:
            return
        scheduler.add_job(
            self.execute,
            trigger=DateTrigger(run_date=run_at or self._clock()),
            args=[str(run_id)],
            id=str(run_id),
            replace_existing=True,
            misfire_grace_time=None,
        )

    def _finish(
        self,
        run_id: UUID,
        status: str,
        error_count: int,
        processed: int,
        error_message: str | None,
        result: Mapping[str, Any],
    ) -> None:
        with self._session_scope() as session:
            run = session.get(StageJobRun, run_id)
            if run is None:
                return
            run.status = status
            run.error_count = error_count
            run.processed_chunks = processed
            run.error_message = error_message[:2000] if error_message else None
            run.result = dict(result)
            run.completed_at = self._clock()

    @contextmanager
    def _session_scope(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        session.expire_on_commit = False
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


__all__ = [
    "ChunkHandler",
    "CompletionCallback",
    "JobContext",
    "JobDescriptor",
    "JobHandle",
    "JobOutcome",
    "RUN_STATUS_COMPLETED",
    "RUN_STATUS_FAILED",
    "RUN_STATUS_RUNNING",
    "RUN_STATUS_SCHEDULED",
    "StageJobExecutor",
]
