"""Synchronize an insight's schema into its target object as a chain of stage jobs.

Each stage (object create, field create, access grant, verify) is submitted
to the :class:`StageJobExecutor` as its own job. The next stage is only
submitted from the completion callback of the previous one, after the unit's
state has been persisted, so the chain can resume across process restarts.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Generator, Mapping, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from insight_sync.models import SyncJobUnit, SyncStatus
from insight_sync.services.application_settings import (
    ACCESS_ROLE_KEY,
    FOLLOW_ON_TARGETS_KEY,
    ConfigurationStore,
)
from insight_sync.services.auth_tokens import TokenExchangeError
from insight_sync.services.errors import (
    InsightSyncError,
    PermanentConfigError,
    SyncInProgressError,
    TransientStageFailure,
)
from insight_sync.services.insight_catalog import InsightCatalog
from insight_sync.services.metadata_client import (
    BatchResult,
    MetadataResult,
    MetadataServiceError,
    ObjectDefinition,
)
from insight_sync.services.result_reporter import ResultReporter
from insight_sync.services.retry_controller import Retry, RetryController
from insight_sync.services.schema_planner import FieldCreationRequest, plan_field_requests
from insight_sync.services.stage_jobs import JobContext, JobHandle, JobDescriptor, StageJobExecutor
from insight_sync.services.sync_state import (
    JobUnitState,
    StageOutcome,
    SyncStage,
    Transition,
    advance,
)

logger = logging.getLogger(__name__)

SYNC_PHASE = "schema_sync"

JOB_NAMES = {
    SyncStage.OBJECT_CREATE: "schema_sync.object_create",
    SyncStage.FIELD_CREATE: "schema_sync.field_create",
    SyncStage.ACCESS_GRANT: "schema_sync.access_grant",
    SyncStage.VERIFY: "schema_sync.verify",
}
_STAGE_BY_JOB = {job_name: stage for stage, job_name in JOB_NAMES.items()}


class SchemaAdministration(Protocol):
    def create_object(self, definition: ObjectDefinition) -> MetadataResult: ...

    def create_fields(
        self,
        numeric_fields: Sequence[FieldCreationRequest],
        text_fields: Sequence[FieldCreationRequest],
    ) -> BatchResult: ...

    def grant_full_access(self, object_name: str, role_name: str) -> None: ...


OnSuccessHook = Callable[[JobUnitState], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _split_warnings(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(line for line in raw.splitlines() if line.strip())


def _state_from_row(row: SyncJobUnit) -> JobUnitState:
    return JobUnitState(
        logical_key=row.logical_key,
        insight_name=row.insight_name,
        sync_run_id=str(row.sync_run_id),
        stage=SyncStage(row.stage),
        attempt_count=row.attempt_count,
        last_error=row.last_error,
        field_create_failed=row.field_create_failed,
        warnings=_split_warnings(row.warnings),
    )


class SchemaSyncOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: StageJobExecutor,
        schema_admin: SchemaAdministration,
        *,
        catalog: InsightCatalog | None = None,
        config_store: ConfigurationStore | None = None,
        retry_controller: RetryController | None = None,
        reporter: ResultReporter,
        on_success_hooks: Sequence[OnSuccessHook] = (),
        chunk_size: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._schema_admin = schema_admin
        self._catalog = catalog or InsightCatalog(session_factory)
        self._config = config_store or ConfigurationStore(session_factory)
        self._retry = retry_controller or RetryController(self._config, clock=clock)
        self._reporter = reporter
        self._hooks: list[OnSuccessHook] = list(on_success_hooks)
        self._chunk_size = chunk_size
        self._clock = clock

        executor.register(JOB_NAMES[SyncStage.OBJECT_CREATE], self._run_object_create, on_complete=self.on_stage_complete)
        executor.register(JOB_NAMES[SyncStage.FIELD_CREATE], self._run_field_create, on_complete=self.on_stage_complete)
        executor.register(JOB_NAMES[SyncStage.ACCESS_GRANT], self._run_access_grant, on_complete=self.on_stage_complete)
        executor.register(JOB_NAMES[SyncStage.VERIFY], self._run_verify, on_complete=self.on_stage_complete)

    def add_on_success_hook(self, hook: OnSuccessHook) -> None:
        self._hooks.append(hook)

    def request_sync(self, insight_name: str) -> JobUnitState:
        """Create or reset the unit for ``insight_name`` and schedule object creation.

        Raises :class:`PermanentConfigError` when the insight, its target
        object or the access role is missing.
        """

        name = (insight_name or "").strip()
        if not name:
            raise PermanentConfigError("An insight name is required to request a synchronization.")
        snapshot = self._catalog.get_by_name(name)
        if snapshot is None:
            raise PermanentConfigError(f"Insight '{name}' is not registered.")
        if not snapshot.is_active:
            raise PermanentConfigError(f"Insight '{name}' is inactive.")
        target = (snapshot.target_object_name or "").strip()
        if not target:
            raise PermanentConfigError(f"Insight '{name}' has no target object name.")
        role_name = self._config.get(ACCESS_ROLE_KEY)
        if not role_name:
            raise PermanentConfigError("No access role is configured for synchronized objects.")

        now = self._clock()
        with self._session_scope() as session:
            row = self._get_unit_row(session, target)
            if row is not None and not SyncStage(row.stage).is_terminal:
                raise SyncInProgressError(
                    f"A synchronization for {target} is already in progress (stage {row.stage})."
                )
            if row is None:
                row = SyncJobUnit(logical_key=target)
                session.add(row)
            row.insight_name = snapshot.name
            row.sync_run_id = uuid.uuid4()
            row.stage = SyncStage.OBJECT_CREATE.value
            row.attempt_count = 0
            row.last_error = None
            row.field_create_failed = False
            row.warnings = None
            row.next_attempt_at = None
            row.started_at = now
            row.completed_at = None
            session.flush()
            state = _state_from_row(row)
            self._write_status(session, state, now)

        logger.info("Requested schema synchronization for %s (run=%s)", target, state.sync_run_id)
        self._submit_stage(state, SyncStage.OBJECT_CREATE, parameters={"role_name": role_name})
        return state

    def get_unit(self, logical_key: str) -> JobUnitState | None:
        with self._session_scope() as session:
            row = self._get_unit_row(session, logical_key)
            return _state_from_row(row) if row else None

    def on_stage_complete(self, handle: JobHandle) -> None:
        outcome = self._executor.get_outcome(handle)
        stage = _STAGE_BY_JOB.get(outcome.job_name)
        if stage is None:
            logger.warning("Ignoring completion for unknown job %s", outcome.job_name)
            return

        state = self.get_unit(outcome.logical_key)
        if state is None or state.sync_run_id != outcome.sync_run_id:
            logger.info(
                "Ignoring stale %s completion for %s (run=%s)",
                stage.value,
                outcome.logical_key,
                outcome.sync_run_id,
            )
            return
        if state.stage is not stage:
            logger.warning(
                "Ignoring %s completion for %s because the unit is at %s",
                stage.value,
                state.logical_key,
                state.stage.value,
            )
            return

        stage_outcome = self._build_outcome(stage, state, outcome.result, outcome.error_count, outcome.error_message)
        if isinstance(stage_outcome.retry, Retry):
            self._executor.mark_superseded(handle)
        transition = advance(state, stage_outcome)
        self._apply(transition, parameters=self._stage_parameters(outcome.parameters))

    def _build_outcome(
        self,
        stage: SyncStage,
        state: JobUnitState,
        result: Mapping[str, Any],
        error_count: int,
        error_message: str | None,
    ) -> StageOutcome:
        if stage is SyncStage.VERIFY:
            return StageOutcome(
                stage=stage,
                success=error_count == 0,
                error=error_message,
                error_count=int(result.get("error_count", 0)),
            )

        success = bool(result.get("success")) and error_count == 0
        error = result.get("error") or error_message
        if success:
            return StageOutcome(stage=stage, success=True)
        if stage is SyncStage.FIELD_CREATE:
            failing_state = replace(state, last_error=error, field_create_failed=True)
            return StageOutcome(stage=stage, success=False, error=error, retry=self._retry.attempt(failing_state))
        return StageOutcome(stage=stage, success=False, error=error)

    @staticmethod
    def _stage_parameters(parameters: Mapping[str, Any]) -> dict[str, Any]:
        role_name = parameters.get("role_name")
        return {"role_name": role_name} if role_name else {}

    def _apply(self, transition: Transition, *, parameters: Mapping[str, Any]) -> None:
        state = transition.state
        now = self._clock()
        with self._session_scope() as session:
            row = self._get_unit_row(session, state.logical_key)
            if row is None:
                logger.warning("Unit %s disappeared before its transition could be stored", state.logical_key)
                return
            row.stage = state.stage.value
            row.attempt_count = state.attempt_count
            row.last_error = state.last_error
            row.field_create_failed = state.field_create_failed
            row.warnings = "\n".join(state.warnings) or None
            row.next_attempt_at = transition.run_at
            if transition.terminal:
                row.completed_at = now
            self._write_status(session, state, now)

        logger.info(
            "Unit %s moved to %s (attempts=%s)",
            state.logical_key,
            state.stage.value,
            state.attempt_count,
        )

        if transition.next_stage is not None:
            self._submit_stage(state, transition.next_stage, parameters=parameters, run_at=transition.run_at)
            return

        if state.stage is SyncStage.DONE:
            self._reporter.report(state.logical_key, SYNC_PHASE, success=True)
            self._run_hooks(state)
        elif state.stage is SyncStage.FAILED:
            self._reporter.report(state.logical_key, SYNC_PHASE, success=False, error=state.error_text())

    def _submit_stage(
        self,
        state: JobUnitState,
        stage: SyncStage,
        *,
        parameters: Mapping[str, Any],
        run_at: datetime | None = None,
    ) -> None:
        descriptor = JobDescriptor(
            job_name=JOB_NAMES[stage],
            logical_key=state.logical_key,
            scope=(state.logical_key,),
            parameters={"insight_name": state.insight_name, **parameters},
            sync_run_id=state.sync_run_id,
            run_at=run_at,
        )
        self._executor.submit(descriptor, self._chunk_size)

    def _run_hooks(self, state: JobUnitState) -> None:
        for hook in self._hooks:
            try:
                hook(state)
            except Exception:  # noqa: BLE001
                logger.exception("On-success hook %r failed for %s", hook, state.logical_key)

    # Stage handlers. Each returns the stage result that the completion
    # callback turns into a StageOutcome.

    def _run_object_create(self, context: JobContext, chunk: Sequence[str]) -> Mapping[str, Any]:
        errors: list[str] = []
        for target in chunk:
            try:
                self._create_object(context, target)
            except TransientStageFailure as exc:
                errors.append(exc.message)
        return {"success": not errors, "error": "; ".join(errors) or None}

    def _create_object(self, context: JobContext, target: str) -> None:
        insight_name = str(context.parameters.get("insight_name") or target)
        snapshot = self._catalog.get_by_name(insight_name)
        label = snapshot.label if snapshot else insight_name
        definition = ObjectDefinition(
            full_name=target,
            label=label,
            plural_label=label,
            description=f"Synchronized from insight {insight_name}",
        )
        try:
            result = self._schema_admin.create_object(definition)
        except (MetadataServiceError, TokenExchangeError) as exc:
            raise TransientStageFailure(SyncStage.OBJECT_CREATE.value, str(exc)) from exc
        if result.already_exists:
            logger.info("Object %s already exists; continuing", target)
        if not result.success:
            raise TransientStageFailure(
                SyncStage.OBJECT_CREATE.value,
                "; ".join(result.errors) or f"Object {target} could not be created.",
            )

    def _run_field_create(self, context: JobContext, chunk: Sequence[str]) -> Mapping[str, Any]:
        errors: list[str] = []
        for target in chunk:
            try:
                self._create_fields(context, target)
            except TransientStageFailure as exc:
                errors.append(exc.message)
        return {"success": not errors, "error": "; ".join(errors) or None}

    def _create_fields(self, context: JobContext, target: str) -> None:
        insight_name = str(context.parameters.get("insight_name") or target)
        snapshot = self._catalog.get_by_name(insight_name)
        if snapshot is None:
            raise TransientStageFailure(SyncStage.FIELD_CREATE.value, f"Insight '{insight_name}' is no longer registered.")
        plan = plan_field_requests(target, snapshot.attributes)
        if plan.total == 0:
            logger.info("Insight %s has no attributes; nothing to create on %s", insight_name, target)
            return
        try:
            result = self._schema_admin.create_fields(plan.numeric_fields, plan.text_fields)
        except (MetadataServiceError, TokenExchangeError) as exc:
            raise TransientStageFailure(SyncStage.FIELD_CREATE.value, str(exc)) from exc
        if not result.success:
            raise TransientStageFailure(
                SyncStage.FIELD_CREATE.value,
                "; ".join(result.errors) or f"Field creation for {target} failed.",
            )
        logger.info(
            "Created %s numeric and %s text field(s) on %s",
            len(plan.numeric_fields),
            len(plan.text_fields),
            target,
        )

    def _run_access_grant(self, context: JobContext, chunk: Sequence[str]) -> Mapping[str, Any]:
        role_name = str(context.parameters.get("role_name") or "")
        errors: list[str] = []
        for target in chunk:
            if not role_name:
                errors.append("No access role was provided for the grant.")
                continue
            try:
                self._schema_admin.grant_full_access(target, role_name)
            except (MetadataServiceError, TokenExchangeError) as exc:
                logger.warning("Access grant on %s for role %s failed: %s", target, role_name, exc)
                errors.append(str(exc))
        return {"success": not errors, "error": "; ".join(errors) or None}

    def _run_verify(self, context: JobContext, chunk: Sequence[str]) -> Mapping[str, Any]:
        if not context.sync_run_id:
            return {"error_count": 0}
        return {"error_count": self._executor.aggregate_error_count(context.sync_run_id)}

    def _write_status(self, session: Session, state: JobUnitState, now: datetime) -> None:
        status = (
            session.execute(select(SyncStatus).where(SyncStatus.target_name == state.logical_key).limit(1))
            .scalars()
            .first()
        )
        if status is None:
            status = SyncStatus(target_name=state.logical_key)
            session.add(status)
        status.stage = state.stage.value
        status.sync_done = state.stage is SyncStage.DONE
        status.last_error = state.error_text()
        if state.stage is SyncStage.DONE:
            status.last_sync_time = now

    @staticmethod
    def _get_unit_row(session: Session, logical_key: str) -> SyncJobUnit | None:
        return (
            session.execute(select(SyncJobUnit).where(SyncJobUnit.logical_key == logical_key).limit(1))
            .scalars()
            .first()
        )

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


class FollowOnSyncHook:
    """Request synchronizations for the configured dependent insights."""

    def __init__(
        self,
        orchestrator: SchemaSyncOrchestrator,
        config_store: ConfigurationStore,
        *,
        targets: Sequence[str] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._config = config_store
        self._targets = list(targets) if targets is not None else None

    def __call__(self, state: JobUnitState) -> None:
        targets = self._targets if self._targets is not None else self._config.get_list(FOLLOW_ON_TARGETS_KEY)
        source = state.insight_name.strip().lower()
        # Follow-on runs never fan out again.
        if source in {target.strip().lower() for target in targets}:
            return
        for insight_name in targets:
            try:
                self._orchestrator.request_sync(insight_name)
            except InsightSyncError as exc:
                logger.warning(
                    "Follow-on synchronization of %s after %s was not started: %s",
                    insight_name,
                    state.logical_key,
                    exc,
                )


__all__ = [
    "FollowOnSyncHook",
    "JOB_NAMES",
    "OnSuccessHook",
    "SYNC_PHASE",
    "SchemaAdministration",
    "SchemaSyncOrchestrator",
]
