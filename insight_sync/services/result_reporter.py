from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Generator, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from insight_sync.models import SyncErrorRecord
from insight_sync.services.errors import ReportingFailure
from insight_sync.services.sync_notifications import SyncEventStatus, SyncStatusEvent

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Synchronization failed."


class StatusPublisher(Protocol):
    def publish(self, event: SyncStatusEvent) -> None: ...


class ResultReporter:
    """Persist terminal error state per scope and publish a status event.

    Reporting must never mask the synchronization result, so every failure
    here is logged and swallowed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        publisher: StatusPublisher,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._clock = clock

    def report(self, scope_key: str, phase: str, *, success: bool, error: str = "") -> None:
        occurred_at = self._clock()
        error = "" if success else (error or DEFAULT_FAILURE_MESSAGE)
        try:
            self._persist(scope_key, phase, success, error, occurred_at)
        except ReportingFailure as exc:
            logger.warning("Unable to persist %s result for %s: %s", phase, scope_key, exc)

        event = SyncStatusEvent(
            phase=phase,
            status=SyncEventStatus.SUCCESS if success else SyncEventStatus.FAILED,
            error=error,
            target_name=scope_key,
            occurred_at=occurred_at,
        )
        try:
            self._publisher.publish(event)
        except Exception:  # noqa: BLE001
            logger.exception("Unable to publish %s notification for %s", phase, scope_key)

    def _persist(self, scope_key: str, phase: str, success: bool, error: str, occurred_at: datetime) -> None:
        try:
            if success:
                self._clear_error(scope_key)
            else:
                self._store_error(scope_key, phase, error, occurred_at)
        except Exception as exc:  # noqa: BLE001
            raise ReportingFailure(f"status write failed: {exc}") from exc

    def _store_error(self, scope_key: str, phase: str, error: str, occurred_at: datetime) -> None:
        with self._session_scope() as session:
            record = session.execute(
                select(SyncErrorRecord).where(SyncErrorRecord.scope_key == scope_key).limit(1)
            ).scalars().first()
            if record is None:
                record = SyncErrorRecord(scope_key=scope_key)
                session.add(record)
            record.phase = phase
            record.error_message = error
            record.occurred_at = occurred_at

    def _clear_error(self, scope_key: str) -> None:
        with self._session_scope() as session:
            record = session.execute(
                select(SyncErrorRecord).where(SyncErrorRecord.scope_key == scope_key).limit(1)
            ).scalars().first()
            if record is not None:
                session.delete(record)

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


__all__ = ["DEFAULT_FAILURE_MESSAGE", "ResultReporter", "StatusPublisher"]
