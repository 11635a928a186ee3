from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generator, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from insight_sync.models import SyncedRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredRecord:
    record_key: str
    source_row_id: str | None
    source_sequence: str | None
    change_timestamp: datetime | None
    payload: Mapping[str, Any]


class RecordStore:
    """Typed upsert of reconciled records keyed by target object and business key."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def upsert(self, target_object: str, records: Iterable[StoredRecord]) -> int:
        written = 0
        with self._session_scope() as session:
            for record in records:
                existing = (
                    session.execute(
                        select(SyncedRecord)
                        .where(SyncedRecord.target_object == target_object)
                        .where(SyncedRecord.record_key == record.record_key)
                        .limit(1)
                    )
                    .scalars()
                    .first()
                )
                if existing is None:
                    existing = SyncedRecord(target_object=target_object, record_key=record.record_key)
                    session.add(existing)
                existing.source_row_id = record.source_row_id
                existing.source_sequence = record.source_sequence
                existing.change_timestamp = record.change_timestamp
                existing.payload = dict(record.payload)
                written += 1
            session.flush()
        logger.debug("Upserted %s record(s) into %s", written, target_object)
        return written

    def get(self, target_object: str, record_key: str) -> StoredRecord | None:
        with self._session_scope() as session:
            row = (
                session.execute(
                    select(SyncedRecord)
                    .where(SyncedRecord.target_object == target_object)
                    .where(SyncedRecord.record_key == record_key)
                    .limit(1)
                )
                .scalars()
                .first()
            )
            if row is None:
                return None
            return StoredRecord(
                record_key=row.record_key,
                source_row_id=row.source_row_id,
                source_sequence=row.source_sequence,
                change_timestamp=row.change_timestamp,
                payload=dict(row.payload or {}),
            )

    def count(self, target_object: str) -> int:
        with self._session_scope() as session:
            total = session.execute(
                select(func.count()).select_from(SyncedRecord).where(SyncedRecord.target_object == target_object)
            ).scalar_one()
        return int(total)

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


__all__ = ["RecordStore", "StoredRecord"]
