"""Reconcile a delta batch down to one record per business key and upsert it.

Lines are parsed lazily and reconciled chunk by chunk. Per-key winners from
each chunk are merged with :func:`merge_winners`, which is associative and
commutative, so the surviving set does not depend on chunk boundaries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from sqlalchemy.orm import Session

from insight_sync.services.application_settings import DELTA_KEY_FIELD_KEY, ConfigurationStore
from insight_sync.services.delta_parser import DeltaParser, DeltaRecord
from insight_sync.services.insight_catalog import InsightCatalog
from insight_sync.services.record_store import RecordStore, StoredRecord
from insight_sync.services.type_coercion import coerce_record, to_storable

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500


@dataclass
class IngestionSummary:
    target_object: str
    key_field: str
    lines_read: int = 0
    malformed: int = 0
    filtered: int = 0
    discarded: int = 0
    coercion_failures: int = 0
    upserted: int = 0


def reconciliation_key(record: DeltaRecord, key_field: str) -> str | None:
    """Return the business key for ``record`` or ``None`` when it is missing or blank."""

    value = record.payload.get(key_field)
    if value is None:
        return None
    key = str(value).strip()
    return key or None


def _ranks_higher(candidate: DeltaRecord, current: DeltaRecord) -> bool:
    if candidate.change_timestamp is not None and current.change_timestamp is None:
        return True
    if candidate.change_timestamp is None and current.change_timestamp is not None:
        return False
    if candidate.change_timestamp != current.change_timestamp:
        return candidate.change_timestamp > current.change_timestamp  # type: ignore[operator]
    return candidate.position < current.position


def pick_winner(left: DeltaRecord, right: DeltaRecord) -> DeltaRecord:
    """Latest timestamp wins, a missing timestamp loses, ties go to the first-seen record."""

    return right if _ranks_higher(right, left) else left


def merge_winners(
    left: Mapping[str, DeltaRecord],
    right: Mapping[str, DeltaRecord],
) -> dict[str, DeltaRecord]:
    merged = dict(left)
    for key, record in right.items():
        current = merged.get(key)
        merged[key] = record if current is None else pick_winner(current, record)
    return merged


def reconcile(records: Iterable[DeltaRecord], key_field: str) -> tuple[dict[str, DeltaRecord], int]:
    """Reduce ``records`` to one winner per key; also returns the number discarded for a missing key."""

    winners: dict[str, DeltaRecord] = {}
    discarded = 0
    for record in records:
        key = reconciliation_key(record, key_field)
        if key is None:
            discarded += 1
            logger.debug("Discarding delta line %s without a value for %s", record.position, key_field)
            continue
        current = winners.get(key)
        winners[key] = record if current is None else pick_winner(current, record)
    return winners, discarded


def _chunked(records: Iterator[DeltaRecord], size: int) -> Iterator[list[DeltaRecord]]:
    while True:
        chunk = list(islice(records, size))
        if not chunk:
            return
        yield chunk


class DeltaIngestionEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        catalog: InsightCatalog | None = None,
        record_store: RecordStore | None = None,
        config_store: ConfigurationStore | None = None,
    ) -> None:
        self._catalog = catalog or InsightCatalog(session_factory)
        self._record_store = record_store or RecordStore(session_factory)
        self._config = config_store or ConfigurationStore(session_factory)

    def resolve_key_field(self, key_field: str | None) -> str:
        resolved = (key_field or "").strip() or (self._config.get(DELTA_KEY_FIELD_KEY) or "").strip()
        if not resolved:
            raise ValueError("A reconciliation key field is required for delta ingestion.")
        return resolved

    def ingest(
        self,
        lines: Iterable[str],
        target_object: str,
        key_field: str | None = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        delimiter: str = ",",
        has_header: bool = True,
    ) -> IngestionSummary:
        resolved_key = self.resolve_key_field(key_field)
        snapshot = self._catalog.get_by_target(target_object)
        if snapshot is not None:
            target_object = snapshot.target_object_name
        else:
            logger.info("No insight maps to %s; storing payload fields as text", target_object)
        parser = DeltaParser(target_object, delimiter=delimiter, has_header=has_header)
        summary = IngestionSummary(target_object=parser.target_object, key_field=resolved_key)

        winners: dict[str, DeltaRecord] = {}
        for chunk in _chunked(parser.parse(lines), max(1, chunk_size)):
            chunk_winners, discarded = reconcile(chunk, resolved_key)
            summary.discarded += discarded
            winners = merge_winners(winners, chunk_winners)

        summary.lines_read = parser.stats.lines_read
        summary.malformed = parser.stats.malformed
        summary.filtered = parser.stats.filtered

        field_types = snapshot.field_types() if snapshot is not None else {}
        survivors: list[StoredRecord] = []
        for key in sorted(winners, key=lambda item: winners[item].position):
            record = winners[key]
            coerced = coerce_record(record.payload, field_types)
            if coerced is None:
                summary.discarded += 1
                continue
            summary.coercion_failures += len(coerced.failures)
            survivors.append(
                StoredRecord(
                    record_key=key,
                    source_row_id=record.source_row_id or None,
                    source_sequence=record.source_sequence or None,
                    change_timestamp=record.change_timestamp,
                    payload={name: to_storable(value) for name, value in coerced.values.items()},
                )
            )

        if survivors:
            summary.upserted = self._record_store.upsert(parser.target_object, survivors)

        logger.info(
            "Ingested delta batch for %s: read=%s malformed=%s filtered=%s discarded=%s upserted=%s",
            summary.target_object,
            summary.lines_read,
            summary.malformed,
            summary.filtered,
            summary.discarded,
            summary.upserted,
        )
        return summary


def reconcile_lines(
    lines: Sequence[str],
    target_object: str,
    key_field: str,
    *,
    has_header: bool = True,
) -> dict[str, dict[str, Any]]:
    """Parse and reconcile ``lines`` without storing anything; returns payloads per key."""

    parser = DeltaParser(target_object, has_header=has_header)
    winners, _ = reconcile(parser.parse(lines), key_field)
    return {key: dict(record.payload) for key, record in winners.items()}


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "DeltaIngestionEngine",
    "IngestionSummary",
    "merge_winners",
    "pick_winner",
    "reconcile",
    "reconcile_lines",
    "reconciliation_key",
]
