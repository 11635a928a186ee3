"""Read and refresh insight schema snapshots stored in the control database."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Generator, Protocol, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from insight_sync.models import Insight, InsightAttribute
from insight_sync.services.schema_planner import AttributeRole, AttributeSpec, attribute_type_map

logger = logging.getLogger(__name__)


class SchemaSource(Protocol):
    def fetch_insight_schema(self, insight_name: str) -> list[AttributeSpec]: ...


@dataclass(frozen=True)
class InsightSnapshot:
    id: UUID
    name: str
    label: str
    target_object_name: str
    is_active: bool
    attributes: tuple[AttributeSpec, ...]

    def field_types(self) -> dict[str, str]:
        return attribute_type_map(self.attributes)


def _to_spec(attribute: InsightAttribute) -> AttributeSpec:
    return AttributeSpec(
        name=attribute.name,
        display_label=attribute.label or attribute.name,
        declared_type=attribute.declared_type,
        role=AttributeRole(attribute.role),
    )


def _to_snapshot(insight: Insight) -> InsightSnapshot:
    return InsightSnapshot(
        id=insight.id,
        name=insight.name,
        label=insight.label or insight.name,
        target_object_name=insight.target_object_name,
        is_active=insight.is_active,
        attributes=tuple(_to_spec(attribute) for attribute in insight.attributes),
    )


class InsightCatalog:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get_by_name(self, insight_name: str) -> InsightSnapshot | None:
        with self._session_scope() as session:
            insight = (
                session.execute(
                    select(Insight)
                    .options(selectinload(Insight.attributes))
                    .where(func.lower(Insight.name) == insight_name.strip().lower())
                )
                .scalars()
                .first()
            )
            return _to_snapshot(insight) if insight else None

    def get_by_target(self, target_object: str) -> InsightSnapshot | None:
        with self._session_scope() as session:
            insight = (
                session.execute(
                    select(Insight)
                    .options(selectinload(Insight.attributes))
                    .where(func.lower(Insight.target_object_name) == target_object.strip().lower())
                )
                .scalars()
                .first()
            )
            return _to_snapshot(insight) if insight else None

    def replace_attributes(self, insight_id: UUID, attributes: Sequence[AttributeSpec]) -> InsightSnapshot:
        with self._session_scope() as session:
            insight = session.get(Insight, insight_id)
            if insight is None:
                raise LookupError(f"Insight {insight_id} not found.")
            insight.attributes.clear()
            session.flush()
            seen: set[str] = set()
            for order, spec in enumerate(attributes):
                if spec.name in seen:
                    logger.debug("Ignoring duplicate attribute %s on insight %s", spec.name, insight.name)
                    continue
                seen.add(spec.name)
                insight.attributes.append(
                    InsightAttribute(
                        name=spec.name,
                        label=spec.display_label,
                        declared_type=spec.declared_type,
                        role=spec.role.value,
                        display_order=order,
                    )
                )
            session.flush()
            session.refresh(insight)
            return _to_snapshot(insight)

    def refresh_from_source(self, insight_id: UUID, source: SchemaSource) -> InsightSnapshot:
        with self._session_scope() as session:
            insight = session.get(Insight, insight_id)
            if insight is None:
                raise LookupError(f"Insight {insight_id} not found.")
            insight_name = insight.name
        attributes = source.fetch_insight_schema(insight_name)
        logger.info("Fetched %s attribute(s) for insight %s", len(attributes), insight_name)
        return self.replace_attributes(insight_id, attributes)

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


__all__ = ["InsightCatalog", "InsightSnapshot", "SchemaSource"]
