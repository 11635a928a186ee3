from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from insight_sync.database import get_db
from insight_sync.models import Insight, InsightAttribute
from insight_sync.routers.dependencies import get_catalog, get_orchestrator, get_schema_source
from insight_sync.schemas import AttributeRole, InsightCreate, InsightRead, SyncRequestAccepted
from insight_sync.services.auth_tokens import TokenExchangeError
from insight_sync.services.errors import PermanentConfigError, SyncInProgressError
from insight_sync.services.insight_catalog import InsightCatalog, SchemaSource
from insight_sync.services.metadata_client import MetadataServiceError
from insight_sync.services.schema_planner import build_target_object_name
from insight_sync.services.schema_sync import SchemaSyncOrchestrator

router = APIRouter(prefix="/insights", tags=["Insights"])


def _get_insight_or_404(insight_id: UUID, db: Session) -> Insight:
    insight = (
        db.execute(
            select(Insight).options(selectinload(Insight.attributes)).where(Insight.id == insight_id)
        )
        .scalars()
        .first()
    )
    if insight is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Insight not found")
    return insight


@router.post("", response_model=InsightRead, status_code=status.HTTP_201_CREATED)
def create_insight(payload: InsightCreate, db: Session = Depends(get_db)) -> Insight:
    name = payload.name.strip()
    try:
        target = (payload.target_object_name or "").strip() or build_target_object_name(name)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    conflict = (
        db.execute(
            select(Insight.id).where(
                or_(
                    func.lower(Insight.name) == name.lower(),
                    func.lower(Insight.target_object_name) == target.lower(),
                )
            )
        )
        .scalars()
        .first()
    )
    if conflict is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An insight with this name or target object already exists.",
        )

    insight = Insight(
        name=name,
        label=payload.label,
        description=payload.description,
        target_object_name=target,
        is_active=payload.is_active,
    )
    seen: set[str] = set()
    order = 0
    for role, attributes in ((AttributeRole.MEASURE, payload.measures), (AttributeRole.DIMENSION, payload.dimensions)):
        for attribute in attributes:
            if attribute.name in seen:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Attribute '{attribute.name}' is declared more than once.",
                )
            seen.add(attribute.name)
            insight.attributes.append(
                InsightAttribute(
                    name=attribute.name,
                    label=attribute.label or attribute.name,
                    declared_type=attribute.declared_type,
                    role=role.value,
                    display_order=order,
                )
            )
            order += 1

    db.add(insight)
    db.commit()
    return _get_insight_or_404(insight.id, db)


@router.get("", response_model=list[InsightRead])
def list_insights(db: Session = Depends(get_db)) -> list[Insight]:
    return list(
        db.execute(select(Insight).options(selectinload(Insight.attributes)).order_by(Insight.name))
        .scalars()
        .all()
    )


@router.get("/{insight_id}", response_model=InsightRead)
def read_insight(insight_id: UUID, db: Session = Depends(get_db)) -> Insight:
    return _get_insight_or_404(insight_id, db)


@router.post("/{insight_id}/refresh-schema", response_model=InsightRead)
def refresh_insight_schema(
    insight_id: UUID,
    db: Session = Depends(get_db),
    catalog: InsightCatalog = Depends(get_catalog),
    source: SchemaSource = Depends(get_schema_source),
) -> Insight:
    _get_insight_or_404(insight_id, db)
    db.rollback()
    try:
        catalog.refresh_from_source(insight_id, source)
    except (MetadataServiceError, TokenExchangeError) as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    db.expire_all()
    return _get_insight_or_404(insight_id, db)


@router.post("/{insight_id}/sync", response_model=SyncRequestAccepted, status_code=status.HTTP_202_ACCEPTED)
def request_insight_sync(
    insight_id: UUID,
    db: Session = Depends(get_db),
    orchestrator: SchemaSyncOrchestrator = Depends(get_orchestrator),
) -> SyncRequestAccepted:
    insight = _get_insight_or_404(insight_id, db)
    insight_name = insight.name
    db.rollback()
    try:
        state = orchestrator.request_sync(insight_name)
    except PermanentConfigError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except SyncInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return SyncRequestAccepted(
        logical_key=state.logical_key,
        insight_name=state.insight_name,
        sync_run_id=UUID(state.sync_run_id),
        stage=state.stage.value,
    )


__all__ = ["router"]
