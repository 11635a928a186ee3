from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from insight_sync.database import get_db
from insight_sync.models import SyncJobUnit, SyncStatus
from insight_sync.schemas import SyncJobUnitRead, SyncStatusRead

router = APIRouter(tags=["Sync Status"])


@router.get("/sync-status", response_model=list[SyncStatusRead])
def list_sync_statuses(db: Session = Depends(get_db)) -> list[SyncStatus]:
    return list(db.execute(select(SyncStatus).order_by(SyncStatus.target_name)).scalars().all())


@router.get("/sync-status/{target_name}", response_model=SyncStatusRead)
def read_sync_status(target_name: str, db: Session = Depends(get_db)) -> SyncStatus:
    record = (
        db.execute(select(SyncStatus).where(func.lower(SyncStatus.target_name) == target_name.strip().lower()))
        .scalars()
        .first()
    )
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync status not found")
    return record


@router.get("/sync-units/{logical_key}", response_model=SyncJobUnitRead)
def read_sync_unit(logical_key: str, db: Session = Depends(get_db)) -> SyncJobUnit:
    unit = (
        db.execute(select(SyncJobUnit).where(func.lower(SyncJobUnit.logical_key) == logical_key.strip().lower()))
        .scalars()
        .first()
    )
    if unit is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync unit not found")
    return unit


__all__ = ["router"]
