from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from insight_sync.database import get_db
from insight_sync.schemas import ApplicationSettingRead, ApplicationSettingUpdate
from insight_sync.services.application_settings import KNOWN_KEYS, get_setting_value, set_setting_value

router = APIRouter(prefix="/application-settings", tags=["Application Settings"])


def _require_known_key(key: str) -> str:
    normalized = key.strip().lower()
    if normalized not in KNOWN_KEYS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown setting '{key}'")
    return normalized


@router.get("/{key}", response_model=ApplicationSettingRead)
def read_setting(key: str, db: Session = Depends(get_db)) -> ApplicationSettingRead:
    normalized = _require_known_key(key)
    return ApplicationSettingRead(key=normalized, value=get_setting_value(db, normalized))


@router.put("/{key}", response_model=ApplicationSettingRead, status_code=status.HTTP_200_OK)
def update_setting(
    key: str,
    payload: ApplicationSettingUpdate,
    db: Session = Depends(get_db),
) -> ApplicationSettingRead:
    normalized = _require_known_key(key)
    value = payload.value
    if value is not None and not value.strip():
        value = None
    try:
        stored = set_setting_value(db, normalized, value)
    except Exception as exc:  # pragma: no cover - defensive
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to store application setting",
        ) from exc
    return ApplicationSettingRead(key=normalized, value=stored)


__all__ = ["router"]
