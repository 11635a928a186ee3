from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from insight_sync.routers.dependencies import get_ingestion_engine
from insight_sync.schemas import IngestionSummaryRead
from insight_sync.services.delta_ingestion import DeltaIngestionEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/delta-ingestions", tags=["Delta Ingestion"])

MAX_UPLOAD_BYTES = 50 * 1024 * 1024  # 50 MB


@router.post("", response_model=IngestionSummaryRead)
async def ingest_delta_file(
    file: UploadFile = File(...),
    target_object: str = Form(...),
    key_field: str | None = Form(None),
    has_header: bool = Form(True),
    engine: DeltaIngestionEngine = Depends(get_ingestion_engine),
) -> IngestionSummaryRead:
    raw = await file.read()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Delta file exceeds the maximum upload size.",
        )
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Delta file must be UTF-8 encoded.") from exc

    try:
        summary = engine.ingest(
            text.splitlines(),
            target_object,
            key_field,
            has_header=has_header,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    logger.info("Delta upload %s processed for %s", file.filename, summary.target_object)
    return IngestionSummaryRead.model_validate(summary)


__all__ = ["router"]
