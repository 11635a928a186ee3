from __future__ import annotations

from fastapi import HTTPException, status

from insight_sync.database import SessionLocal
from insight_sync.services.delta_ingestion import DeltaIngestionEngine
from insight_sync.services.insight_catalog import InsightCatalog, SchemaSource
from insight_sync.services.runtime import get_delta_ingestion_engine, get_metadata_client, get_sync_orchestrator
from insight_sync.services.schema_sync import SchemaSyncOrchestrator


def _unavailable(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


def get_orchestrator() -> SchemaSyncOrchestrator:
    try:
        return get_sync_orchestrator()
    except ValueError as exc:
        raise _unavailable(exc) from exc


def get_schema_source() -> SchemaSource:
    try:
        return get_metadata_client()
    except ValueError as exc:
        raise _unavailable(exc) from exc


def get_catalog() -> InsightCatalog:
    return InsightCatalog(SessionLocal)


def get_ingestion_engine() -> DeltaIngestionEngine:
    return get_delta_ingestion_engine()


__all__ = ["get_catalog", "get_ingestion_engine", "get_orchestrator", "get_schema_source"]
