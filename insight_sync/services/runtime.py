"""Process-wide wiring of the synchronization services used by the API."""

from __future__ import annotations

import logging
from functools import lru_cache

from insight_sync.config import get_settings
from insight_sync.database import SessionLocal
from insight_sync.services.application_settings import ConfigurationStore
from insight_sync.services.auth_tokens import TokenProvider
from insight_sync.services.delta_ingestion import DeltaIngestionEngine
from insight_sync.services.metadata_client import MetadataServiceClient
from insight_sync.services.result_reporter import ResultReporter
from insight_sync.services.schema_sync import FollowOnSyncHook, SchemaSyncOrchestrator
from insight_sync.services.stage_jobs import StageJobExecutor
from insight_sync.services.sync_notifications import SyncNotificationService

logger = logging.getLogger(__name__)

stage_job_executor = StageJobExecutor(SessionLocal)


@lru_cache()
def get_metadata_client() -> MetadataServiceClient:
    return MetadataServiceClient(token_source=TokenProvider())


@lru_cache()
def get_sync_orchestrator() -> SchemaSyncOrchestrator:
    settings = get_settings()
    config_store = ConfigurationStore(SessionLocal)
    orchestrator = SchemaSyncOrchestrator(
        SessionLocal,
        stage_job_executor,
        get_metadata_client(),
        config_store=config_store,
        reporter=ResultReporter(SessionLocal, SyncNotificationService()),
        chunk_size=settings.sync_stage_chunk_size,
    )
    orchestrator.add_on_success_hook(FollowOnSyncHook(orchestrator, config_store))
    return orchestrator


def get_delta_ingestion_engine() -> DeltaIngestionEngine:
    return DeltaIngestionEngine(SessionLocal)


def start_sync_runtime() -> bool:
    """Register the stage handlers and start the executor; returns ``False`` when not configured."""

    try:
        get_sync_orchestrator()
    except ValueError as exc:
        logger.warning("Schema synchronization is disabled: %s", exc)
        return False
    stage_job_executor.start()
    return True


def shutdown_sync_runtime() -> None:
    stage_job_executor.shutdown()


__all__ = [
    "get_delta_ingestion_engine",
    "get_metadata_client",
    "get_sync_orchestrator",
    "shutdown_sync_runtime",
    "stage_job_executor",
    "start_sync_runtime",
]
