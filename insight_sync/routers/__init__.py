from fastapi import APIRouter

from insight_sync.routers import application_settings, delta_ingestion, insights, sync_status

api_router = APIRouter()
api_router.include_router(insights.router)
api_router.include_router(sync_status.router)
api_router.include_router(delta_ingestion.router)
api_router.include_router(application_settings.router)

__all__ = ["api_router"]
