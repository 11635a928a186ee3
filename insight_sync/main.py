import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from insight_sync.config import get_settings
from insight_sync.routers import api_router
from insight_sync.services.runtime import shutdown_sync_runtime, start_sync_runtime

settings = get_settings()
log_level_name = (settings.log_level or "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
logging.getLogger("insight_sync").setLevel(log_level)

app = FastAPI(title=settings.app_name)

logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router, prefix="/api")


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("startup")
async def startup_scheduler() -> None:
    if not start_sync_runtime():
        logger.info("Stage job executor not started; metadata service settings are incomplete.")


@app.on_event("shutdown")
async def shutdown_scheduler() -> None:
    shutdown_sync_runtime()
