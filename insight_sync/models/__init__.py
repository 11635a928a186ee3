from insight_sync.models.entities import (
    ApplicationSetting,
    Insight,
    InsightAttribute,
    StageJobRun,
    SyncedRecord,
    SyncErrorRecord,
    SyncJobUnit,
    SyncStatus,
    TimestampMixin,
)

__all__ = [
    "ApplicationSetting",
    "Insight",
    "InsightAttribute",
    "StageJobRun",
    "SyncedRecord",
    "SyncErrorRecord",
    "SyncJobUnit",
    "SyncStatus",
    "TimestampMixin",
]
