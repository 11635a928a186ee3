from .entities import (
    ApplicationSettingRead,
    ApplicationSettingUpdate,
    AttributeRole,
    IngestionSummaryRead,
    InsightAttributeCreate,
    InsightAttributeRead,
    InsightCreate,
    InsightRead,
    SyncJobUnitRead,
    SyncRequestAccepted,
    SyncStage,
    SyncStatusRead,
    TimestampSchema,
)

__all__ = [
    "ApplicationSettingRead",
    "ApplicationSettingUpdate",
    "AttributeRole",
    "IngestionSummaryRead",
    "InsightAttributeCreate",
    "InsightAttributeRead",
    "InsightCreate",
    "InsightRead",
    "SyncJobUnitRead",
    "SyncRequestAccepted",
    "SyncStage",
    "SyncStatusRead",
    "TimestampSchema",
]
