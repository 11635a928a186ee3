from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TimestampSchema(BaseModel):
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AttributeRole(str, Enum):
    MEASURE = "measure"
    DIMENSION = "dimension"


class InsightAttributeBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    label: Optional[str] = Field(None, max_length=255)
    declared_type: str = Field("STRING", max_length=60)
    role: AttributeRole = AttributeRole.DIMENSION

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Attribute name must not be blank.")
        return stripped


class InsightAttributeCreate(InsightAttributeBase):
    pass


class InsightAttributeRead(InsightAttributeBase):
    id: UUID
    display_order: int

    model_config = ConfigDict(from_attributes=True)


class InsightBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    label: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    is_active: bool = True


class InsightCreate(InsightBase):
    target_object_name: Optional[str] = Field(
        None,
        max_length=200,
        description="Defaults to the sanitized insight name with the managed object suffix.",
    )
    measures: list[InsightAttributeCreate] = Field(default_factory=list)
    dimensions: list[InsightAttributeCreate] = Field(default_factory=list)


class InsightRead(InsightBase, TimestampSchema):
    id: UUID
    target_object_name: str
    attributes: list[InsightAttributeRead] = Field(default_factory=list)


class SyncStage(str, Enum):
    OBJECT_CREATE = "object_create"
    FIELD_CREATE = "field_create"
    ACCESS_GRANT = "access_grant"
    VERIFY = "verify"
    DONE = "done"
    FAILED = "failed"


class SyncStatusRead(TimestampSchema):
    id: UUID
    target_name: str
    sync_done: bool
    last_sync_time: Optional[datetime] = None
    last_error: str = ""
    stage: Optional[SyncStage] = None


class SyncJobUnitRead(TimestampSchema):
    id: UUID
    logical_key: str
    insight_name: str
    sync_run_id: UUID
    stage: SyncStage
    attempt_count: int
    last_error: Optional[str] = None
    field_create_failed: bool
    warnings: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SyncRequestAccepted(BaseModel):
    logical_key: str
    insight_name: str
    sync_run_id: UUID
    stage: SyncStage


class IngestionSummaryRead(BaseModel):
    target_object: str
    key_field: str
    lines_read: int
    malformed: int
    filtered: int
    discarded: int
    coercion_failures: int
    upserted: int

    model_config = ConfigDict(from_attributes=True)


class ApplicationSettingRead(BaseModel):
    key: str
    value: Optional[str] = None


class ApplicationSettingUpdate(BaseModel):
    value: Optional[str] = Field(None, max_length=2000)
