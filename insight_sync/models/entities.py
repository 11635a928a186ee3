import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from insight_sync.database import Base


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class ApplicationSetting(Base, TimestampMixin):
    __tablename__ = "application_settings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class Insight(Base, TimestampMixin):
    __tablename__ = "insights"

    id: Mapped[uuid.UUID] = mapped_column(
        "insight_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_object_name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    attributes: Mapped[list["InsightAttribute"]] = relationship(
        "InsightAttribute",
        back_populates="insight",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="InsightAttribute.display_order",
    )


class InsightAttribute(Base, TimestampMixin):
    __tablename__ = "insight_attributes"
    __table_args__ = (
        sa.UniqueConstraint("insight_id", "name", name="uq_insight_attribute_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        "insight_attribute_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    insight_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("insights.insight_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    declared_type: Mapped[str] = mapped_column(String(60), nullable=False, default="STRING")
    role: Mapped[str] = mapped_column(
        sa.Enum("measure", "dimension", name="insight_attribute_role_enum"),
        nullable=False,
        default="dimension",
    )
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    insight: Mapped[Insight] = relationship("Insight", back_populates="attributes")


class SyncJobUnit(Base, TimestampMixin):
    __tablename__ = "sync_job_units"

    id: Mapped[uuid.UUID] = mapped_column(
        "sync_job_unit_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    logical_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    insight_name: Mapped[str] = mapped_column(String(200), nullable=False)
    sync_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, default=uuid.uuid4
    )
    stage: Mapped[str] = mapped_column(
        sa.Enum(
            "object_create",
            "field_create",
            "access_grant",
            "verify",
            "done",
            "failed",
            name="sync_stage_enum",
        ),
        nullable=False,
        default="object_create",
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_create_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    warnings: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncStatus(Base, TimestampMixin):
    __tablename__ = "sync_statuses"

    id: Mapped[uuid.UUID] = mapped_column(
        "sync_status_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    target_name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    sync_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_sync_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    stage: Mapped[str | None] = mapped_column(String(40), nullable=True)


class SyncErrorRecord(Base, TimestampMixin):
    __tablename__ = "sync_error_records"

    id: Mapped[uuid.UUID] = mapped_column(
        "sync_error_record_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    scope_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    phase: Mapped[str] = mapped_column(String(60), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class StageJobRun(Base, TimestampMixin):
    __tablename__ = "stage_job_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        "stage_job_run_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_name: Mapped[str] = mapped_column(String(120), nullable=False)
    logical_key: Mapped[str] = mapped_column(String(200), nullable=False)
    sync_run_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    scope: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    result: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        sa.Enum(
            "scheduled",
            "running",
            "completed",
            "failed",
            name="stage_job_run_status_enum",
        ),
        nullable=False,
        default="scheduled",
    )
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    superseded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncedRecord(Base, TimestampMixin):
    __tablename__ = "synced_records"
    __table_args__ = (
        sa.UniqueConstraint("target_object", "record_key", name="uq_synced_record_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        "synced_record_id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    target_object: Mapped[str] = mapped_column(String(200), nullable=False)
    record_key: Mapped[str] = mapped_column(String(255), nullable=False)
    source_row_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    source_sequence: Mapped[str | None] = mapped_column(String(120), nullable=True)
    change_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
