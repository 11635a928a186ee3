"""create insight synchronization tables

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017_000001"
down_revision = None
branch_labels = None
depends_on = None

insight_attribute_role_enum = postgresql.ENUM(
    "measure",
    "dimension",
    name="insight_attribute_role_enum",
    create_type=False,
)
sync_stage_enum = postgresql.ENUM(
    "object_create",
    "field_create",
    "access_grant",
    "verify",
    "done",
    "failed",
    name="sync_stage_enum",
    create_type=False,
)
stage_job_run_status_enum = postgresql.ENUM(
    "scheduled",
    "running",
    "completed",
    "failed",
    name="stage_job_run_status_enum",
    create_type=False,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    insight_attribute_role_enum.create(op.get_bind(), checkfirst=True)
    sync_stage_enum.create(op.get_bind(), checkfirst=True)
    stage_job_run_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "application_settings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=120), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("key", name="uq_application_settings_key"),
    )

    op.create_table(
        "insights",
        sa.Column("insight_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("target_object_name", sa.String(length=200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_insights_name"),
        sa.UniqueConstraint("target_object_name", name="uq_insights_target_object_name"),
    )

    op.create_table(
        "insight_attributes",
        sa.Column("insight_attribute_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("insight_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("declared_type", sa.String(length=60), nullable=False, server_default="STRING"),
        sa.Column("role", insight_attribute_role_enum, nullable=False, server_default="dimension"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["insight_id"], ["insights.insight_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("insight_id", "name", name="uq_insight_attribute_name"),
    )

    op.create_table(
        "sync_job_units",
        sa.Column("sync_job_unit_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("logical_key", sa.String(length=200), nullable=False),
        sa.Column("insight_name", sa.String(length=200), nullable=False),
        sa.Column("sync_run_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage", sync_stage_enum, nullable=False, server_default="object_create"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("field_create_failed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("warnings", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("logical_key", name="uq_sync_job_units_logical_key"),
    )

    op.create_table(
        "sync_statuses",
        sa.Column("sync_status_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("target_name", sa.String(length=200), nullable=False),
        sa.Column("sync_done", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_sync_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=False, server_default=""),
        sa.Column("stage", sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("target_name", name="uq_sync_statuses_target_name"),
    )

    op.create_table(
        "sync_error_records",
        sa.Column("sync_error_record_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("scope_key", sa.String(length=200), nullable=False),
        sa.Column("phase", sa.String(length=60), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("scope_key", name="uq_sync_error_records_scope_key"),
    )

    op.create_table(
        "stage_job_runs",
        sa.Column("stage_job_run_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("job_name", sa.String(length=120), nullable=False),
        sa.Column("logical_key", sa.String(length=200), nullable=False),
        sa.Column("sync_run_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("scope", sa.JSON(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", stage_job_run_status_enum, nullable=False, server_default="scheduled"),
        sa.Column("total_chunks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_chunks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("superseded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_stage_job_runs_status", "stage_job_runs", ["status"])
    op.create_index("ix_stage_job_runs_sync_run_id", "stage_job_runs", ["sync_run_id"])

    op.create_table(
        "synced_records",
        sa.Column("synced_record_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("target_object", sa.String(length=200), nullable=False),
        sa.Column("record_key", sa.String(length=255), nullable=False),
        sa.Column("source_row_id", sa.String(length=120), nullable=True),
        sa.Column("source_sequence", sa.String(length=120), nullable=True),
        sa.Column("change_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("target_object", "record_key", name="uq_synced_record_key"),
    )


def downgrade() -> None:
    op.drop_table("synced_records")
    op.drop_index("ix_stage_job_runs_sync_run_id", table_name="stage_job_runs")
    op.drop_index("ix_stage_job_runs_status", table_name="stage_job_runs")
    op.drop_table("stage_job_runs")
    op.drop_table("sync_error_records")
    op.drop_table("sync_statuses")
    op.drop_table("sync_job_units")
    op.drop_table("insight_attributes")
    op.drop_table("insights")
    op.drop_table("application_settings")

    stage_job_run_status_enum.drop(op.get_bind(), checkfirst=True)
    sync_stage_enum.drop(op.get_bind(), checkfirst=True)
    insight_attribute_role_enum.drop(op.get_bind(), checkfirst=True)
