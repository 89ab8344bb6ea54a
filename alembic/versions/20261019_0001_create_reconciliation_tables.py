"""create reconciliation tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "import_batches",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("source_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False),
        sa.Column("rows_processed", sa.Integer(), nullable=False),
        sa.Column("rows_succeeded", sa.Integer(), nullable=False),
        sa.Column("rows_failed", sa.Integer(), nullable=False),
        sa.Column("rows_unmapped", sa.Integer(), nullable=False),
        sa.Column("dictionary_version", sa.String(length=32), nullable=True),
        sa.Column("analysis_payload", _jsonb(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_import_batches_status", "import_batches", ["status"], unique=False)
    op.create_index("ix_import_batches_created_at", "import_batches", ["created_at"], unique=False)

    op.create_table(
        "raw_rows",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("import_batch_id", sa.String(length=255), nullable=False),
        sa.Column("row_index", sa.Integer(), nullable=False),
        sa.Column("headers", _jsonb(), nullable=False),
        sa.Column("raw_values", _jsonb(), nullable=False),
        sa.Column("container_number", sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["import_batch_id"], ["import_batches.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("import_batch_id", "row_index", name="uq_raw_rows_batch_row"),
    )
    op.create_index("ix_raw_rows_container_number", "raw_rows", ["container_number"], unique=False)

    op.create_table(
        "containers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("container_number", sa.String(length=32), nullable=False),
        sa.Column("carrier", sa.String(length=255), nullable=True),
        sa.Column("pol", sa.String(length=255), nullable=True),
        sa.Column("pod", sa.String(length=255), nullable=True),
        sa.Column("business_unit", sa.String(length=255), nullable=True),
        sa.Column("container_type", sa.String(length=64), nullable=True),
        sa.Column("current_status", sa.String(length=8), nullable=True),
        sa.Column("status_text", sa.String(length=255), nullable=True),
        sa.Column("etd", sa.DateTime(timezone=True), nullable=True),
        sa.Column("atd", sa.DateTime(timezone=True), nullable=True),
        sa.Column("eta", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ata", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_free_day", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gate_out_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("empty_return_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_destination_eta", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seal_number", sa.String(length=128), nullable=True),
        sa.Column("gross_weight", sa.Float(), nullable=True),
        sa.Column("pieces", sa.Integer(), nullable=True),
        sa.Column("volume_cbm", sa.Float(), nullable=True),
        sa.Column("vessel_name", sa.String(length=255), nullable=True),
        sa.Column("voyage", sa.String(length=64), nullable=True),
        sa.Column("hbl", sa.String(length=128), nullable=True),
        sa.Column("mbl", sa.String(length=128), nullable=True),
        sa.Column("final_destination", sa.String(length=255), nullable=True),
        sa.Column("health_score", sa.Integer(), nullable=True),
        sa.Column("attention_category", sa.String(length=32), nullable=True),
        sa.Column("operational_status", sa.String(length=64), nullable=True),
        sa.Column("days_in_transit", sa.Integer(), nullable=True),
        sa.Column("has_exception", sa.Boolean(), nullable=False),
        sa.Column("exception_type", sa.String(length=64), nullable=True),
        sa.Column("exception_owner", sa.String(length=64), nullable=True),
        sa.Column("exception_reason", sa.Text(), nullable=True),
        sa.Column("exception_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exception_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_fields", _jsonb(), nullable=False),
        sa.Column("metadata_json", _jsonb(), nullable=False),
        sa.Column("last_import_batch_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("container_number", name="uq_containers_container_number"),
    )
    op.create_index("ix_containers_current_status", "containers", ["current_status"], unique=False)
    op.create_index("ix_containers_has_exception", "containers", ["has_exception"], unique=False)
    op.create_index("ix_containers_business_unit", "containers", ["business_unit"], unique=False)

    op.create_table(
        "shipments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("shipment_reference", sa.String(length=128), nullable=False),
        sa.Column("booking_reference", sa.String(length=128), nullable=True),
        sa.Column("mbl", sa.String(length=128), nullable=True),
        sa.Column("customer_po", sa.String(length=128), nullable=True),
        sa.Column("shipper", sa.String(length=255), nullable=True),
        sa.Column("consignee", sa.String(length=255), nullable=True),
        sa.Column("business_unit", sa.String(length=255), nullable=True),
        sa.Column("locked_fields", _jsonb(), nullable=False),
        sa.Column("metadata_json", _jsonb(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shipment_reference", name="uq_shipments_shipment_reference"),
    )

    op.create_table(
        "shipment_containers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("shipment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("container_id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["shipment_id"], ["shipments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["container_id"], ["containers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shipment_id", "container_id", name="uq_shipment_containers_pair"),
    )
    op.create_index(
        "ix_shipment_containers_container_id",
        "shipment_containers",
        ["container_id"],
        unique=False,
    )

    op.create_table(
        "lifecycle_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("container_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage_code", sa.String(length=8), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("import_batch_id", sa.String(length=255), nullable=True),
        sa.Column("raw_row_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["container_id"], ["containers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_lifecycle_events_container_stage",
        "lifecycle_events",
        ["container_id", "stage_code"],
        unique=False,
    )

    op.create_table(
        "processing_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("import_batch_id", sa.String(length=255), nullable=True),
        sa.Column("container_number", sa.String(length=32), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("output", _jsonb(), nullable=True),
        sa.Column("dictionary_version", sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_processing_logs_batch_stage",
        "processing_logs",
        ["import_batch_id", "stage"],
        unique=False,
    )
    op.create_index(
        "ix_processing_logs_container_number",
        "processing_logs",
        ["container_number"],
        unique=False,
    )

    op.create_table(
        "activity_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("container_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("shipment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("details", _jsonb(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "container_id IS NOT NULL OR shipment_id IS NOT NULL",
            name="ck_activity_logs_has_target",
        ),
        sa.ForeignKeyConstraint(["container_id"], ["containers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["shipment_id"], ["shipments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_activity_logs_container_id", "activity_logs", ["container_id"], unique=False)
    op.create_index("ix_activity_logs_shipment_id", "activity_logs", ["shipment_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_activity_logs_shipment_id", table_name="activity_logs")
    op.drop_index("ix_activity_logs_container_id", table_name="activity_logs")
    op.drop_table("activity_logs")
    op.drop_index("ix_processing_logs_container_number", table_name="processing_logs")
    op.drop_index("ix_processing_logs_batch_stage", table_name="processing_logs")
    op.drop_table("processing_logs")
    op.drop_index("ix_lifecycle_events_container_stage", table_name="lifecycle_events")
    op.drop_table("lifecycle_events")
    op.drop_index("ix_shipment_containers_container_id", table_name="shipment_containers")
    op.drop_table("shipment_containers")
    op.drop_table("shipments")
    op.drop_index("ix_containers_business_unit", table_name="containers")
    op.drop_index("ix_containers_has_exception", table_name="containers")
    op.drop_index("ix_containers_current_status", table_name="containers")
    op.drop_table("containers")
    op.drop_index("ix_raw_rows_container_number", table_name="raw_rows")
    op.drop_table("raw_rows")
    op.drop_index("ix_import_batches_created_at", table_name="import_batches")
    op.drop_index("ix_import_batches_status", table_name="import_batches")
    op.drop_table("import_batches")
