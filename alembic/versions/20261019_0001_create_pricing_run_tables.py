"""create pricing rule run tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=120), nullable=True),
        sa.Column("tags_json", sa.JSON(), nullable=True),
        sa.Column("channel", sa.String(length=40), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_products_tenant_id", "products", ["tenant_id"], unique=False)
    op.create_index("ix_products_project_id", "products", ["project_id"], unique=False)
    op.create_index("ix_products_tenant_project_active", "products", ["tenant_id", "project_id", "active"], unique=False)

    op.create_table(
        "skus",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=120), nullable=False),
        sa.Column("external_id", sa.String(length=120), nullable=True),
        sa.Column("variant_id", sa.String(length=120), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "code", name="uq_skus_project_code"),
    )
    op.create_index("ix_skus_tenant_id", "skus", ["tenant_id"], unique=False)
    op.create_index("ix_skus_project_id", "skus", ["project_id"], unique=False)
    op.create_index("ix_skus_product_id", "skus", ["product_id"], unique=False)

    op.create_table(
        "prices",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("sku_id", sa.String(length=36), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["sku_id"], ["skus.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_prices_sku_id", "prices", ["sku_id"], unique=False)
    op.create_index("ix_prices_sku_active", "prices", ["sku_id", "active"], unique=False)

    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("selector_json", sa.JSON(), nullable=False),
        sa.Column("transform_json", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pricing_rules_tenant_id", "pricing_rules", ["tenant_id"], unique=False)
    op.create_index("ix_pricing_rules_project_id", "pricing_rules", ["project_id"], unique=False)
    op.create_index(
        "ix_pricing_rules_tenant_project_enabled",
        "pricing_rules",
        ["tenant_id", "project_id", "enabled"],
        unique=False,
    )

    op.create_table(
        "rule_runs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("rule_id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PREVIEW"),
        sa.Column("created_by", sa.String(length=120), nullable=False, server_default="system"),
        sa.Column("explain_json", sa.JSON(), nullable=True),
        sa.Column("dispatch_generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["rule_id"], ["pricing_rules.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rule_runs_rule_id", "rule_runs", ["rule_id"], unique=False)
    op.create_index("ix_rule_runs_tenant_id", "rule_runs", ["tenant_id"], unique=False)
    op.create_index("ix_rule_runs_project_id", "rule_runs", ["project_id"], unique=False)
    op.create_index("ix_rule_runs_rule_created_at", "rule_runs", ["rule_id", "created_at"], unique=False)
    op.create_index(
        "ix_rule_runs_tenant_project_status_created_at",
        "rule_runs",
        ["tenant_id", "project_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "rule_targets",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("rule_run_id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("sku_id", sa.String(length=36), nullable=False),
        sa.Column("variant_id", sa.String(length=120), nullable=True),
        sa.Column("channel", sa.String(length=40), nullable=False),
        sa.Column("external_ref", sa.String(length=120), nullable=False),
        sa.Column("before_json", sa.JSON(), nullable=False),
        sa.Column("after_json", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PREVIEW"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts_at_dispatch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["rule_run_id"], ["rule_runs.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["sku_id"], ["skus.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rule_targets_rule_run_id", "rule_targets", ["rule_run_id"], unique=False)
    op.create_index("ix_rule_targets_sku_id", "rule_targets", ["sku_id"], unique=False)
    op.create_index(
        "ix_rule_targets_run_status_next_attempt",
        "rule_targets",
        ["rule_run_id", "status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "event_log",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_key", sa.String(length=200), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=True),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_key"),
    )
    op.create_index("ix_event_log_tenant_id", "event_log", ["tenant_id"], unique=False)
    op.create_index("ix_event_log_event_type", "event_log", ["event_type"], unique=False)

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_log_id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("locked_by", sa.String(length=80), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["event_log_id"], ["event_log.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_log_id"),
    )
    op.create_index("ix_outbox_events_tenant_id", "outbox_events", ["tenant_id"], unique=False)
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"], unique=False)
    op.create_index(
        "ix_outbox_events_status_next_attempt",
        "outbox_events",
        ["status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "outbox_delivery_attempts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("outbox_event_id", sa.String(length=36), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("worker_id", sa.String(length=80), nullable=True),
        sa.Column("detail", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["outbox_event_id"], ["outbox_events.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_outbox_delivery_attempts_outbox_event_id",
        "outbox_delivery_attempts",
        ["outbox_event_id"],
        unique=False,
    )

    op.create_table(
        "audit_records",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("actor", sa.String(length=120), nullable=False),
        sa.Column("explain_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_records_tenant_id", "audit_records", ["tenant_id"], unique=False)
    op.create_index("ix_audit_records_entity_id", "audit_records", ["entity_id"], unique=False)
    op.create_index(
        "ix_audit_records_tenant_project_created_at",
        "audit_records",
        ["tenant_id", "project_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_audit_records_entity_action_created_at",
        "audit_records",
        ["entity", "entity_id", "action", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_audit_records_entity_action_created_at", table_name="audit_records")
    op.drop_index("ix_audit_records_tenant_project_created_at", table_name="audit_records")
    op.drop_index("ix_audit_records_entity_id", table_name="audit_records")
    op.drop_index("ix_audit_records_tenant_id", table_name="audit_records")
    op.drop_table("audit_records")

    op.drop_index("ix_outbox_delivery_attempts_outbox_event_id", table_name="outbox_delivery_attempts")
    op.drop_table("outbox_delivery_attempts")

    op.drop_index("ix_outbox_events_status_next_attempt", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_tenant_id", table_name="outbox_events")
    op.drop_table("outbox_events")

    op.drop_index("ix_event_log_event_type", table_name="event_log")
    op.drop_index("ix_event_log_tenant_id", table_name="event_log")
    op.drop_table("event_log")

    op.drop_index("ix_rule_targets_run_status_next_attempt", table_name="rule_targets")
    op.drop_index("ix_rule_targets_sku_id", table_name="rule_targets")
    op.drop_index("ix_rule_targets_rule_run_id", table_name="rule_targets")
    op.drop_table("rule_targets")

    op.drop_index("ix_rule_runs_tenant_project_status_created_at", table_name="rule_runs")
    op.drop_index("ix_rule_runs_rule_created_at", table_name="rule_runs")
    op.drop_index("ix_rule_runs_project_id", table_name="rule_runs")
    op.drop_index("ix_rule_runs_tenant_id", table_name="rule_runs")
    op.drop_index("ix_rule_runs_rule_id", table_name="rule_runs")
    op.drop_table("rule_runs")

    op.drop_index("ix_pricing_rules_tenant_project_enabled", table_name="pricing_rules")
    op.drop_index("ix_pricing_rules_project_id", table_name="pricing_rules")
    op.drop_index("ix_pricing_rules_tenant_id", table_name="pricing_rules")
    op.drop_table("pricing_rules")

    op.drop_index("ix_prices_sku_active", table_name="prices")
    op.drop_index("ix_prices_sku_id", table_name="prices")
    op.drop_table("prices")

    op.drop_index("ix_skus_product_id", table_name="skus")
    op.drop_index("ix_skus_project_id", table_name="skus")
    op.drop_index("ix_skus_tenant_id", table_name="skus")
    op.drop_table("skus")

    op.drop_index("ix_products_tenant_project_active", table_name="products")
    op.drop_index("ix_products_project_id", table_name="products")
    op.drop_index("ix_products_tenant_id", table_name="products")
    op.drop_table("products")
