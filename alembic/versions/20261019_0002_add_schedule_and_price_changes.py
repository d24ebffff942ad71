"""add rule scheduling and price change history

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 15:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_0002"
down_revision: Union[str, None] = "20261019_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("pricing_rules", sa.Column("schedule_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_pricing_rules_schedule_at", "pricing_rules", ["schedule_at"], unique=False)
    op.add_column("rule_runs", sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True))

    op.create_table(
        "price_changes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("rule_run_id", sa.String(length=36), nullable=True),
        sa.Column("rule_target_id", sa.String(length=36), nullable=True),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("sku_id", sa.String(length=36), nullable=False),
        sa.Column("variant_id", sa.String(length=120), nullable=True),
        sa.Column("channel", sa.String(length=40), nullable=False),
        sa.Column("source", sa.String(length=80), nullable=False),
        sa.Column("from_amount", sa.Integer(), nullable=False),
        sa.Column("to_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="APPLIED"),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["rule_run_id"], ["rule_runs.id"]),
        sa.ForeignKeyConstraint(["rule_target_id"], ["rule_targets.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["sku_id"], ["skus.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_price_changes_tenant_id", "price_changes", ["tenant_id"], unique=False)
    op.create_index("ix_price_changes_project_id", "price_changes", ["project_id"], unique=False)
    op.create_index("ix_price_changes_rule_run_id", "price_changes", ["rule_run_id"], unique=False)
    op.create_index("ix_price_changes_sku_id", "price_changes", ["sku_id"], unique=False)
    op.create_index(
        "ix_price_changes_tenant_project_created_at",
        "price_changes",
        ["tenant_id", "project_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_price_changes_tenant_project_created_at", table_name="price_changes")
    op.drop_index("ix_price_changes_sku_id", table_name="price_changes")
    op.drop_index("ix_price_changes_rule_run_id", table_name="price_changes")
    op.drop_index("ix_price_changes_project_id", table_name="price_changes")
    op.drop_index("ix_price_changes_tenant_id", table_name="price_changes")
    op.drop_table("price_changes")
    op.drop_column("rule_runs", "scheduled_for")
    op.drop_index("ix_pricing_rules_schedule_at", table_name="pricing_rules")
    op.drop_column("pricing_rules", "schedule_at")
