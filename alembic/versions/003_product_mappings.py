"""Add the product_mappings table

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One plan per provider product/offer id, maintained from the admin API
    op.create_table(
        "product_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("product_name", sa.String(255)),
        sa.Column("plan_type", sa.String(30), nullable=False),
        sa.Column("duration_days", sa.Integer),
        sa.Column("is_lifetime", sa.Boolean, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "product_id", name="uq_product_mappings_provider_product"),
    )


def downgrade() -> None:
    op.drop_table("product_mappings")
