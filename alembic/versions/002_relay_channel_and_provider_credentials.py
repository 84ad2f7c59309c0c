"""Add relay channel columns to webhook_logs and the provider_credentials table

Revision ID: 002
Revises: 001
Create Date: 2026-10-12
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Relay listener writes its own records; the main app links back via relay_log_id
    op.add_column(
        "webhook_logs",
        sa.Column("channel", sa.String(10), nullable=False, server_default="direct"),
    )
    op.add_column(
        "webhook_logs",
        sa.Column("relay_log_id", postgresql.UUID(as_uuid=True), nullable=True),
    )
    op.add_column(
        "webhook_logs",
        sa.Column("forward_status_code", sa.Integer, nullable=True),
    )
    op.create_index("ix_webhook_logs_relay_log_id", "webhook_logs", ["relay_log_id"])

    # Provider credentials - secrets Fernet-encrypted by the admin tooling
    op.create_table(
        "provider_credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(30), nullable=False, unique=True),
        sa.Column("client_id", sa.String(255)),
        sa.Column("client_secret_encrypted", sa.Text),
        sa.Column("webhook_secret_encrypted", sa.Text),
        sa.Column("basic_token_encrypted", sa.Text),
        sa.Column("environment", sa.String(20), server_default="production"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("provider_credentials")

    op.drop_index("ix_webhook_logs_relay_log_id", table_name="webhook_logs")
    op.drop_column("webhook_logs", "forward_status_code")
    op.drop_column("webhook_logs", "relay_log_id")
    op.drop_column("webhook_logs", "channel")
