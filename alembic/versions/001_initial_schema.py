"""Initial schema - users, subscription ledger, webhook audit trail.

Revision ID: 001
Revises:
Create Date: 2026-10-05
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users (shared with the rest of the application)
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255)),
        sa.Column("username", sa.String(255)),
        sa.Column("access_level", sa.String(20), nullable=False, server_default="free"),
        sa.Column("plan_type", sa.String(50)),
        sa.Column("subscription_source", sa.String(30)),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True)),
        sa.Column("subscription_expiration_date", sa.DateTime(timezone=True)),
        sa.Column("lifetime_access", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("external_subscriber_code", sa.String(120)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Unique index backs the INSERT ... ON CONFLICT (email) upsert
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Subscription ledger - append-only, transaction_id is the idempotency key
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("plan_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True)),
        sa.Column("origin_provider", sa.String(30), nullable=False),
        sa.Column("transaction_id", sa.String(160), nullable=False),
        sa.Column("last_event", sa.String(80)),
        sa.Column("subscription_code", sa.String(120)),
        sa.Column("plan_id", sa.String(120)),
        sa.Column("payment_method", sa.String(50)),
        sa.Column("price", sa.Float),
        sa.Column("currency", sa.String(10)),
        sa.Column("raw_webhook_payload", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("transaction_id", name="uq_subscriptions_transaction_id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])

    # Webhook audit trail - one row per inbound call, never deleted
    op.create_table(
        "webhook_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(80), nullable=False, server_default="unknown"),
        sa.Column("status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("raw_payload", postgresql.JSONB, nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("extracted_email", sa.String(255), nullable=True),
        sa.Column("transaction_id", sa.String(120), nullable=True),
        sa.Column("signature_valid", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("source_ip", sa.String(64), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_logs_source", "webhook_logs", ["source"])
    op.create_index("ix_webhook_logs_status", "webhook_logs", ["status"])
    op.create_index("ix_webhook_logs_payload_hash", "webhook_logs", ["payload_hash"])
    op.create_index("ix_webhook_logs_extracted_email", "webhook_logs", ["extracted_email"])
    op.create_index("ix_webhook_logs_transaction_id", "webhook_logs", ["transaction_id"])
    op.create_index("ix_webhook_logs_correlation_id", "webhook_logs", ["correlation_id"])
    op.create_index("ix_webhook_logs_status_created", "webhook_logs", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_logs_status_created", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_correlation_id", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_transaction_id", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_extracted_email", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_payload_hash", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_status", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_source", table_name="webhook_logs")
    op.drop_table("webhook_logs")

    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
