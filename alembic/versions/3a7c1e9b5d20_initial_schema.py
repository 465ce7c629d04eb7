"""initial_schema

Revision ID: 3a7c1e9b5d20
Revises:
Create Date: 2026-10-18 09:12:44.201337

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "3a7c1e9b5d20"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("whatsapp_number", sa.String(length=32), nullable=True),
        sa.Column("language", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("total_minutes", sa.Float(), nullable=True),
        sa.Column("used_minutes", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "is_subscribed", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("email", "deleted_at", name="uk_users_email"),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("idx_users_status", "users", ["status"])
    op.create_index(
        "uk_users_whatsapp_number",
        "users",
        ["whatsapp_number"],
        unique=True,
        postgresql_where=sa.text("whatsapp_number IS NOT NULL"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("plan", sa.String(length=30), server_default=sa.text("'free'"), nullable=False),
        sa.Column("type", sa.String(length=30), nullable=True),
        sa.Column(
            "status", sa.String(length=20), server_default=sa.text("'inactive'"), nullable=False
        ),
        sa.Column(
            "subscription_minutes", sa.Float(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("used_minutes", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=10), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider_subscription_id", name="uk_subscriptions_provider_id"),
    )
    op.create_index(
        "idx_subscriptions_user_status", "subscriptions", ["user_id", "status"]
    )

    op.create_table(
        "transcriptions",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("original_filename", sa.String(length=500), nullable=True),
        sa.Column("source_key", sa.Text(), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("mime_type", sa.String(length=100), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("language", sa.String(length=10), nullable=True),
        sa.Column(
            "status", sa.String(length=20), server_default=sa.text("'pending'"), nullable=False
        ),
        sa.Column("request_id", sa.String(length=128), nullable=True),
        sa.Column("reply_to", sa.String(length=64), nullable=True),
        sa.Column("transcript_text", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("word_count", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_transcriptions_user",
        "transcriptions",
        ["user_id"],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index(
        "idx_transcriptions_created",
        "transcriptions",
        [sa.text("created_at DESC")],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index(
        "uk_transcriptions_request_id",
        "transcriptions",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("request_id IS NOT NULL"),
    )

    op.create_table(
        "payment_history",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider_reference", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=10), nullable=True),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("plan_type", sa.String(length=30), nullable=True),
        sa.Column("payment_method", sa.String(length=30), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider_reference", name="uk_payment_history_reference"),
    )
    op.create_index("idx_payment_history_user", "payment_history", ["user_id"])

    op.create_table(
        "billing_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("event_id", name="uk_billing_webhook_events_event_id"),
    )


def downgrade() -> None:
    op.drop_table("billing_webhook_events")
    op.drop_index("idx_payment_history_user", table_name="payment_history")
    op.drop_table("payment_history")
    op.drop_index("uk_transcriptions_request_id", table_name="transcriptions")
    op.drop_index("idx_transcriptions_created", table_name="transcriptions")
    op.drop_index("idx_transcriptions_user", table_name="transcriptions")
    op.drop_table("transcriptions")
    op.drop_index("idx_subscriptions_user_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("uk_users_whatsapp_number", table_name="users")
    op.drop_index("idx_users_status", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
