"""add_whatsapp_pipeline_tables

Revision ID: b18e5f07c6a2
Revises: 7a41c2e9b0d3
Create Date: 2026-09-29 16:20:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "b18e5f07c6a2"
down_revision: Union[str, Sequence[str], None] = "7a41c2e9b0d3"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "account_links",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("normalized_address", sa.String(), nullable=False),
        sa.Column("link_code", sa.String(length=6), nullable=True),
        sa.Column("link_code_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_account_links_address_active", "account_links", ["normalized_address", "is_active"], unique=False)
    op.create_index("idx_account_links_code_active", "account_links", ["link_code", "is_active"], unique=False)
    op.create_index("idx_account_links_user", "account_links", ["user_id"], unique=False)

    op.create_table(
        "conversation_contexts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("sender_address", sa.String(), nullable=False),
        sa.Column("last_task_id", sa.String(), nullable=True),
        sa.Column("last_intent", sa.String(), nullable=True),
        sa.Column("conversation_history", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "sender_address", name="uq_conversation_user_address"),
    )
    op.create_index("idx_conversation_contexts_expires", "conversation_contexts", ["expires_at"], unique=False)

    op.create_table(
        "processed_messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_user_id", sa.String(), nullable=True),
        sa.Column("resulting_task_id", sa.String(), nullable=True),
        sa.Column("intent", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.UniqueConstraint("event_id", name="uq_processed_messages_event"),
    )
    op.create_index(
        "idx_processed_messages_processed_at",
        "processed_messages",
        [sa.text("processed_at DESC")],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_processed_messages_processed_at", table_name="processed_messages")
    op.drop_table("processed_messages")

    op.drop_index("idx_conversation_contexts_expires", table_name="conversation_contexts")
    op.drop_table("conversation_contexts")

    op.drop_index("idx_account_links_user", table_name="account_links")
    op.drop_index("idx_account_links_code_active", table_name="account_links")
    op.drop_index("idx_account_links_address_active", table_name="account_links")
    op.drop_table("account_links")
