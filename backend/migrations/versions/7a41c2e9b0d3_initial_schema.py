"""initial_schema

Revision ID: 7a41c2e9b0d3
Revises:
Create Date: 2026-09-28 10:04:51.218734

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7a41c2e9b0d3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Enums ---
    # Let SQLAlchemy create enum types when referenced by tables.
    gtd_category_enum = postgresql.ENUM(
        'Inbox', 'Próximas acciones', 'Multitarea', 'A la espera', 'Algún día', name='gtd_category'
    )

    # --- Tables ---

    # users
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('subscription_status', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_users_phone', 'users', ['phone'])

    # contexts
    op.create_table(
        'contexts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_contexts_user', 'contexts', ['user_id'])

    # tasks
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', gtd_category_enum, nullable=False),
        sa.Column('context_id', sa.String(), sa.ForeignKey('contexts.id'), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('estimated_minutes', sa.SmallInteger(), sa.CheckConstraint('estimated_minutes BETWEEN 1 AND 1440'), nullable=True),
        sa.Column('completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_quick_action', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('source', sa.String(), nullable=True),
        sa.Column('source_event_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'source_event_id', name='uq_tasks_user_source_event')
    )
    op.create_index('idx_tasks_user_completed_due', 'tasks', ['user_id', 'completed', 'due_date'])
    op.create_index('idx_tasks_user_category', 'tasks', ['user_id', 'category'])

    # prompt_runs
    op.create_table(
        'prompt_runs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('request_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('operation', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('model', sa.String(), nullable=False),
        sa.Column('prompt_version', sa.String(), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=True),
        sa.Column('output_tokens', sa.Integer(), nullable=True),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_prompt_runs_user_op_created', 'prompt_runs', ['user_id', 'operation', sa.text('created_at DESC')])

    # event_log
    op.create_table(
        'event_log',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('request_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=True),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('payload_json', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_event_log_request', 'event_log', ['request_id'])
    op.create_index('idx_event_log_user_created', 'event_log', ['user_id', sa.text('created_at DESC')])


def downgrade() -> None:
    op.drop_table('event_log')
    op.drop_table('prompt_runs')
    op.drop_table('tasks')
    op.drop_table('contexts')
    op.drop_table('users')

    op.execute("DROP TYPE gtd_category")
