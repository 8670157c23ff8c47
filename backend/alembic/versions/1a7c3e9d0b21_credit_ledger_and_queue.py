"""Credit ledger and generation queue

Revision ID: 1a7c3e9d0b21
Revises:
Create Date: 2026-10-19 10:12:41.508133

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


revision: str = '1a7c3e9d0b21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table('users',
    sa.Column('id', sa.String(length=128), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=True),
    sa.Column('credits_balance', sa.Integer(), nullable=False),
    sa.Column('is_blocked', sa.Boolean(), nullable=False),
    sa.Column('blocked_reason', sa.Text(), nullable=True),
    sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    sa.CheckConstraint('credits_balance >= 0', name='ck_users_credits_balance_non_negative'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_table('credit_ledger',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('user_id', sa.String(length=128), nullable=False),
    sa.Column('idempotency_key', sa.String(length=191), nullable=False),
    sa.Column('direction', sa.String(length=10), nullable=False),
    sa.Column('amount', sa.Integer(), nullable=False),
    sa.Column('balance_after', sa.Integer(), nullable=True),
    sa.Column('reason', sa.String(length=200), nullable=False),
    sa.Column('meta', sa.JSON(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('user_id', 'idempotency_key', 'direction', name='uq_credit_ledger_idempotency')
    )
    op.create_index('ix_credit_ledger_user_created', 'credit_ledger', ['user_id', 'created_at'], unique=False)
    op.create_table('generations',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('user_id', sa.String(length=128), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('generation_type', sa.String(length=50), nullable=False),
    sa.Column('provider', sa.String(length=50), nullable=False),
    sa.Column('model', sa.String(length=100), nullable=True),
    sa.Column('payload', sa.JSON(), nullable=True),
    sa.Column('extra_data', sa.JSON(), nullable=True),
    sa.Column('billing_mode', sa.String(length=10), nullable=False),
    sa.Column('credits_cost', sa.Integer(), nullable=False),
    sa.Column('credits_deducted', sa.Boolean(), nullable=False),
    sa.Column('queue_position', sa.Integer(), nullable=False),
    sa.Column('external_task_id', sa.String(length=100), nullable=True),
    sa.Column('history_id', sa.String(length=100), nullable=True),
    sa.Column('result', sa.JSON(), nullable=True),
    sa.Column('result_url', sa.String(length=1000), nullable=True),
    sa.Column('result_urls', sa.JSON(), nullable=True),
    sa.Column('error_code', sa.String(length=50), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_generations_user_status', 'generations', ['user_id', 'status'], unique=False)
    op.create_index('ix_generations_external_task', 'generations', ['external_task_id'], unique=False)
    op.create_table('task_events',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('generation_id', sa.String(length=36), nullable=False),
    sa.Column('event_type', sa.String(length=50), nullable=False),
    sa.Column('external_status', sa.String(length=50), nullable=True),
    sa.Column('response_data', sa.JSON(), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.ForeignKeyConstraint(['generation_id'], ['generations.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_task_events_generation_id', 'task_events', ['generation_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_task_events_generation_id', table_name='task_events')
    op.drop_table('task_events')
    op.drop_index('ix_generations_external_task', table_name='generations')
    op.drop_index('ix_generations_user_status', table_name='generations')
    op.drop_table('generations')
    op.drop_index('ix_credit_ledger_user_created', table_name='credit_ledger')
    op.drop_table('credit_ledger')
    op.drop_table('users')
