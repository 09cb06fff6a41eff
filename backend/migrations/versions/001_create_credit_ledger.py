"""Create credit ledger tables

Revision ID: 001
Revises:
Create Date: 2026-01-05 15:01:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'credit_balances',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('monthly_allowance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('monthly_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_monthly', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bonus_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bonus_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_bonus', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bonus_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('tier', sa.String(length=50), nullable=False, server_default='basic'),
        sa.Column('cycle_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cycle_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cycle_source', sa.String(length=20), nullable=False, server_default='profile'),
        sa.Column('cycle_anchor', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        # Pool invariants; the unmetered tier may exceed the monthly allowance
        sa.CheckConstraint(
            'monthly_used >= 0 AND reserved_monthly >= 0 AND bonus_used >= 0 AND reserved_bonus >= 0',
            name='ck_credit_balances_non_negative'
        ),
        sa.CheckConstraint('bonus_used + reserved_bonus <= bonus_total', name='ck_credit_balances_bonus_pool'),
    )
    op.create_index('ix_credit_balances_id', 'credit_balances', ['id'])
    op.create_index('ix_credit_balances_user_id', 'credit_balances', ['user_id'], unique=True)

    op.create_table(
        'credit_reservations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('monthly_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bonus_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='reserved'),
        sa.Column('feature', sa.String(length=100), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("status IN ('reserved', 'committed', 'released')", name='ck_credit_reservations_status'),
        sa.CheckConstraint(
            'amount > 0 AND monthly_amount >= 0 AND bonus_amount >= 0 AND monthly_amount + bonus_amount = amount',
            name='ck_credit_reservations_split'
        ),
    )
    op.create_index('ix_credit_reservations_id', 'credit_reservations', ['id'])
    op.create_index('ix_credit_reservations_request_id', 'credit_reservations', ['request_id'], unique=True)
    op.create_index('ix_credit_reservations_user_id', 'credit_reservations', ['user_id'])
    op.create_index('ix_credit_reservations_status_created', 'credit_reservations', ['status', 'created_at'])

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('request_id', sa.String(length=255), nullable=True),
        sa.Column('transaction_type', sa.String(length=50), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('monthly_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bonus_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pool', sa.String(length=20), nullable=True),
        sa.Column('balance_monthly_after', sa.Integer(), nullable=False),
        sa.Column('balance_bonus_after', sa.Integer(), nullable=False),
        sa.Column('settles_transaction_id', sa.Integer(),
                  sa.ForeignKey('credit_transactions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_reference', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_credit_transactions_id', 'credit_transactions', ['id'])
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('ix_credit_transactions_request_id', 'credit_transactions', ['request_id'])
    op.create_index('ix_credit_transactions_external_reference', 'credit_transactions', ['external_reference'])
    op.create_index('ix_credit_transactions_created_at', 'credit_transactions', ['created_at'])
    op.create_index('ix_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])
    op.create_index('ix_credit_transactions_request_type', 'credit_transactions', ['request_id', 'transaction_type'])

    op.create_table(
        'credit_balance_projections',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('available', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tier', sa.String(length=50), nullable=True),
        sa.Column('cycle_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'generation_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('feature', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='started'),
        sa.Column('credits_amount', sa.Integer(), nullable=True),
        sa.Column('error_stage', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_generation_attempts_id', 'generation_attempts', ['id'])
    op.create_index('ix_generation_attempts_request_id', 'generation_attempts', ['request_id'], unique=True)
    op.create_index('ix_generation_attempts_user_id', 'generation_attempts', ['user_id'])
    op.create_index('ix_generation_attempts_status_updated', 'generation_attempts', ['status', 'updated_at'])

    op.create_table(
        'credit_monitoring_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=True),
        sa.Column('request_id', sa.String(length=255), nullable=True),
        sa.Column('feature', sa.String(length=100), nullable=True),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_credit_monitoring_events_id', 'credit_monitoring_events', ['id'])
    op.create_index('ix_credit_monitoring_events_user_id', 'credit_monitoring_events', ['user_id'])
    op.create_index('ix_credit_monitoring_events_request_id', 'credit_monitoring_events', ['request_id'])
    op.create_index('ix_credit_monitoring_events_created_at', 'credit_monitoring_events', ['created_at'])


def downgrade() -> None:
    op.drop_table('credit_monitoring_events')
    op.drop_table('generation_attempts')
    op.drop_table('credit_balance_projections')
    op.drop_table('credit_transactions')
    op.drop_table('credit_reservations')
    op.drop_table('credit_balances')
    op.drop_table('users')
