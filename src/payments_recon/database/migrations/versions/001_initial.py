"""Initial migration - create transactions, scheduled_reconciliations, and reconciliation_runs tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Local ledger
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('payment_channel_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ARS'),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='other'),
        sa.Column('installments', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('transaction_date', sa.DateTime(), nullable=False),
        sa.Column('expected_settlement_date', sa.DateTime(), nullable=True),
        sa.Column('settlement_batch_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_channel_id', 'transaction_id', name='uq_transactions_channel_txn'),
    )
    op.create_index('ix_transactions_transaction_date', 'transactions', ['transaction_date'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])

    op.create_table(
        'scheduled_reconciliations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('organization_id', sa.String(255), nullable=False),
        sa.Column('payment_channel_id', sa.String(255), nullable=False),
        sa.Column('frequency', sa.String(20), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=True),
        sa.Column('day_of_month', sa.Integer(), nullable=True),
        sa.Column('hour', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minute', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('days_to_include', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('next_run', sa.DateTime(), nullable=True),
        sa.Column('last_run', sa.DateTime(), nullable=True),
        sa.Column('last_execution_status', sa.String(20), nullable=True),
        sa.Column('execution_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_scheduled_reconciliations_next_run', 'scheduled_reconciliations', ['next_run'])

    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(255), nullable=True),
        sa.Column('payment_channel_id', sa.String(255), nullable=False),
        sa.Column('schedule_id', sa.String(36), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('records_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reconciliation_runs_channel', 'reconciliation_runs', ['payment_channel_id'])
    op.create_index('ix_reconciliation_runs_created_at', 'reconciliation_runs', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_reconciliation_runs_created_at', table_name='reconciliation_runs')
    op.drop_index('ix_reconciliation_runs_channel', table_name='reconciliation_runs')
    op.drop_index('ix_scheduled_reconciliations_next_run', table_name='scheduled_reconciliations')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_transaction_date', table_name='transactions')

    op.drop_table('reconciliation_runs')
    op.drop_table('scheduled_reconciliations')
    op.drop_table('transactions')
