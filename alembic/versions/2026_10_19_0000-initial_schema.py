"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit ledger schema."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('account_id', sa.String(255), primary_key=True),
        sa.Column('available_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('reserved_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('billing_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('cost_per_minute_minor', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('low_balance_threshold_minor', sa.BigInteger(), nullable=False, server_default='1000'),
        sa.Column('last_low_balance_alert_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_recharge_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_recharge_trigger_minor', sa.BigInteger(), nullable=False, server_default='500'),
        sa.Column('auto_recharge_amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        # Constraints
        sa.CheckConstraint('available_minor >= 0', name='ck_available_non_negative'),
        sa.CheckConstraint('reserved_minor >= 0', name='ck_reserved_non_negative'),
        sa.CheckConstraint('cost_per_minute_minor >= 0', name='ck_rate_non_negative'),
    )

    # ========================================================================
    # Create credit_reservations table
    # ========================================================================
    op.create_table(
        'credit_reservations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('call_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('amount_minor > 0', name='ck_reservation_amount_positive'),
        sa.CheckConstraint("status IN ('active', 'finalized', 'released')", name='ck_reservation_status'),
        sa.UniqueConstraint('call_id', name='uq_reservation_call_id'),
        sa.ForeignKeyConstraint(['account_id'], ['credit_accounts.account_id'], name='fk_reservations_account', ondelete='RESTRICT'),
    )

    op.create_index('idx_reservations_account_status', 'credit_reservations', ['account_id', 'status'])
    op.create_index('idx_reservations_created_at', 'credit_reservations', ['created_at'])

    # ========================================================================
    # Create call_cost_records table
    # ========================================================================
    op.create_table(
        'call_cost_records',
        sa.Column('call_id', sa.String(255), primary_key=True),
        sa.Column('reservation_id', sa.Uuid(), nullable=False),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('reserved_minor', sa.BigInteger(), nullable=False),
        sa.Column('actual_cost_minor', sa.BigInteger(), nullable=False),
        sa.Column('deducted_minor', sa.BigInteger(), nullable=False),
        sa.Column('refunded_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shortfall_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('provider_cost_minor', sa.BigInteger(), nullable=True),
        sa.Column('margin_minor', sa.BigInteger(), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        # Constraints
        sa.CheckConstraint('actual_cost_minor >= 0', name='ck_cost_non_negative'),
        sa.CheckConstraint('deducted_minor >= 0', name='ck_deducted_non_negative'),
        sa.CheckConstraint('deducted_minor + shortfall_minor = actual_cost_minor', name='ck_cost_settlement_consistency'),
        sa.UniqueConstraint('reservation_id', name='uq_cost_record_reservation'),
        sa.ForeignKeyConstraint(['reservation_id'], ['credit_reservations.id'], name='fk_cost_records_reservation', ondelete='RESTRICT'),
    )

    op.create_index('idx_cost_records_account', 'call_cost_records', ['account_id'])

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('available_before', sa.BigInteger(), nullable=False),
        sa.Column('available_after', sa.BigInteger(), nullable=False),
        sa.Column('reserved_before', sa.BigInteger(), nullable=False),
        sa.Column('reserved_after', sa.BigInteger(), nullable=False),
        sa.Column('reservation_id', sa.Uuid(), nullable=True),
        sa.Column('call_id', sa.String(255), nullable=True),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        # Constraints
        sa.CheckConstraint('amount_minor >= 0', name='ck_transaction_amount_non_negative'),
        sa.CheckConstraint(
            "transaction_type IN ('deposit', 'reservation', 'release', 'deduction', 'adjustment')",
            name='ck_transaction_type',
        ),
        sa.UniqueConstraint('idempotency_key', name='uq_transaction_idempotency'),
        sa.ForeignKeyConstraint(['account_id'], ['credit_accounts.account_id'], name='fk_transactions_account', ondelete='RESTRICT'),
    )

    op.create_index('idx_transactions_account_created', 'credit_transactions', ['account_id', 'created_at'])


def downgrade() -> None:
    """Drop credit ledger schema."""
    op.drop_index('idx_transactions_account_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')

    op.drop_index('idx_cost_records_account', table_name='call_cost_records')
    op.drop_table('call_cost_records')

    op.drop_index('idx_reservations_created_at', table_name='credit_reservations')
    op.drop_index('idx_reservations_account_status', table_name='credit_reservations')
    op.drop_table('credit_reservations')

    op.drop_table('credit_accounts')
