"""Add lending tables

Revision ID: 20261018_1200_lending
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261018_1200_lending'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ============================================================
    # Loans Table
    # ============================================================
    op.create_table('loans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('loan_id', sa.String(length=64), nullable=False),
        sa.Column('borrower_account', sa.String(length=64), nullable=False),
        sa.Column('asset_address', sa.String(length=64), nullable=False),
        # Terms
        sa.Column('loan_amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('repayment_amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('collateral_amount', sa.Float(), nullable=False),
        sa.Column('collateral_token_id', sa.String(length=64), nullable=False),
        sa.Column('interest_rate', sa.Float(), nullable=False),
        sa.Column('collateralization_ratio', sa.Float(), nullable=False),
        sa.Column('liquidation_threshold', sa.Float(), nullable=False),
        sa.Column('liquidation_price', sa.Float(), nullable=True),
        # Risk
        sa.Column('health_factor', sa.Float(), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'ACTIVE', 'REPAYING', 'LIQUIDATING', 'REPAID', 'LIQUIDATED', 'FAILED', name='loanstatus'), nullable=False),
        # Failure
        sa.Column('failure_step', sa.String(length=50), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('transaction_ref', sa.String(length=128), nullable=True),
        # Lifecycle
        sa.Column('taken_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('repaid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('liquidated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loans_id'), 'loans', ['id'], unique=False)
    op.create_index(op.f('ix_loans_loan_id'), 'loans', ['loan_id'], unique=True)
    op.create_index(op.f('ix_loans_borrower_account'), 'loans', ['borrower_account'], unique=False)
    op.create_index(op.f('ix_loans_asset_address'), 'loans', ['asset_address'], unique=False)
    op.create_index(op.f('ix_loans_health_factor'), 'loans', ['health_factor'], unique=False)
    op.create_index(op.f('ix_loans_status'), 'loans', ['status'], unique=False)
    op.create_index(op.f('ix_loans_due_date'), 'loans', ['due_date'], unique=False)

    # ============================================================
    # Collateral Locks Table
    # ============================================================
    op.create_table('loan_collateral',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('loan_id', sa.String(length=64), nullable=False),
        sa.Column('token_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('initial_price', sa.Float(), nullable=False),
        sa.Column('current_price', sa.Float(), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unlocked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lock_transaction_ref', sa.String(length=128), nullable=True),
        sa.Column('unlock_transaction_ref', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.loan_id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loan_collateral_id'), 'loan_collateral', ['id'], unique=False)
    op.create_index(op.f('ix_loan_collateral_loan_id'), 'loan_collateral', ['loan_id'], unique=True)
    op.create_index(op.f('ix_loan_collateral_token_id'), 'loan_collateral', ['token_id'], unique=False)

    # ============================================================
    # Loan Payments Table
    # ============================================================
    op.create_table('loan_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.String(length=64), nullable=False),
        sa.Column('loan_id', sa.String(length=64), nullable=False),
        sa.Column('borrower_account', sa.String(length=64), nullable=False),
        sa.Column('payment_amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('payment_type', sa.Enum('PARTIAL', 'FULL', name='paymenttype'), nullable=False),
        sa.Column('remaining_balance_cents', sa.BigInteger(), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('transaction_ref', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.loan_id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loan_payments_id'), 'loan_payments', ['id'], unique=False)
    op.create_index(op.f('ix_loan_payments_payment_id'), 'loan_payments', ['payment_id'], unique=True)
    op.create_index(op.f('ix_loan_payments_loan_id'), 'loan_payments', ['loan_id'], unique=False)
    op.create_index(op.f('ix_loan_payments_borrower_account'), 'loan_payments', ['borrower_account'], unique=False)
    op.create_index(op.f('ix_loan_payments_paid_at'), 'loan_payments', ['paid_at'], unique=False)

    # ============================================================
    # Health History Table
    # ============================================================
    op.create_table('loan_health_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('loan_id', sa.String(length=64), nullable=False),
        sa.Column('health_factor', sa.Float(), nullable=False),
        sa.Column('collateral_price', sa.Float(), nullable=False),
        sa.Column('collateral_value_cents', sa.BigInteger(), nullable=False),
        sa.Column('checked_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.loan_id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loan_health_history_id'), 'loan_health_history', ['id'], unique=False)
    op.create_index(op.f('ix_loan_health_history_loan_id'), 'loan_health_history', ['loan_id'], unique=False)
    op.create_index(op.f('ix_loan_health_history_checked_at'), 'loan_health_history', ['checked_at'], unique=False)

    # ============================================================
    # Liquidations Table
    # ============================================================
    op.create_table('liquidations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('liquidation_id', sa.String(length=64), nullable=False),
        sa.Column('loan_id', sa.String(length=64), nullable=False),
        sa.Column('borrower_account', sa.String(length=64), nullable=False),
        sa.Column('collateral_token_id', sa.String(length=64), nullable=False),
        sa.Column('collateral_amount', sa.Float(), nullable=False),
        sa.Column('collateral_value_cents', sa.BigInteger(), nullable=False),
        sa.Column('usdc_recovered_cents', sa.BigInteger(), nullable=False),
        sa.Column('liquidation_penalty_cents', sa.BigInteger(), nullable=False),
        sa.Column('liquidation_price', sa.Float(), nullable=False),
        sa.Column('health_factor_at_liquidation', sa.Float(), nullable=False),
        sa.Column('liquidated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('liquidator_account', sa.String(length=64), nullable=True),
        sa.Column('liquidator_reward_cents', sa.BigInteger(), nullable=True),
        sa.Column('transaction_ref', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.loan_id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_liquidations_id'), 'liquidations', ['id'], unique=False)
    op.create_index(op.f('ix_liquidations_liquidation_id'), 'liquidations', ['liquidation_id'], unique=True)
    op.create_index(op.f('ix_liquidations_loan_id'), 'liquidations', ['loan_id'], unique=True)
    op.create_index(op.f('ix_liquidations_borrower_account'), 'liquidations', ['borrower_account'], unique=False)
    op.create_index(op.f('ix_liquidations_liquidated_at'), 'liquidations', ['liquidated_at'], unique=False)

    # ============================================================
    # Lending Pool Stats Table
    # ============================================================
    op.create_table('lending_pool_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('asset_address', sa.String(length=64), nullable=False),
        sa.Column('total_liquidity_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('available_liquidity_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_borrowed_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_interest_earned_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_loans_originated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_loans_repaid', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_liquidations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('available_liquidity_cents >= 0', name='ck_lending_pool_available_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_lending_pool_stats_id'), 'lending_pool_stats', ['id'], unique=False)
    op.create_index(op.f('ix_lending_pool_stats_asset_address'), 'lending_pool_stats', ['asset_address'], unique=True)


def downgrade() -> None:
    op.drop_table('lending_pool_stats')
    op.drop_table('liquidations')
    op.drop_table('loan_health_history')
    op.drop_table('loan_payments')
    op.drop_table('loan_collateral')
    op.drop_table('loans')
    sa.Enum(name='paymenttype').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='loanstatus').drop(op.get_bind(), checkfirst=True)
