from sqlalchemy import Column, Integer, BigInteger, String, Float, DateTime, Text, Enum as SQLEnum, ForeignKey
from sqlalchemy.sql import func
from datetime import datetime, timezone
from decimal import Decimal
from app.core.database import Base
from app.modules.lending.calculations import from_cents
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanStatus(str, enum.Enum):
    """Lifecycle status of a loan"""
    PENDING = "pending"          # Origination in flight (collateral lock / disbursement)
    ACTIVE = "active"
    REPAYING = "repaying"        # Payment in flight
    LIQUIDATING = "liquidating"  # Collateral disposal in flight
    REPAID = "repaid"
    LIQUIDATED = "liquidated"
    FAILED = "failed"            # Origination aborted, never became active

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.REPAID, LoanStatus.LIQUIDATED, LoanStatus.FAILED)


class PaymentType(str, enum.Enum):
    """Repayment classification"""
    PARTIAL = "partial"
    FULL = "full"


class Loan(Base):
    """
    A borrower's credit position backed by grove-ownership tokens.
    Principal fields are fixed at creation; only status, health factor and
    the lifecycle timestamps change afterwards.
    """
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(String(64), unique=True, nullable=False, index=True)
    borrower_account = Column(String(64), nullable=False, index=True)
    asset_address = Column(String(64), nullable=False, index=True)

    # Terms (money in cents)
    loan_amount_cents = Column(BigInteger, nullable=False)
    repayment_amount_cents = Column(BigInteger, nullable=False)
    collateral_amount = Column(Float, nullable=False)
    collateral_token_id = Column(String(64), nullable=False)
    interest_rate = Column(Float, nullable=False, default=0.10)
    collateralization_ratio = Column(Float, nullable=False, default=1.25)
    liquidation_threshold = Column(Float, nullable=False, default=0.90)
    liquidation_price = Column(Float, nullable=True)

    # Risk
    health_factor = Column(Float, nullable=False, default=1.0, index=True)
    status = Column(SQLEnum(LoanStatus), nullable=False, default=LoanStatus.PENDING, index=True)

    # Origination saga bookkeeping
    failure_step = Column(String(50), nullable=True)
    failure_reason = Column(Text, nullable=True)
    transaction_ref = Column(String(128), nullable=True)  # Disbursement tx

    # Lifecycle timestamps
    taken_at = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    repaid_at = Column(DateTime(timezone=True), nullable=True)
    liquidated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def loan_amount(self) -> Decimal:
        return from_cents(self.loan_amount_cents)

    @property
    def repayment_amount(self) -> Decimal:
        return from_cents(self.repayment_amount_cents)

    def __repr__(self):
        return f"<Loan(loan_id={self.loan_id}, borrower={self.borrower_account}, status={self.status})>"


class CollateralLock(Base):
    """Custody record paired 1:1 with a loan"""
    __tablename__ = "loan_collateral"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(String(64), ForeignKey("loans.loan_id"), unique=True, nullable=False, index=True)
    token_id = Column(String(64), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    initial_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=True)

    locked_at = Column(DateTime(timezone=True), nullable=True)
    unlocked_at = Column(DateTime(timezone=True), nullable=True)
    lock_transaction_ref = Column(String(128), nullable=True)
    unlock_transaction_ref = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_locked(self) -> bool:
        return self.lock_transaction_ref is not None and self.unlocked_at is None

    def __repr__(self):
        return f"<CollateralLock(loan_id={self.loan_id}, token={self.token_id}, amount={self.amount})>"


class LoanPayment(Base):
    """Immutable record of one repayment transfer"""
    __tablename__ = "loan_payments"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(String(64), unique=True, nullable=False, index=True)
    loan_id = Column(String(64), ForeignKey("loans.loan_id"), nullable=False, index=True)
    borrower_account = Column(String(64), nullable=False, index=True)
    payment_amount_cents = Column(BigInteger, nullable=False)
    payment_type = Column(SQLEnum(PaymentType), nullable=False)
    remaining_balance_cents = Column(BigInteger, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=False, index=True)
    transaction_ref = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def payment_amount(self) -> Decimal:
        return from_cents(self.payment_amount_cents)

    @property
    def remaining_balance(self) -> Decimal:
        return from_cents(self.remaining_balance_cents)

    def __repr__(self):
        return f"<LoanPayment(payment_id={self.payment_id}, loan_id={self.loan_id}, type={self.payment_type})>"


class HealthCheck(Base):
    """Append-only risk snapshot"""
    __tablename__ = "loan_health_history"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(String(64), ForeignKey("loans.loan_id"), nullable=False, index=True)
    health_factor = Column(Float, nullable=False)
    collateral_price = Column(Float, nullable=False)
    collateral_value_cents = Column(BigInteger, nullable=False)
    checked_at = Column(DateTime(timezone=True), nullable=False, index=True)

    @property
    def collateral_value(self) -> Decimal:
        return from_cents(self.collateral_value_cents)


class Liquidation(Base):
    """Terminal record of a forced closure; at most one per loan"""
    __tablename__ = "liquidations"

    id = Column(Integer, primary_key=True, index=True)
    liquidation_id = Column(String(64), unique=True, nullable=False, index=True)
    loan_id = Column(String(64), ForeignKey("loans.loan_id"), unique=True, nullable=False, index=True)
    borrower_account = Column(String(64), nullable=False, index=True)
    collateral_token_id = Column(String(64), nullable=False)
    collateral_amount = Column(Float, nullable=False)
    collateral_value_cents = Column(BigInteger, nullable=False)
    usdc_recovered_cents = Column(BigInteger, nullable=False)
    liquidation_penalty_cents = Column(BigInteger, nullable=False)
    liquidation_price = Column(Float, nullable=False)  # Execution price of the sale
    health_factor_at_liquidation = Column(Float, nullable=False)
    liquidated_at = Column(DateTime(timezone=True), nullable=False, index=True)
    liquidator_account = Column(String(64), nullable=True)
    liquidator_reward_cents = Column(BigInteger, nullable=True)
    transaction_ref = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def usdc_recovered(self) -> Decimal:
        return from_cents(self.usdc_recovered_cents)

    def __repr__(self):
        return f"<Liquidation(liquidation_id={self.liquidation_id}, loan_id={self.loan_id})>"


class LendingPool(Base):
    """Aggregate liquidity ledger per stablecoin asset"""
    __tablename__ = "lending_pool_stats"

    id = Column(Integer, primary_key=True, index=True)
    asset_address = Column(String(64), unique=True, nullable=False, index=True)
    total_liquidity_cents = Column(BigInteger, nullable=False, default=0)
    available_liquidity_cents = Column(BigInteger, nullable=False, default=0)
    total_borrowed_cents = Column(BigInteger, nullable=False, default=0)
    total_interest_earned_cents = Column(BigInteger, nullable=False, default=0)
    total_loans_originated = Column(Integer, nullable=False, default=0)
    total_loans_repaid = Column(Integer, nullable=False, default=0)
    total_liquidations = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def utilization_rate(self) -> float:
        """Share of total liquidity currently lent out"""
        if not self.total_liquidity_cents:
            return 0.0
        return round(self.total_borrowed_cents / self.total_liquidity_cents, 4)

    def __repr__(self):
        return f"<LendingPool(asset={self.asset_address}, available={self.available_liquidity_cents})>"
