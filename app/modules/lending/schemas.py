from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from enum import Enum


class LoanStatusEnum(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REPAYING = "repaying"
    LIQUIDATING = "liquidating"
    REPAID = "repaid"
    LIQUIDATED = "liquidated"
    FAILED = "failed"


class PaymentTypeEnum(str, Enum):
    PARTIAL = "partial"
    FULL = "full"


class LiquidationOutcome(str, Enum):
    LIQUIDATED = "liquidated"
    NOOP = "noop"
    FAILED = "failed"


# ============ Requests ============

class LoanOriginationRequest(BaseModel):
    """Borrower request to draw a loan against grove tokens"""
    borrower_account: str = Field(..., min_length=1, max_length=64)
    asset_address: str = Field("USDC", min_length=1, max_length=64)
    loan_amount: Decimal = Field(..., gt=0, decimal_places=2)
    collateral_token_id: str = Field(..., min_length=1, max_length=64)
    collateral_amount: float = Field(..., gt=0)
    collateral_price: float = Field(..., ge=0)


class LoanTermsRequest(BaseModel):
    loan_amount: Decimal = Field(..., gt=0, decimal_places=2)
    collateral_amount: float = Field(..., gt=0)
    collateral_price: float = Field(..., ge=0)


class RepaymentRequest(BaseModel):
    loan_id: str = Field(..., min_length=1, max_length=64)
    borrower_account: str = Field(..., min_length=1, max_length=64)
    payment_amount: Decimal = Field(..., gt=0, decimal_places=2)


class LiquidityRequest(BaseModel):
    """Liquidity provider deposit or withdrawal"""
    asset_address: str = Field("USDC", min_length=1, max_length=64)
    provider_account: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, decimal_places=2)


# ============ Responses ============

class LoanTermsResponse(BaseModel):
    loan_amount: Decimal
    required_collateral_value: Decimal
    collateral_value: Decimal
    sufficient_collateral: bool
    repayment_amount: Decimal
    interest: Decimal
    interest_rate: float
    collateralization_ratio: float
    liquidation_threshold: float
    liquidation_price: float
    health_factor: float
    loan_duration_days: int
    due_date: datetime


class LoanResponse(BaseModel):
    loan_id: str
    borrower_account: str
    asset_address: str
    loan_amount: Decimal
    repayment_amount: Decimal
    collateral_amount: float
    collateral_token_id: str
    interest_rate: float
    collateralization_ratio: float
    liquidation_threshold: float
    liquidation_price: Optional[float] = None
    health_factor: float
    status: LoanStatusEnum
    failure_step: Optional[str] = None
    failure_reason: Optional[str] = None
    transaction_ref: Optional[str] = None
    taken_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    repaid_at: Optional[datetime] = None
    liquidated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    payment_id: str
    loan_id: str
    borrower_account: str
    payment_amount: Decimal
    payment_type: PaymentTypeEnum
    remaining_balance: Decimal
    paid_at: datetime
    transaction_ref: Optional[str] = None

    class Config:
        from_attributes = True


class RepaymentResult(BaseModel):
    """Outcome of one processed payment"""
    loan_id: str
    payment: PaymentResponse
    total_paid: Decimal
    loan_status: LoanStatusEnum
    collateral_unlocked: bool = False


class LiquidationResult(BaseModel):
    outcome: LiquidationOutcome
    loan_id: str
    reason: Optional[str] = None
    loan_status: Optional[LoanStatusEnum] = None
    liquidation_id: Optional[str] = None
    collateral_sold: float = 0.0
    collateral_price: Optional[float] = None
    collateral_value: Decimal = Decimal("0.00")
    usdc_recovered: Decimal = Decimal("0.00")
    liquidation_penalty: Decimal = Decimal("0.00")
    liquidator_reward: Decimal = Decimal("0.00")
    health_factor: Optional[float] = None
    transaction_ref: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == LiquidationOutcome.LIQUIDATED


class MonitorSummary(BaseModel):
    """Result of one monitor sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    checked: int = 0
    liquidated: int = 0
    at_risk: int = 0
    errors: int = 0
    skipped: bool = False
    liquidated_loan_ids: List[str] = []
    at_risk_loan_ids: List[str] = []
    failed_loan_ids: List[str] = []


class MonitorStatus(BaseModel):
    is_monitoring: bool
    check_interval_seconds: float
    last_summary: Optional[MonitorSummary] = None


class PoolStatsResponse(BaseModel):
    asset_address: str
    total_liquidity: Decimal
    available_liquidity: Decimal
    total_borrowed: Decimal
    total_interest_earned: Decimal
    utilization_rate: float
    total_loans_originated: int
    total_loans_repaid: int
    total_liquidations: int


class ReconciliationIssue(BaseModel):
    """A loan left in an intermediate state that needs attention"""
    loan_id: str
    loan_status: LoanStatusEnum
    issue: str
    detail: str
    collateral_locked: bool
    total_paid: Decimal = Decimal("0.00")
