"""
Loan terms and risk arithmetic.

All monetary values are integer cents. Token amounts, prices and ratios come
in as floats (or Decimals) and are converted through ``Decimal`` so repeated
multiplications never accumulate binary floating point drift.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Union

Number = Union[int, float, str, Decimal]

INTEREST_RATE = Decimal("0.10")
COLLATERALIZATION_RATIO = Decimal("1.25")
LIQUIDATION_THRESHOLD = Decimal("0.90")
LIQUIDATION_PENALTY = Decimal("0.05")
LIQUIDATOR_REWARD = Decimal("0.02")
LOAN_DURATION = timedelta(days=180)

# Health factor bands
LIQUIDATION_HEALTH_FACTOR = Decimal("1.0")
AT_RISK_HEALTH_FACTOR = Decimal("1.1")

CENT = Decimal("1")
TWO_PLACES = Decimal("0.01")


class HealthClassification(str, Enum):
    HEALTHY = "healthy"
    AT_RISK = "at_risk"
    LIQUIDATABLE = "liquidatable"


@dataclass(frozen=True)
class LiquidationSplit:
    """How the value of seized collateral is divided"""
    collateral_value_cents: int
    penalty_cents: int
    liquidator_reward_cents: int
    recovered_cents: int


@dataclass(frozen=True)
class LoanTerms:
    """Fixed terms computed at origination"""
    loan_amount_cents: int
    required_collateral_cents: int
    collateral_value_cents: int
    repayment_amount_cents: int
    interest_cents: int
    liquidation_price: float
    health_factor: float
    due_date: datetime
    sufficient_collateral: bool


def _dec(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _to_whole_cents(value: Decimal) -> int:
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP))


def to_cents(amount: Number) -> int:
    """Convert a dollar amount to integer cents (half-up)"""
    return _to_whole_cents(_dec(amount) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a two-place Decimal dollar amount"""
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(TWO_PLACES)


def collateral_value_cents(collateral_amount: Number, price: Number) -> int:
    """Market value of the collateral position"""
    return _to_whole_cents(_dec(collateral_amount) * _dec(price) * 100)


def required_collateral_cents(loan_amount_cents: int, ratio: Number = COLLATERALIZATION_RATIO) -> int:
    """Minimum collateral value needed to originate a loan"""
    return _to_whole_cents(Decimal(loan_amount_cents) * _dec(ratio))


def has_sufficient_collateral(collateral_amount: Number, price: Number, loan_amount_cents: int) -> bool:
    return collateral_value_cents(collateral_amount, price) >= required_collateral_cents(loan_amount_cents)


def repayment_amount_cents(loan_amount_cents: int, interest_rate: Number = INTEREST_RATE) -> int:
    """Principal plus fixed interest"""
    return _to_whole_cents(Decimal(loan_amount_cents) * (1 + _dec(interest_rate)))


def health_ratio(
    collateral_amount: Number,
    price: Number,
    loan_amount_cents: int,
    threshold: Number = LIQUIDATION_THRESHOLD
) -> Decimal:
    """
    healthFactor = (collateralAmount * price * threshold) / loanAmount

    Unrounded. Below 1.0 the haircut collateral value no longer covers the
    principal, so liquidation decisions compare this value.
    """
    value = _dec(collateral_amount) * _dec(price) * 100
    return (value * _dec(threshold)) / Decimal(loan_amount_cents)


def health_factor(
    collateral_amount: Number,
    price: Number,
    loan_amount_cents: int,
    threshold: Number = LIQUIDATION_THRESHOLD
) -> float:
    """Health ratio rounded half-up to two decimals, for storage and display"""
    ratio = health_ratio(collateral_amount, price, loan_amount_cents, threshold)
    return float(ratio.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def liquidation_price(
    loan_amount_cents: int,
    collateral_amount: Number,
    threshold: Number = LIQUIDATION_THRESHOLD
) -> float:
    """Collateral price at which the health factor reaches 1.0"""
    loan_amount = Decimal(loan_amount_cents) / 100
    price = loan_amount / (_dec(collateral_amount) * _dec(threshold))
    return float(price.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def classify_health(value: Number) -> HealthClassification:
    factor = _dec(value)
    if factor < LIQUIDATION_HEALTH_FACTOR:
        return HealthClassification.LIQUIDATABLE
    if factor < AT_RISK_HEALTH_FACTOR:
        return HealthClassification.AT_RISK
    return HealthClassification.HEALTHY


def liquidation_split(collateral_value: int, loan_amount_cents: int) -> LiquidationSplit:
    """
    Split seized collateral value into penalty, liquidator reward and the
    amount returned to the pool. The recovered amount never exceeds the
    outstanding principal; any surplus stays with the penalty and reward.
    """
    value = Decimal(collateral_value)
    penalty = _to_whole_cents(value * LIQUIDATION_PENALTY)
    reward = _to_whole_cents(value * LIQUIDATOR_REWARD)
    recovered = min(collateral_value - penalty - reward, loan_amount_cents)
    return LiquidationSplit(
        collateral_value_cents=collateral_value,
        penalty_cents=penalty,
        liquidator_reward_cents=reward,
        recovered_cents=max(recovered, 0)
    )


def remaining_balance_cents(repayment_cents: int, paid_cents: int) -> int:
    return max(0, repayment_cents - paid_cents)


def quote_terms(
    loan_amount_cents: int,
    collateral_amount: Number,
    price: Number,
    taken_at: datetime
) -> LoanTerms:
    """Compute the full set of loan terms for a prospective loan"""
    repayment = repayment_amount_cents(loan_amount_cents)
    return LoanTerms(
        loan_amount_cents=loan_amount_cents,
        required_collateral_cents=required_collateral_cents(loan_amount_cents),
        collateral_value_cents=collateral_value_cents(collateral_amount, price),
        repayment_amount_cents=repayment,
        interest_cents=repayment - loan_amount_cents,
        liquidation_price=liquidation_price(loan_amount_cents, collateral_amount),
        health_factor=health_factor(collateral_amount, price, loan_amount_cents),
        due_date=taken_at + LOAN_DURATION,
        sufficient_collateral=has_sufficient_collateral(collateral_amount, price, loan_amount_cents)
    )
