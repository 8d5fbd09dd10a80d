"""
Liquidation Service - forced closure of undercollateralized loans.

The loan is claimed (``active -> liquidating``) before the collateral is
sold. A failed sale puts it back to ``active`` so the next monitor tick can
retry; a successful one is booked (status, Liquidation record, collateral
release and pool credit) in a single transaction.
"""
import logging
from typing import List, Optional

from app.core.config import settings
from app.modules.lending.calculations import (
    LIQUIDATION_HEALTH_FACTOR, collateral_value_cents, health_factor, health_ratio, liquidation_split, from_cents
)
from app.modules.lending.exceptions import (
    LoanNotFoundError, CollateralNotFoundError, PriceUnavailableError
)
from app.modules.lending.models import Liquidation, LoanStatus, utcnow
from app.modules.lending.ports import TransferPort, PriceOracle, call_with_timeout, fetch_price
from app.modules.lending.repository import LoanRepository
from app.modules.lending.schemas import LiquidationResult, LiquidationOutcome, LoanStatusEnum
from app.modules.lending.services import generate_reference

logger = logging.getLogger(__name__)


class LiquidationService:
    def __init__(
        self,
        repository: LoanRepository,
        transfers: TransferPort,
        oracle: PriceOracle,
        *,
        liquidator_account: str = settings.LIQUIDATOR_ACCOUNT,
        timeout: float = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
    ):
        self.repository = repository
        self.transfers = transfers
        self.oracle = oracle
        self.liquidator_account = liquidator_account
        self.timeout = timeout

    async def check_and_liquidate(self, loan_id: str) -> LiquidationResult:
        """
        Re-check a loan against a fresh price and liquidate it when its
        health factor is below 1.0.

        Returns ``noop`` when the loan is not active (already closed or
        another operation owns it) or still healthy, ``failed`` when the
        price or the sale could not be obtained, and ``liquidated`` on
        success. Unknown loans and missing collateral raise.
        """
        loan = await self.repository.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            logger.info(f"Liquidation skipped for {loan_id}: status is {loan.status.value}")
            return LiquidationResult(
                outcome=LiquidationOutcome.NOOP,
                loan_id=loan_id,
                loan_status=LoanStatusEnum(loan.status.value),
                reason=f"Loan is {loan.status.value}"
            )

        collateral = await self.repository.get_collateral(loan_id)
        if collateral is None:
            raise CollateralNotFoundError(loan_id)

        try:
            price = await fetch_price(self.oracle, collateral.token_id, self.timeout)
        except PriceUnavailableError as e:
            logger.error(f"Liquidation check for {loan_id} aborted at get_price: {e}")
            return LiquidationResult(
                outcome=LiquidationOutcome.FAILED,
                loan_id=loan_id,
                loan_status=LoanStatusEnum.ACTIVE,
                reason=str(e)
            )

        ratio = health_ratio(collateral.amount, price, loan.loan_amount_cents, loan.liquidation_threshold)
        current_health = health_factor(collateral.amount, price, loan.loan_amount_cents, loan.liquidation_threshold)
        if ratio >= LIQUIDATION_HEALTH_FACTOR:
            return LiquidationResult(
                outcome=LiquidationOutcome.NOOP,
                loan_id=loan_id,
                loan_status=LoanStatusEnum.ACTIVE,
                collateral_price=price,
                health_factor=current_health,
                reason=f"Loan is healthy (health factor {current_health})"
            )

        if not await self.repository.transition_status(loan_id, LoanStatus.ACTIVE, LoanStatus.LIQUIDATING):
            current = await self.repository.get_loan(loan_id)
            logger.info(f"Liquidation skipped for {loan_id}: claimed concurrently ({current.status.value})")
            return LiquidationResult(
                outcome=LiquidationOutcome.NOOP,
                loan_id=loan_id,
                loan_status=LoanStatusEnum(current.status.value),
                reason=f"Loan is {current.status.value}"
            )

        logger.warning(f"Liquidating loan {loan_id}: health factor {current_health} at ${price}")
        split = liquidation_split(collateral_value_cents(collateral.amount, price), loan.loan_amount_cents)

        try:
            sale = await call_with_timeout(
                "sell_collateral",
                self.transfers.sell_collateral(
                    collateral.token_id,
                    collateral.amount,
                    price,
                    f"liquidation {loan_id}"
                ),
                self.timeout
            )
        except Exception:
            await self.repository.transition_status(loan_id, LoanStatus.LIQUIDATING, LoanStatus.ACTIVE)
            raise

        if not sale.ok:
            logger.error(f"Liquidation of {loan_id} failed at sell_collateral: {sale.error}")
            await self.repository.transition_status(loan_id, LoanStatus.LIQUIDATING, LoanStatus.ACTIVE)
            return LiquidationResult(
                outcome=LiquidationOutcome.FAILED,
                loan_id=loan_id,
                loan_status=LoanStatusEnum.ACTIVE,
                collateral_price=price,
                health_factor=current_health,
                reason=f"Transfer failed at sell_collateral: {sale.error}"
            )

        liquidation = Liquidation(
            liquidation_id=generate_reference("liq"),
            loan_id=loan_id,
            borrower_account=loan.borrower_account,
            collateral_token_id=collateral.token_id,
            collateral_amount=collateral.amount,
            collateral_value_cents=split.collateral_value_cents,
            usdc_recovered_cents=split.recovered_cents,
            liquidation_penalty_cents=split.penalty_cents,
            liquidation_price=price,
            health_factor_at_liquidation=current_health,
            liquidated_at=utcnow(),
            liquidator_account=self.liquidator_account,
            liquidator_reward_cents=split.liquidator_reward_cents,
            transaction_ref=sale.tx_ref
        )
        try:
            booked = await self.repository.complete_liquidation(loan, liquidation)
        except Exception:
            logger.exception(
                f"Collateral for {loan_id} sold ({sale.tx_ref}) but the liquidation could not be recorded; "
                f"loan left in liquidating"
            )
            raise

        if booked is None:
            current = await self.repository.get_loan(loan_id)
            logger.error(f"Collateral for {loan_id} sold ({sale.tx_ref}) but loan is now {current.status.value}")
            return LiquidationResult(
                outcome=LiquidationOutcome.FAILED,
                loan_id=loan_id,
                loan_status=LoanStatusEnum(current.status.value),
                collateral_price=price,
                health_factor=current_health,
                transaction_ref=sale.tx_ref,
                reason=f"Loan changed to {current.status.value} during liquidation"
            )

        logger.info(
            f"Loan liquidated: {loan_id} (value {from_cents(split.collateral_value_cents)}, "
            f"recovered {from_cents(split.recovered_cents)})"
        )
        return LiquidationResult(
            outcome=LiquidationOutcome.LIQUIDATED,
            loan_id=loan_id,
            loan_status=LoanStatusEnum.LIQUIDATED,
            liquidation_id=booked.liquidation_id,
            collateral_sold=collateral.amount,
            collateral_price=price,
            collateral_value=from_cents(split.collateral_value_cents),
            usdc_recovered=from_cents(split.recovered_cents),
            liquidation_penalty=from_cents(split.penalty_cents),
            liquidator_reward=from_cents(split.liquidator_reward_cents),
            health_factor=current_health,
            transaction_ref=sale.tx_ref
        )

    async def get_liquidation(self, loan_id: str) -> Optional[Liquidation]:
        return await self.repository.get_liquidation(loan_id)

    async def get_liquidation_history(self, limit: int = 50) -> List[Liquidation]:
        return await self.repository.get_liquidations(limit=limit)

    async def get_borrower_liquidations(self, borrower_account: str) -> List[Liquidation]:
        return await self.repository.get_borrower_liquidations(borrower_account)
