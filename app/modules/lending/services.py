"""
Loan Service - origination, repayment and loan queries.

Origination and repayment both touch the treasury twice (lock then disburse,
receive then unlock). The loan row carries an in-flight status between the
two calls so a failure part way is visible and the terminal status is only
written once every external step succeeded.
"""
import logging
import uuid
from typing import List, Optional

from app.core.config import settings
from app.modules.lending.calculations import (
    INTEREST_RATE, COLLATERALIZATION_RATIO, LIQUIDATION_THRESHOLD, LOAN_DURATION,
    AT_RISK_HEALTH_FACTOR,
    to_cents, from_cents, collateral_value_cents, required_collateral_cents,
    remaining_balance_cents, quote_terms
)
from app.modules.lending.exceptions import (
    InsufficientCollateralError, InsufficientLiquidityError, BorrowerMismatchError,
    LoanNotFoundError, CollateralNotFoundError, PoolNotFoundError,
    LoanStateConflictError, LoanAlreadyTerminalError, TransferFailedError
)
from app.modules.lending.models import (
    Loan, CollateralLock, LoanPayment, HealthCheck, LoanStatus, PaymentType, utcnow
)
from app.modules.lending.ports import TransferPort, call_with_timeout
from app.modules.lending.repository import LoanRepository
from app.modules.lending.schemas import (
    LoanOriginationRequest, LoanTermsRequest, LoanTermsResponse,
    RepaymentRequest, RepaymentResult, PaymentResponse, LoanStatusEnum
)

logger = logging.getLogger(__name__)


def ensure_active(loan: Loan) -> None:
    """Raise the matching state conflict unless the loan is active"""
    if loan.status == LoanStatus.ACTIVE:
        return
    if loan.status.is_terminal:
        raise LoanAlreadyTerminalError(loan.loan_id, loan.status.value)
    raise LoanStateConflictError(
        loan.loan_id,
        loan.status.value,
        f"Loan {loan.loan_id} has an operation in progress. Status: {loan.status.value}"
    )


def generate_reference(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class LoanService:
    """Origination, repayment and read access for collateralized loans"""

    def __init__(
        self,
        repository: LoanRepository,
        transfers: TransferPort,
        treasury_account: str = settings.TREASURY_ACCOUNT,
        timeout: float = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
    ):
        self.repository = repository
        self.transfers = transfers
        self.treasury_account = treasury_account
        self.timeout = timeout

    # ============================================================
    # Terms
    # ============================================================

    def calculate_terms(self, request: LoanTermsRequest) -> LoanTermsResponse:
        """Preview the fixed terms a loan would get at the given collateral price"""
        terms = quote_terms(
            to_cents(request.loan_amount),
            request.collateral_amount,
            request.collateral_price,
            taken_at=utcnow()
        )
        return LoanTermsResponse(
            loan_amount=from_cents(terms.loan_amount_cents),
            required_collateral_value=from_cents(terms.required_collateral_cents),
            collateral_value=from_cents(terms.collateral_value_cents),
            sufficient_collateral=terms.sufficient_collateral,
            repayment_amount=from_cents(terms.repayment_amount_cents),
            interest=from_cents(terms.interest_cents),
            interest_rate=float(INTEREST_RATE),
            collateralization_ratio=float(COLLATERALIZATION_RATIO),
            liquidation_threshold=float(LIQUIDATION_THRESHOLD),
            liquidation_price=terms.liquidation_price,
            health_factor=terms.health_factor,
            loan_duration_days=LOAN_DURATION.days,
            due_date=terms.due_date
        )

    # ============================================================
    # Origination
    # ============================================================

    async def originate_loan(self, request: LoanOriginationRequest) -> Loan:
        """
        Validate collateral and pool liquidity, lock collateral, disburse the
        stablecoin and activate the loan.

        Validation failures raise before any side effect. A treasury failure
        marks the loan ``failed`` with the step that broke; if the lock had
        already gone through the collateral stays in custody and the error
        says so.
        """
        loan_cents = to_cents(request.loan_amount)
        logger.info(
            f"Originating loan for {request.borrower_account}: {request.loan_amount} {request.asset_address} "
            f"against {request.collateral_amount} x {request.collateral_token_id} @ ${request.collateral_price}"
        )

        # 1. Collateral sufficiency
        provided_cents = collateral_value_cents(request.collateral_amount, request.collateral_price)
        required_cents = required_collateral_cents(loan_cents)
        if provided_cents < required_cents:
            logger.warning(
                f"Rejected loan for {request.borrower_account}: collateral ${provided_cents / 100:.2f} "
                f"below required ${required_cents / 100:.2f}"
            )
            raise InsufficientCollateralError(required_cents, provided_cents)

        # 2. Pool liquidity, reserved atomically
        pool = await self.repository.get_pool(request.asset_address)
        if pool is None:
            raise PoolNotFoundError(request.asset_address)
        if not await self.repository.reserve_liquidity(request.asset_address, loan_cents):
            pool = await self.repository.get_pool(request.asset_address)
            logger.warning(
                f"Rejected loan for {request.borrower_account}: pool {request.asset_address} "
                f"has {pool.available_liquidity_cents / 100:.2f} available"
            )
            raise InsufficientLiquidityError(request.asset_address, pool.available_liquidity_cents, loan_cents)

        # 3. Persist the pending loan before touching the treasury
        terms = quote_terms(loan_cents, request.collateral_amount, request.collateral_price, taken_at=utcnow())
        loan_id = generate_reference("loan")
        loan = Loan(
            loan_id=loan_id,
            borrower_account=request.borrower_account,
            asset_address=request.asset_address,
            loan_amount_cents=loan_cents,
            repayment_amount_cents=terms.repayment_amount_cents,
            collateral_amount=request.collateral_amount,
            collateral_token_id=request.collateral_token_id,
            interest_rate=float(INTEREST_RATE),
            collateralization_ratio=float(COLLATERALIZATION_RATIO),
            liquidation_threshold=float(LIQUIDATION_THRESHOLD),
            liquidation_price=terms.liquidation_price,
            health_factor=terms.health_factor,
            status=LoanStatus.PENDING
        )
        collateral = CollateralLock(
            loan_id=loan_id,
            token_id=request.collateral_token_id,
            amount=request.collateral_amount,
            initial_price=request.collateral_price,
            current_price=request.collateral_price
        )
        try:
            loan = await self.repository.create_pending_loan(loan, collateral)
        except Exception:
            await self.repository.release_liquidity(request.asset_address, loan_cents)
            raise

        # 4. Lock collateral
        try:
            lock = await call_with_timeout(
                "lock_collateral",
                self.transfers.lock_collateral(request.borrower_account, request.collateral_token_id, request.collateral_amount),
                self.timeout
            )
        except Exception as e:
            logger.error(f"Loan {loan_id}: collateral lock raised: {str(e)}")
            await self.repository.fail_origination(loan, "lock_collateral", str(e))
            raise TransferFailedError("lock_collateral", str(e), loan_id) from e
        if not lock.ok:
            logger.error(f"Loan {loan_id}: collateral lock failed: {lock.error}")
            await self.repository.fail_origination(loan, "lock_collateral", lock.error)
            raise TransferFailedError("lock_collateral", lock.error, loan_id)
        await self.repository.mark_collateral_locked(loan_id, lock.tx_ref, utcnow())

        # 5. Disburse the stablecoin
        try:
            disbursement = await call_with_timeout(
                "disburse",
                self.transfers.transfer_stable(
                    self.treasury_account,
                    request.borrower_account,
                    loan_cents,
                    f"loan disbursement {loan_id}"
                ),
                self.timeout
            )
        except Exception as e:
            logger.error(
                f"Loan {loan_id}: disbursement raised after collateral lock {lock.tx_ref}, "
                f"collateral remains locked: {str(e)}"
            )
            await self.repository.fail_origination(loan, "disburse", str(e))
            raise TransferFailedError("disburse", str(e), loan_id, collateral_locked=True) from e
        if not disbursement.ok:
            logger.error(
                f"Loan {loan_id}: disbursement failed after collateral lock {lock.tx_ref}, "
                f"collateral remains locked: {disbursement.error}"
            )
            await self.repository.fail_origination(loan, "disburse", disbursement.error)
            raise TransferFailedError("disburse", disbursement.error, loan_id, collateral_locked=True)

        # 6. Activate
        taken_at = utcnow()
        activated = await self.repository.activate_loan(
            loan,
            transaction_ref=disbursement.tx_ref,
            taken_at=taken_at,
            due_date=taken_at + LOAN_DURATION,
            health_factor=terms.health_factor,
            collateral_price=request.collateral_price,
            collateral_value_cents=provided_cents
        )
        if not activated:
            current = await self.repository.get_loan(loan_id)
            raise LoanStateConflictError(loan_id, current.status.value)

        logger.info(
            f"Loan created: {loan_id} (repayment {from_cents(terms.repayment_amount_cents)}, "
            f"health {terms.health_factor})"
        )
        return await self.repository.get_loan(loan_id)

    # ============================================================
    # Repayment
    # ============================================================

    async def process_repayment(self, request: RepaymentRequest) -> RepaymentResult:
        """
        Receive a payment and, once the repayment amount is covered, unlock
        the collateral and close the loan as ``repaid``.

        The loan is held in ``repaying`` while the treasury is called so a
        concurrent liquidation cannot claim it.
        """
        loan = await self.repository.get_loan(request.loan_id)
        if loan is None:
            raise LoanNotFoundError(request.loan_id)
        ensure_active(loan)
        if loan.borrower_account != request.borrower_account:
            raise BorrowerMismatchError(loan.loan_id)
        collateral = await self.repository.get_collateral(loan.loan_id)
        if collateral is None:
            raise CollateralNotFoundError(loan.loan_id)

        payment_cents = to_cents(request.payment_amount)
        logger.info(f"Processing repayment of {request.payment_amount} for loan {loan.loan_id}")

        if not await self.repository.transition_status(loan.loan_id, LoanStatus.ACTIVE, LoanStatus.REPAYING):
            current = await self.repository.get_loan(loan.loan_id)
            ensure_active(current)
            raise LoanStateConflictError(loan.loan_id, current.status.value)

        try:
            receipt = await call_with_timeout(
                "receive_payment",
                self.transfers.transfer_stable(
                    request.borrower_account,
                    self.treasury_account,
                    payment_cents,
                    f"loan repayment {loan.loan_id}"
                ),
                self.timeout
            )
        except Exception:
            await self.repository.transition_status(loan.loan_id, LoanStatus.REPAYING, LoanStatus.ACTIVE)
            raise

        if not receipt.ok:
            logger.error(f"Loan {loan.loan_id}: repayment receipt failed: {receipt.error}")
            await self.repository.transition_status(loan.loan_id, LoanStatus.REPAYING, LoanStatus.ACTIVE)
            raise TransferFailedError("receive_payment", receipt.error, loan.loan_id)

        paid_before = await self.repository.get_total_paid_cents(loan.loan_id)
        total_paid = paid_before + payment_cents
        is_full = total_paid >= loan.repayment_amount_cents
        paid_at = utcnow()
        payment = await self.repository.record_payment(LoanPayment(
            payment_id=generate_reference("payment"),
            loan_id=loan.loan_id,
            borrower_account=request.borrower_account,
            payment_amount_cents=payment_cents,
            payment_type=PaymentType.FULL if is_full else PaymentType.PARTIAL,
            remaining_balance_cents=remaining_balance_cents(loan.repayment_amount_cents, total_paid),
            paid_at=paid_at,
            transaction_ref=receipt.tx_ref
        ))

        if not is_full:
            await self.repository.transition_status(loan.loan_id, LoanStatus.REPAYING, LoanStatus.ACTIVE)
            logger.info(f"Partial payment recorded for {loan.loan_id}. Remaining: {payment.remaining_balance}")
            return RepaymentResult(
                loan_id=loan.loan_id,
                payment=PaymentResponse.model_validate(payment),
                total_paid=from_cents(total_paid),
                loan_status=LoanStatusEnum.ACTIVE
            )

        await self.release_repaid_collateral(loan, collateral)
        logger.info(f"Loan fully repaid: {loan.loan_id}")
        return RepaymentResult(
            loan_id=loan.loan_id,
            payment=PaymentResponse.model_validate(payment),
            total_paid=from_cents(total_paid),
            loan_status=LoanStatusEnum.REPAID,
            collateral_unlocked=True
        )

    async def release_repaid_collateral(self, loan: Loan, collateral: CollateralLock) -> None:
        """Unlock collateral for a covered loan in ``repaying`` and mark it ``repaid``"""
        unlock = await call_with_timeout(
            "unlock_collateral",
            self.transfers.unlock_collateral(loan.borrower_account, collateral.token_id, collateral.amount),
            self.timeout
        )
        if not unlock.ok:
            logger.error(
                f"Loan {loan.loan_id}: repayment covered but collateral unlock failed, "
                f"loan left in repaying: {unlock.error}"
            )
            raise TransferFailedError("unlock_collateral", unlock.error, loan.loan_id, collateral_locked=True)

        if not await self.repository.complete_repayment(
            loan,
            unlock_transaction_ref=unlock.tx_ref,
            repaid_at=utcnow()
        ):
            current = await self.repository.get_loan(loan.loan_id)
            raise LoanStateConflictError(loan.loan_id, current.status.value)

    # ============================================================
    # Queries
    # ============================================================

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        return await self.repository.get_loan(loan_id)

    async def get_active_loans(self) -> List[Loan]:
        return await self.repository.get_active_loans()

    async def get_loans_at_risk(self) -> List[Loan]:
        """Active loans with health factor under the warning band"""
        return await self.repository.get_loans_at_risk(float(AT_RISK_HEALTH_FACTOR))

    async def get_borrower_loans(self, borrower_account: str) -> List[Loan]:
        return await self.repository.get_borrower_loans(borrower_account)

    async def get_payments(self, loan_id: str) -> List[LoanPayment]:
        return await self.repository.get_payments(loan_id)

    async def get_health_history(self, loan_id: str, limit: int = 100) -> List[HealthCheck]:
        return await self.repository.get_health_history(loan_id, limit=limit)
