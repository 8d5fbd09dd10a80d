"""
Reconciliation Service - loans left between two external steps.

A crash or a failed treasury call can leave a loan in an in-flight status
or with collateral still in custody after the loan failed. This service
lists those loans and applies the compensations that are safe to automate.
Sold-but-unbooked liquidations need the execution venue checked and are
only reported.
"""
import logging
from typing import List

from app.core.config import settings
from app.modules.lending.calculations import from_cents
from app.modules.lending.exceptions import (
    LoanNotFoundError, CollateralNotFoundError, LoanStateConflictError, TransferFailedError
)
from app.modules.lending.models import CollateralLock, Loan, LoanStatus, utcnow
from app.modules.lending.ports import TransferPort, call_with_timeout
from app.modules.lending.repository import LoanRepository
from app.modules.lending.schemas import ReconciliationIssue, LoanStatusEnum
from app.modules.lending.services import LoanService

logger = logging.getLogger(__name__)

RECONCILE_STATUSES = [LoanStatus.PENDING, LoanStatus.REPAYING, LoanStatus.LIQUIDATING, LoanStatus.FAILED]


class ReconciliationService:
    def __init__(
        self,
        repository: LoanRepository,
        transfers: TransferPort,
        loan_service: LoanService,
        timeout: float = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
    ):
        self.repository = repository
        self.transfers = transfers
        self.loan_service = loan_service
        self.timeout = timeout

    async def find_issues(self) -> List[ReconciliationIssue]:
        issues = []
        for loan in await self.repository.get_loans_by_status(RECONCILE_STATUSES):
            collateral = await self.repository.get_collateral(loan.loan_id)
            locked = collateral is not None and collateral.is_locked
            issue = await self._classify(loan, locked)
            if issue is not None:
                issues.append(issue)

        if issues:
            logger.warning(f"Reconciliation found {len(issues)} loans needing attention")
        return issues

    async def _classify(self, loan: Loan, locked: bool):
        def build(issue: str, detail: str, total_paid_cents: int = 0) -> ReconciliationIssue:
            return ReconciliationIssue(
                loan_id=loan.loan_id,
                loan_status=LoanStatusEnum(loan.status.value),
                issue=issue,
                detail=detail,
                collateral_locked=locked,
                total_paid=from_cents(total_paid_cents)
            )

        if loan.status == LoanStatus.FAILED:
            if not locked:
                return None
            return build(
                "failed_origination_collateral_locked",
                f"Origination failed at {loan.failure_step}; collateral still in custody"
            )

        if loan.status == LoanStatus.PENDING:
            return build("origination_in_flight", "Origination did not reach activation")

        if loan.status == LoanStatus.REPAYING:
            total_paid = await self.repository.get_total_paid_cents(loan.loan_id)
            if total_paid >= loan.repayment_amount_cents:
                return build(
                    "repayment_covered_collateral_locked",
                    "Repayment amount received but collateral was not released",
                    total_paid
                )
            return build("repayment_in_flight", "Payment was being received when processing stopped", total_paid)

        return build(
            "liquidation_in_flight",
            "Collateral sale may have executed; check the execution venue before booking"
        )

    async def release_failed_origination_collateral(self, loan_id: str) -> CollateralLock:
        """Return custody of collateral for a loan whose origination failed"""
        loan = await self.repository.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        if loan.status != LoanStatus.FAILED:
            raise LoanStateConflictError(
                loan_id, loan.status.value, f"Loan {loan_id} is not failed. Status: {loan.status.value}"
            )
        collateral = await self.repository.get_collateral(loan_id)
        if collateral is None:
            raise CollateralNotFoundError(loan_id)
        if not collateral.is_locked:
            return collateral

        unlock = await call_with_timeout(
            "unlock_collateral",
            self.transfers.unlock_collateral(loan.borrower_account, collateral.token_id, collateral.amount),
            self.timeout
        )
        if not unlock.ok:
            logger.error(f"Compensating unlock for failed loan {loan_id} failed: {unlock.error}")
            raise TransferFailedError("unlock_collateral", unlock.error, loan_id, collateral_locked=True)

        await self.repository.mark_collateral_unlocked(loan_id, unlock.tx_ref, utcnow())
        logger.info(f"Released collateral for failed loan {loan_id} ({unlock.tx_ref})")
        return await self.repository.get_collateral(loan_id)

    async def resume_repayment(self, loan_id: str) -> Loan:
        """Finish a covered repayment whose collateral unlock did not go through"""
        loan = await self.repository.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        if loan.status != LoanStatus.REPAYING:
            raise LoanStateConflictError(
                loan_id, loan.status.value, f"Loan {loan_id} is not repaying. Status: {loan.status.value}"
            )
        total_paid = await self.repository.get_total_paid_cents(loan_id)
        if total_paid < loan.repayment_amount_cents:
            raise LoanStateConflictError(
                loan_id,
                loan.status.value,
                f"Loan {loan_id} has {from_cents(total_paid)} of {loan.repayment_amount} paid; "
                f"cannot release collateral"
            )
        collateral = await self.repository.get_collateral(loan_id)
        if collateral is None:
            raise CollateralNotFoundError(loan_id)

        await self.loan_service.release_repaid_collateral(loan, collateral)
        logger.info(f"Resumed repayment for {loan_id}")
        return await self.repository.get_loan(loan_id)
