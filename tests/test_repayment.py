"""
Integration tests for the repayment processor
"""
import pytest
from decimal import Decimal

from app.modules.lending.exceptions import (
    LoanNotFoundError, BorrowerMismatchError, LoanStateConflictError, LoanAlreadyTerminalError,
    TransferFailedError
)
from app.modules.lending.models import LoanStatus, PaymentType
from app.modules.lending.schemas import RepaymentRequest, LoanStatusEnum, PaymentTypeEnum

BORROWER = "0.0.1001"


def repayment(loan_id: str, amount: str, borrower: str = BORROWER) -> RepaymentRequest:
    return RepaymentRequest(loan_id=loan_id, borrower_account=borrower, payment_amount=Decimal(amount))


class TestProcessRepayment:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_then_full_repayment(self, lending, treasury, active_loan):
        """600 then 500 against a 1100 repayment amount"""
        first = await lending.loans.process_repayment(repayment(active_loan.loan_id, "600.00"))

        assert first.payment.payment_type == PaymentTypeEnum.PARTIAL
        assert first.payment.remaining_balance == Decimal("500.00")
        assert first.total_paid == Decimal("600.00")
        assert first.loan_status == LoanStatusEnum.ACTIVE
        assert first.collateral_unlocked is False
        assert (await lending.loans.get_loan(active_loan.loan_id)).status == LoanStatus.ACTIVE

        second = await lending.loans.process_repayment(repayment(active_loan.loan_id, "500.00"))

        assert second.payment.payment_type == PaymentTypeEnum.FULL
        assert second.payment.remaining_balance == Decimal("0.00")
        assert second.total_paid == Decimal("1100.00")
        assert second.loan_status == LoanStatusEnum.REPAID
        assert second.collateral_unlocked is True

        loan = await lending.loans.get_loan(active_loan.loan_id)
        assert loan.status == LoanStatus.REPAID
        assert loan.repaid_at is not None
        collateral = await lending.repository.get_collateral(active_loan.loan_id)
        assert not collateral.is_locked
        assert len(treasury.calls_for("unlock_collateral")) == 1

        payments = await lending.loans.get_payments(active_loan.loan_id)
        assert [p.payment_type for p in payments] == [PaymentType.PARTIAL, PaymentType.FULL]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repayment_credits_pool(self, lending, active_loan):
        """Repayment returns principal and interest to the pool"""
        await lending.loans.process_repayment(repayment(active_loan.loan_id, "1100.00"))

        stats = await lending.pools.get_pool_stats("USDC")
        assert stats.total_borrowed == Decimal("0.00")
        assert stats.available_liquidity == Decimal("10100.00")
        assert stats.total_liquidity == Decimal("10100.00")
        assert stats.total_interest_earned == Decimal("100.00")
        assert stats.total_loans_repaid == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_overpayment_is_full(self, lending, active_loan):
        """Overpayment closes the loan"""
        result = await lending.loans.process_repayment(repayment(active_loan.loan_id, "1200.00"))

        assert result.payment.payment_type == PaymentTypeEnum.FULL
        assert result.payment.remaining_balance == Decimal("0.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_receipt_goes_to_treasury(self, lending, treasury, active_loan):
        """Payment is transferred from the borrower to the treasury"""
        await lending.loans.process_repayment(repayment(active_loan.loan_id, "100.00"))

        receipt = treasury.calls_for("transfer_stable")[-1]
        assert receipt.args["from_account"] == BORROWER
        assert receipt.args["to_account"] == treasury.treasury_account
        assert receipt.args["amount_cents"] == 10000


class TestRepaymentRejections:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_loan(self, lending, usdc_pool):
        """Unknown loan id raises not found"""
        with pytest.raises(LoanNotFoundError):
            await lending.loans.process_repayment(repayment("loan_missing", "100.00"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_borrower_mismatch(self, lending, active_loan):
        """Payment from another account is rejected"""
        with pytest.raises(BorrowerMismatchError):
            await lending.loans.process_repayment(repayment(active_loan.loan_id, "100.00", borrower="0.0.9999"))

        assert await lending.loans.get_payments(active_loan.loan_id) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repayment_after_repaid_is_terminal(self, lending, active_loan):
        """Repaid loan rejects further payments"""
        await lending.loans.process_repayment(repayment(active_loan.loan_id, "1100.00"))

        with pytest.raises(LoanAlreadyTerminalError) as exc_info:
            await lending.loans.process_repayment(repayment(active_loan.loan_id, "10.00"))

        assert exc_info.value.status == "repaid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repayment_after_liquidation_is_terminal(self, lending, oracle, active_loan):
        """Liquidated loan rejects payments"""
        oracle.set_price(active_loan.collateral_token_id, 7.0)
        await lending.liquidations.check_and_liquidate(active_loan.loan_id)

        with pytest.raises(LoanAlreadyTerminalError):
            await lending.loans.process_repayment(repayment(active_loan.loan_id, "1100.00"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repayment_during_liquidation_conflicts(self, lending, repository, active_loan):
        """Loan held by a liquidation rejects payments"""
        await repository.transition_status(active_loan.loan_id, LoanStatus.ACTIVE, LoanStatus.LIQUIDATING)

        with pytest.raises(LoanStateConflictError) as exc_info:
            await lending.loans.process_repayment(repayment(active_loan.loan_id, "100.00"))

        assert not isinstance(exc_info.value, LoanAlreadyTerminalError)
        assert exc_info.value.status == "liquidating"


class TestRepaymentFailures:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_receipt_failure_restores_active(self, lending, treasury, active_loan):
        """Failed receipt returns the loan to active"""
        treasury.fail_operations.add("transfer_stable")

        with pytest.raises(TransferFailedError) as exc_info:
            await lending.loans.process_repayment(repayment(active_loan.loan_id, "600.00"))

        assert exc_info.value.step == "receive_payment"
        assert (await lending.loans.get_loan(active_loan.loan_id)).status == LoanStatus.ACTIVE
        assert await lending.loans.get_payments(active_loan.loan_id) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unlock_failure_leaves_loan_repaying(self, lending, treasury, active_loan):
        """Failed unlock leaves the covered loan repaying"""
        treasury.fail_operations.add("unlock_collateral")

        with pytest.raises(TransferFailedError) as exc_info:
            await lending.loans.process_repayment(repayment(active_loan.loan_id, "1100.00"))

        assert exc_info.value.step == "unlock_collateral"
        assert exc_info.value.collateral_locked is True

        loan = await lending.loans.get_loan(active_loan.loan_id)
        assert loan.status == LoanStatus.REPAYING
        assert (await lending.repository.get_collateral(loan.loan_id)).is_locked
        assert await lending.repository.get_total_paid_cents(loan.loan_id) == 110000

        stats = await lending.pools.get_pool_stats("USDC")
        assert stats.total_loans_repaid == 0
