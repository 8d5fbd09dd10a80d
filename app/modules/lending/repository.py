"""
Persistence for loans, collateral locks, payments, health history,
liquidations and pool statistics.

Every public method runs in its own session and commits before returning,
so each one is an atomic unit. Status changes are compare-and-set updates
(``WHERE status = :expected``) and pool counters only move through
``SET column = column + :delta`` statements.
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.lending.models import (
    Loan, CollateralLock, LoanPayment, HealthCheck, Liquidation, LendingPool,
    LoanStatus
)


class LoanRepository:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ============================================================
    # Loans
    # ============================================================

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        async with self.session_factory() as db:
            result = await db.execute(select(Loan).where(Loan.loan_id == loan_id))
            return result.scalar_one_or_none()

    async def get_active_loans(self) -> List[Loan]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Loan)
                .where(Loan.status == LoanStatus.ACTIVE)
                .order_by(Loan.taken_at.desc(), Loan.id.desc())
            )
            return list(result.scalars().all())

    async def get_loans_at_risk(self, threshold: float) -> List[Loan]:
        """Active loans below the warning threshold, riskiest first"""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Loan)
                .where(and_(Loan.status == LoanStatus.ACTIVE, Loan.health_factor < threshold))
                .order_by(Loan.health_factor.asc(), Loan.id.asc())
            )
            return list(result.scalars().all())

    async def get_borrower_loans(self, borrower_account: str) -> List[Loan]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Loan)
                .where(Loan.borrower_account == borrower_account)
                .order_by(Loan.created_at.desc(), Loan.id.desc())
            )
            return list(result.scalars().all())

    async def get_loans_by_status(self, statuses: Iterable[LoanStatus]) -> List[Loan]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Loan).where(Loan.status.in_(list(statuses))).order_by(Loan.id.asc())
            )
            return list(result.scalars().all())

    async def create_pending_loan(self, loan: Loan, collateral: CollateralLock) -> Loan:
        """Persist a loan in ``pending`` together with its collateral lock row"""
        async with self.session_factory() as db:
            db.add_all([loan, collateral])
            await db.commit()
            await db.refresh(loan)
            return loan

    async def transition_status(
        self,
        loan_id: str,
        expected: LoanStatus,
        new: LoanStatus,
        **values
    ) -> bool:
        """Compare-and-set on Loan.status; True when this caller won"""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Loan)
                .where(and_(Loan.loan_id == loan_id, Loan.status == expected))
                .values(status=new, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def activate_loan(
        self,
        loan: Loan,
        *,
        transaction_ref: str,
        taken_at: datetime,
        due_date: datetime,
        health_factor: float,
        collateral_price: float,
        collateral_value_cents: int
    ) -> bool:
        """pending -> active, book the loan on the pool and write the first health snapshot"""
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Loan)
                    .where(and_(Loan.loan_id == loan.loan_id, Loan.status == LoanStatus.PENDING))
                    .values(
                        status=LoanStatus.ACTIVE,
                        transaction_ref=transaction_ref,
                        taken_at=taken_at,
                        due_date=due_date,
                        health_factor=health_factor
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False

                await self._adjust_pool(
                    db,
                    loan.asset_address,
                    total_borrowed_cents=loan.loan_amount_cents,
                    total_loans_originated=1
                )
                db.add(HealthCheck(
                    loan_id=loan.loan_id,
                    health_factor=health_factor,
                    collateral_price=collateral_price,
                    collateral_value_cents=collateral_value_cents,
                    checked_at=taken_at
                ))
            return True

    async def fail_origination(self, loan: Loan, step: str, reason: str) -> bool:
        """pending -> failed and give the reserved liquidity back to the pool"""
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Loan)
                    .where(and_(Loan.loan_id == loan.loan_id, Loan.status == LoanStatus.PENDING))
                    .values(status=LoanStatus.FAILED, failure_step=step, failure_reason=reason)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                await self._adjust_pool(
                    db,
                    loan.asset_address,
                    available_liquidity_cents=loan.loan_amount_cents
                )
            return True

    # ============================================================
    # Collateral
    # ============================================================

    async def get_collateral(self, loan_id: str) -> Optional[CollateralLock]:
        async with self.session_factory() as db:
            result = await db.execute(select(CollateralLock).where(CollateralLock.loan_id == loan_id))
            return result.scalar_one_or_none()

    async def mark_collateral_locked(self, loan_id: str, transaction_ref: str, locked_at: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(CollateralLock)
                .where(CollateralLock.loan_id == loan_id)
                .values(lock_transaction_ref=transaction_ref, locked_at=locked_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def mark_collateral_unlocked(self, loan_id: str, transaction_ref: str, unlocked_at: datetime) -> bool:
        """Stamp the unlock once; later calls are ignored"""
        async with self.session_factory() as db:
            result = await db.execute(
                self._unlock_statement(loan_id, transaction_ref, unlocked_at)
            )
            await db.commit()
            return result.rowcount == 1

    @staticmethod
    def _unlock_statement(loan_id: str, transaction_ref: str, unlocked_at: datetime):
        return (
            update(CollateralLock)
            .where(and_(CollateralLock.loan_id == loan_id, CollateralLock.unlocked_at.is_(None)))
            .values(unlocked_at=unlocked_at, unlock_transaction_ref=transaction_ref)
            .execution_options(synchronize_session=False)
        )

    # ============================================================
    # Health history
    # ============================================================

    async def record_health_check(
        self,
        loan_id: str,
        *,
        health_factor: float,
        collateral_price: float,
        collateral_value_cents: int,
        checked_at: datetime
    ) -> bool:
        """
        Append a snapshot and, while the loan is still active, store the new
        health factor and refresh the collateral price. Returns whether the
        loan was still active.
        """
        async with self.session_factory() as db:
            async with db.begin():
                db.add(HealthCheck(
                    loan_id=loan_id,
                    health_factor=health_factor,
                    collateral_price=collateral_price,
                    collateral_value_cents=collateral_value_cents,
                    checked_at=checked_at
                ))
                result = await db.execute(
                    update(Loan)
                    .where(and_(Loan.loan_id == loan_id, Loan.status == LoanStatus.ACTIVE))
                    .values(health_factor=health_factor)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                await db.execute(
                    update(CollateralLock)
                    .where(CollateralLock.loan_id == loan_id)
                    .values(current_price=collateral_price)
                    .execution_options(synchronize_session=False)
                )
            return True

    async def get_health_history(self, loan_id: str, limit: int = 100) -> List[HealthCheck]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(HealthCheck)
                .where(HealthCheck.loan_id == loan_id)
                .order_by(HealthCheck.checked_at.asc(), HealthCheck.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ============================================================
    # Payments
    # ============================================================

    async def get_payments(self, loan_id: str) -> List[LoanPayment]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(LoanPayment)
                .where(LoanPayment.loan_id == loan_id)
                .order_by(LoanPayment.paid_at.asc(), LoanPayment.id.asc())
            )
            return list(result.scalars().all())

    async def get_total_paid_cents(self, loan_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.coalesce(func.sum(LoanPayment.payment_amount_cents), 0))
                .where(LoanPayment.loan_id == loan_id)
            )
            return int(result.scalar_one())

    async def record_payment(self, payment: LoanPayment) -> LoanPayment:
        async with self.session_factory() as db:
            db.add(payment)
            await db.commit()
            await db.refresh(payment)
            return payment

    async def complete_repayment(
        self,
        loan: Loan,
        *,
        unlock_transaction_ref: str,
        repaid_at: datetime
    ) -> bool:
        """repaying -> repaid with collateral release and pool credit in one transaction"""
        interest_cents = loan.repayment_amount_cents - loan.loan_amount_cents
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Loan)
                    .where(and_(Loan.loan_id == loan.loan_id, Loan.status == LoanStatus.REPAYING))
                    .values(status=LoanStatus.REPAID, repaid_at=repaid_at)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                await db.execute(self._unlock_statement(loan.loan_id, unlock_transaction_ref, repaid_at))
                await self._adjust_pool(
                    db,
                    loan.asset_address,
                    total_borrowed_cents=-loan.loan_amount_cents,
                    available_liquidity_cents=loan.repayment_amount_cents,
                    total_liquidity_cents=interest_cents,
                    total_interest_earned_cents=interest_cents,
                    total_loans_repaid=1
                )
            return True

    # ============================================================
    # Liquidations
    # ============================================================

    async def get_liquidation(self, loan_id: str) -> Optional[Liquidation]:
        async with self.session_factory() as db:
            result = await db.execute(select(Liquidation).where(Liquidation.loan_id == loan_id))
            return result.scalar_one_or_none()

    async def get_liquidations(self, limit: int = 50) -> List[Liquidation]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Liquidation)
                .order_by(Liquidation.liquidated_at.desc(), Liquidation.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_borrower_liquidations(self, borrower_account: str) -> List[Liquidation]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Liquidation)
                .where(Liquidation.borrower_account == borrower_account)
                .order_by(Liquidation.liquidated_at.asc(), Liquidation.id.asc())
            )
            return list(result.scalars().all())

    async def complete_liquidation(self, loan: Loan, liquidation: Liquidation) -> Optional[Liquidation]:
        """
        liquidating -> liquidated, write the Liquidation record, release the
        collateral lock and credit recovered funds, all in one transaction.
        Returns None if the loan was no longer liquidating.
        """
        loss_cents = loan.loan_amount_cents - liquidation.usdc_recovered_cents
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Loan)
                    .where(and_(Loan.loan_id == loan.loan_id, Loan.status == LoanStatus.LIQUIDATING))
                    .values(
                        status=LoanStatus.LIQUIDATED,
                        liquidated_at=liquidation.liquidated_at,
                        health_factor=0.0
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None

                db.add(liquidation)
                await db.execute(
                    self._unlock_statement(loan.loan_id, liquidation.transaction_ref, liquidation.liquidated_at)
                )
                await self._adjust_pool(
                    db,
                    loan.asset_address,
                    total_borrowed_cents=-loan.loan_amount_cents,
                    available_liquidity_cents=liquidation.usdc_recovered_cents,
                    total_liquidity_cents=-loss_cents,
                    total_liquidations=1
                )
            await db.refresh(liquidation)
            return liquidation

    # ============================================================
    # Pool stats
    # ============================================================

    async def get_pool(self, asset_address: str) -> Optional[LendingPool]:
        async with self.session_factory() as db:
            result = await db.execute(select(LendingPool).where(LendingPool.asset_address == asset_address))
            return result.scalar_one_or_none()

    async def get_pools(self) -> List[LendingPool]:
        async with self.session_factory() as db:
            result = await db.execute(select(LendingPool).order_by(LendingPool.asset_address))
            return list(result.scalars().all())

    async def create_pool(self, asset_address: str) -> LendingPool:
        async with self.session_factory() as db:
            pool = LendingPool(
                asset_address=asset_address,
                total_liquidity_cents=0,
                available_liquidity_cents=0,
                total_borrowed_cents=0,
                total_interest_earned_cents=0,
                total_loans_originated=0,
                total_loans_repaid=0,
                total_liquidations=0
            )
            db.add(pool)
            await db.commit()
            await db.refresh(pool)
            return pool

    async def reserve_liquidity(self, asset_address: str, amount_cents: int) -> bool:
        """Take ``amount_cents`` out of available liquidity if it is there"""
        async with self.session_factory() as db:
            result = await db.execute(
                update(LendingPool)
                .where(and_(
                    LendingPool.asset_address == asset_address,
                    LendingPool.available_liquidity_cents >= amount_cents
                ))
                .values(available_liquidity_cents=LendingPool.available_liquidity_cents - amount_cents)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def release_liquidity(self, asset_address: str, amount_cents: int) -> bool:
        """Return a reservation that never turned into a loan"""
        async with self.session_factory() as db:
            async with db.begin():
                updated = await self._adjust_pool(db, asset_address, available_liquidity_cents=amount_cents)
            return updated

    async def deposit_liquidity(self, asset_address: str, amount_cents: int) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                updated = await self._adjust_pool(
                    db,
                    asset_address,
                    total_liquidity_cents=amount_cents,
                    available_liquidity_cents=amount_cents
                )
            return updated

    async def withdraw_liquidity(self, asset_address: str, amount_cents: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(LendingPool)
                .where(and_(
                    LendingPool.asset_address == asset_address,
                    LendingPool.available_liquidity_cents >= amount_cents
                ))
                .values(
                    available_liquidity_cents=LendingPool.available_liquidity_cents - amount_cents,
                    total_liquidity_cents=LendingPool.total_liquidity_cents - amount_cents
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    @staticmethod
    async def _adjust_pool(db: AsyncSession, asset_address: str, **deltas) -> bool:
        """Apply counter deltas as in-database increments"""
        values = {
            name: getattr(LendingPool, name) + delta
            for name, delta in deltas.items()
            if delta
        }
        if not values:
            return True
        result = await db.execute(
            update(LendingPool)
            .where(LendingPool.asset_address == asset_address)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
