"""
Health Monitor - periodic sweep over active loans.

Each tick reprices every active loan, records a health snapshot and hands
loans below 1.0 to the LiquidationService. Loans are processed one at a time
and a failure on one loan is counted and logged without stopping the sweep.

A Redis lease makes sure only one instance runs a tick at a time.
"""
import asyncio
import logging
import uuid
from typing import Optional

from redis import asyncio as aioredis

from app.core.config import settings
from app.modules.lending.calculations import (
    HealthClassification, classify_health, collateral_value_cents, health_factor, health_ratio
)
from app.modules.lending.exceptions import CollateralNotFoundError
from app.modules.lending.liquidation import LiquidationService
from app.modules.lending.models import Loan, utcnow
from app.modules.lending.ports import PriceOracle, fetch_price
from app.modules.lending.repository import LoanRepository
from app.modules.lending.schemas import LiquidationOutcome, MonitorStatus, MonitorSummary

logger = logging.getLogger(__name__)


class MonitorLease:
    """Short-lived Redis lock held for the duration of one tick"""

    # Delete only if we still own the key
    RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

    def __init__(
        self,
        redis: aioredis.Redis,
        key: str = "lending:monitor:lease",
        ttl_seconds: int = settings.MONITOR_LEASE_TTL_SECONDS
    ):
        self.redis = redis
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._token: Optional[str] = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self.key, token, nx=True, px=int(self.ttl_seconds * 1000))
        if acquired:
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        await self.redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None


class HealthMonitor:
    def __init__(
        self,
        repository: LoanRepository,
        oracle: PriceOracle,
        liquidation_service: LiquidationService,
        *,
        interval_seconds: float = settings.MONITOR_INTERVAL_SECONDS,
        timeout: float = settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        lease: Optional[MonitorLease] = None
    ):
        self.repository = repository
        self.oracle = oracle
        self.liquidation_service = liquidation_service
        self.interval_seconds = interval_seconds
        self.timeout = timeout
        self.lease = lease
        self.last_summary: Optional[MonitorSummary] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # ============================================================
    # Lifecycle
    # ============================================================

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_monitoring:
            logger.warning("Health monitor is already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Health monitor started (interval {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop scheduling ticks and wait for an in-flight tick to finish"""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Health monitor stopped")

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            is_monitoring=self.is_monitoring,
            check_interval_seconds=self.interval_seconds,
            last_summary=self.last_summary
        )

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Health monitor tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ============================================================
    # Tick
    # ============================================================

    async def run_tick(self) -> MonitorSummary:
        """Evaluate every active loan once and liquidate the unhealthy ones"""
        summary = MonitorSummary(started_at=utcnow())

        if self.lease is not None and not await self.lease.acquire():
            logger.info("Health monitor tick skipped: another instance holds the lease")
            summary.skipped = True
            summary.finished_at = utcnow()
            self.last_summary = summary
            return summary

        try:
            loans = await self.repository.get_active_loans()
            logger.info(f"Checking health of {len(loans)} active loans")
            for loan in loans:
                try:
                    await self._check_loan(loan, summary)
                except Exception as e:
                    logger.error(f"Health check failed for loan {loan.loan_id}: {str(e)}")
                    summary.errors += 1
                    summary.failed_loan_ids.append(loan.loan_id)
        finally:
            if self.lease is not None:
                await self.lease.release()

        summary.finished_at = utcnow()
        self.last_summary = summary
        logger.info(
            f"Health check complete: {summary.checked} checked, {summary.liquidated} liquidated, "
            f"{summary.at_risk} at risk, {summary.errors} errors"
        )
        return summary

    async def _check_loan(self, loan: Loan, summary: MonitorSummary) -> None:
        collateral = await self.repository.get_collateral(loan.loan_id)
        if collateral is None:
            raise CollateralNotFoundError(loan.loan_id)

        price = await fetch_price(self.oracle, collateral.token_id, self.timeout)
        current_health = health_factor(collateral.amount, price, loan.loan_amount_cents, loan.liquidation_threshold)
        still_active = await self.repository.record_health_check(
            loan.loan_id,
            health_factor=current_health,
            collateral_price=price,
            collateral_value_cents=collateral_value_cents(collateral.amount, price),
            checked_at=utcnow()
        )
        summary.checked += 1
        if not still_active:
            logger.info(f"Loan {loan.loan_id} left active during the sweep; skipping")
            return

        classification = classify_health(
            health_ratio(collateral.amount, price, loan.loan_amount_cents, loan.liquidation_threshold)
        )
        if classification == HealthClassification.LIQUIDATABLE:
            logger.warning(f"Loan {loan.loan_id} health ratio below 1.0 (factor {current_health}), liquidating")
            result = await self.liquidation_service.check_and_liquidate(loan.loan_id)
            if result.outcome == LiquidationOutcome.LIQUIDATED:
                summary.liquidated += 1
                summary.liquidated_loan_ids.append(loan.loan_id)
            elif result.outcome == LiquidationOutcome.FAILED:
                summary.errors += 1
                summary.failed_loan_ids.append(loan.loan_id)
        elif classification == HealthClassification.AT_RISK:
            logger.warning(f"Loan {loan.loan_id} at risk: health factor {current_health}")
            summary.at_risk += 1
            summary.at_risk_loan_ids.append(loan.loan_id)
