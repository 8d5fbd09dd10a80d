"""
Tests for the health monitor loop
"""
import asyncio
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from app.modules.lending.models import LoanStatus, utcnow
from app.modules.lending.monitor import HealthMonitor, MonitorLease
from app.modules.lending.schemas import RepaymentRequest

OTHER_TOKEN = "0.0.grove-2"


class TestRunTick:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_healthy_sweep(self, lending, active_loan):
        """Sweep of healthy loans only records snapshots"""
        summary = await lending.monitor.run_tick()

        assert summary.checked == 1
        assert summary.liquidated == 0
        assert summary.at_risk == 0
        assert summary.errors == 0
        assert summary.finished_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_price_drop_liquidates(self, lending, oracle, active_loan):
        """Sweep liquidates a loan after a price drop"""
        oracle.set_price(active_loan.collateral_token_id, 7.0)

        summary = await lending.monitor.run_tick()

        assert summary.liquidated == 1
        assert summary.liquidated_loan_ids == [active_loan.loan_id]
        assert (await lending.loans.get_loan(active_loan.loan_id)).status == LoanStatus.LIQUIDATED
        record = await lending.liquidations.get_liquidation(active_loan.loan_id)
        assert record.usdc_recovered == Decimal("976.50")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ratio_below_one_liquidates_despite_rounding(self, lending, oracle, active_loan):
        """Sweep liquidates a loan whose stored factor rounds up to 1.00"""
        # 150 * 7.40 * 0.9 / 1000 = 0.999
        oracle.set_price(active_loan.collateral_token_id, 7.40)

        summary = await lending.monitor.run_tick()

        assert summary.liquidated == 1
        assert summary.at_risk == 0
        assert (await lending.loans.get_loan(active_loan.loan_id)).status == LoanStatus.LIQUIDATED
        history = await lending.loans.get_health_history(active_loan.loan_id)
        assert history[-1].health_factor == 1.0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_at_risk_is_reported_only(self, lending, oracle, active_loan):
        """At-risk loans are reported but not liquidated"""
        # 150 * 8 * 0.9 / 1000 = 1.08
        oracle.set_price(active_loan.collateral_token_id, 8.0)

        summary = await lending.monitor.run_tick()

        assert summary.at_risk == 1
        assert summary.at_risk_loan_ids == [active_loan.loan_id]
        assert summary.liquidated == 0
        loan = await lending.loans.get_loan(active_loan.loan_id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.health_factor == 1.08
        assert [loan.loan_id for loan in await lending.loans.get_loans_at_risk()] == [active_loan.loan_id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tick_records_health_snapshot(self, lending, oracle, active_loan):
        """Sweep appends a snapshot and refreshes the stored price"""
        oracle.set_price(active_loan.collateral_token_id, 9.0)

        await lending.monitor.run_tick()

        history = await lending.loans.get_health_history(active_loan.loan_id)
        assert [h.health_factor for h in history] == [1.35, 1.22]
        assert history[-1].collateral_price == 9.0
        assert history[-1].collateral_value == Decimal("1350.00")
        collateral = await lending.repository.get_collateral(active_loan.loan_id)
        assert collateral.current_price == 9.0
        assert (await lending.loans.get_loan(active_loan.loan_id)).health_factor == 1.22

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_loan_failure_does_not_abort_sweep(self, lending, oracle, usdc_pool, loan_request):
        """An unpriced loan does not stop the rest of the sweep"""
        healthy = await lending.loans.originate_loan(loan_request())
        unpriced = await lending.loans.originate_loan(loan_request(
            borrower_account="0.0.2002",
            collateral_token_id=OTHER_TOKEN
        ))
        oracle.set_price(healthy.collateral_token_id, 7.0)

        summary = await lending.monitor.run_tick()

        assert summary.errors == 1
        assert summary.failed_loan_ids == [unpriced.loan_id]
        assert summary.liquidated_loan_ids == [healthy.loan_id]
        assert (await lending.loans.get_loan(unpriced.loan_id)).status == LoanStatus.ACTIVE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_sale_counts_as_error(self, lending, oracle, treasury, active_loan):
        """Failed sale is counted as a sweep error"""
        oracle.set_price(active_loan.collateral_token_id, 7.0)
        treasury.fail_operations.add("sell_collateral")

        summary = await lending.monitor.run_tick()

        assert summary.errors == 1
        assert summary.liquidated == 0
        assert (await lending.loans.get_loan(active_loan.loan_id)).status == LoanStatus.ACTIVE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_slow_oracle_times_out(self, repository, lending, oracle, active_loan):
        """Oracle timeouts are counted as errors"""
        async def slow_price(token_id):
            await asyncio.sleep(1)
            return 10.0

        oracle.get_price = slow_price
        monitor = HealthMonitor(repository, oracle, lending.liquidations, interval_seconds=60, timeout=0.01)

        summary = await monitor.run_tick()

        assert summary.errors == 1
        assert summary.checked == 0


class TestHealthSnapshot:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_snapshot_leaves_closed_loan_untouched(self, lending, repository, active_loan):
        """Snapshots taken after a loan closes do not rewrite its price or factor"""
        await lending.loans.process_repayment(RepaymentRequest(
            loan_id=active_loan.loan_id,
            borrower_account=active_loan.borrower_account,
            payment_amount=Decimal("1100.00")
        ))

        still_active = await repository.record_health_check(
            active_loan.loan_id,
            health_factor=0.27,
            collateral_price=2.0,
            collateral_value_cents=30000,
            checked_at=utcnow()
        )

        assert still_active is False
        collateral = await repository.get_collateral(active_loan.loan_id)
        assert collateral.current_price == 10.0
        loan = await lending.loans.get_loan(active_loan.loan_id)
        assert loan.status == LoanStatus.REPAID
        assert loan.health_factor != 0.27


class TestMonitorLease:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tick_skipped_without_lease(self, repository, lending, active_loan):
        """Tick is skipped when another instance holds the lease"""
        redis = AsyncMock()
        redis.set.return_value = None
        monitor = HealthMonitor(
            repository, lending.oracle, lending.liquidations,
            interval_seconds=60, lease=MonitorLease(redis)
        )

        summary = await monitor.run_tick()

        assert summary.skipped is True
        assert summary.checked == 0
        redis.eval.assert_not_called()
        assert len(await lending.loans.get_health_history(active_loan.loan_id)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lease_acquired_and_released(self, repository, lending, active_loan):
        """Lease is taken with SET NX PX and released by token"""
        redis = AsyncMock()
        redis.set.return_value = True
        lease = MonitorLease(redis, key="test:lease", ttl_seconds=5)
        monitor = HealthMonitor(repository, lending.oracle, lending.liquidations, interval_seconds=60, lease=lease)

        summary = await monitor.run_tick()

        assert summary.checked == 1
        args, kwargs = redis.set.call_args
        assert args[0] == "test:lease"
        assert kwargs == {"nx": True, "px": 5000}
        token = args[1]
        redis.eval.assert_awaited_once_with(MonitorLease.RELEASE_SCRIPT, 1, "test:lease", token)


class TestMonitorLifecycle:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_start_and_stop(self, repository, lending, active_loan):
        """Monitor runs in the background until stopped"""
        monitor = HealthMonitor(repository, lending.oracle, lending.liquidations, interval_seconds=0.05)

        await monitor.start()
        assert monitor.is_monitoring
        for _ in range(100):
            if monitor.last_summary is not None:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert not monitor.is_monitoring
        status = monitor.status()
        assert status.is_monitoring is False
        assert status.last_summary.checked == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_without_start(self, repository, lending):
        """Stopping an idle monitor is harmless"""
        monitor = HealthMonitor(repository, lending.oracle, lending.liquidations, interval_seconds=60)

        await monitor.stop()

        assert monitor.status().is_monitoring is False
