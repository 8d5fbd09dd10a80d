"""
Wiring for the lending services.

Builds one repository, one treasury adapter and one price oracle and hands
them to every service, so the app, the scripts and the tests all assemble
the same graph.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings
from app.modules.lending.liquidation import LiquidationService
from app.modules.lending.monitor import HealthMonitor, MonitorLease
from app.modules.lending.pool import PoolService
from app.modules.lending.ports import (
    HttpPriceOracle, HttpTreasuryClient, PriceOracle, SimulatedTreasury, StaticPriceOracle, TransferPort
)
from app.modules.lending.reconciliation import ReconciliationService
from app.modules.lending.repository import LoanRepository
from app.modules.lending.services import LoanService

logger = logging.getLogger(__name__)


@dataclass
class LendingServices:
    repository: LoanRepository
    transfers: TransferPort
    oracle: PriceOracle
    loans: LoanService
    liquidations: LiquidationService
    monitor: HealthMonitor
    pools: PoolService
    reconciliation: ReconciliationService
    _closeables: List[Any] = field(default_factory=list)

    async def close(self) -> None:
        await self.monitor.stop()
        for client in self._closeables:
            await client.close()


def build_lending_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    redis: Optional[aioredis.Redis] = None,
    transfers: Optional[TransferPort] = None,
    oracle: Optional[PriceOracle] = None
) -> LendingServices:
    """
    Assemble the lending services from settings.

    ``transfers`` and ``oracle`` override the configured adapters. Without a
    treasury URL (or with USE_SIMULATED_TREASURY) the in-process treasury is
    used; without an oracle URL quotes must be set on the StaticPriceOracle.
    """
    closeables = []
    timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    if transfers is None:
        if settings.USE_SIMULATED_TREASURY or not settings.TREASURY_SERVICE_URL:
            transfers = SimulatedTreasury(treasury_account=settings.TREASURY_ACCOUNT)
            logger.info("Using simulated treasury")
        else:
            transfers = HttpTreasuryClient(settings.TREASURY_SERVICE_URL, settings.TREASURY_ACCOUNT, timeout=timeout)
            closeables.append(transfers)

    if oracle is None:
        if settings.PRICE_ORACLE_URL:
            oracle = HttpPriceOracle(settings.PRICE_ORACLE_URL, timeout=timeout)
            closeables.append(oracle)
        else:
            oracle = StaticPriceOracle()
            logger.warning("No PRICE_ORACLE_URL configured; using static price oracle")

    repository = LoanRepository(session_factory)
    loans = LoanService(repository, transfers, treasury_account=settings.TREASURY_ACCOUNT, timeout=timeout)
    liquidations = LiquidationService(
        repository,
        transfers,
        oracle,
        liquidator_account=settings.LIQUIDATOR_ACCOUNT,
        timeout=timeout
    )

    lease = None
    if redis is not None and settings.MONITOR_LEASE_ENABLED:
        lease = MonitorLease(redis, ttl_seconds=settings.MONITOR_LEASE_TTL_SECONDS)

    monitor = HealthMonitor(
        repository,
        oracle,
        liquidations,
        interval_seconds=settings.MONITOR_INTERVAL_SECONDS,
        timeout=timeout,
        lease=lease
    )

    return LendingServices(
        repository=repository,
        transfers=transfers,
        oracle=oracle,
        loans=loans,
        liquidations=liquidations,
        monitor=monitor,
        pools=PoolService(repository, transfers, treasury_account=settings.TREASURY_ACCOUNT, timeout=timeout),
        reconciliation=ReconciliationService(repository, transfers, loans, timeout=timeout),
        _closeables=closeables
    )
