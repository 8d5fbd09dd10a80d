"""
Pool Service - liquidity backing loan disbursements.

Pool counters are only changed through the repository's atomic updates;
this service adds the stablecoin movements for provider deposits and
withdrawals.
"""
import logging
from typing import List

from app.core.config import settings
from app.modules.lending.calculations import to_cents, from_cents
from app.modules.lending.exceptions import (
    PoolNotFoundError, InsufficientLiquidityError, TransferFailedError
)
from app.modules.lending.models import LendingPool
from app.modules.lending.ports import TransferPort, call_with_timeout
from app.modules.lending.repository import LoanRepository
from app.modules.lending.schemas import LiquidityRequest, PoolStatsResponse

logger = logging.getLogger(__name__)


def pool_stats(pool: LendingPool) -> PoolStatsResponse:
    return PoolStatsResponse(
        asset_address=pool.asset_address,
        total_liquidity=from_cents(pool.total_liquidity_cents),
        available_liquidity=from_cents(pool.available_liquidity_cents),
        total_borrowed=from_cents(pool.total_borrowed_cents),
        total_interest_earned=from_cents(pool.total_interest_earned_cents),
        utilization_rate=pool.utilization_rate,
        total_loans_originated=pool.total_loans_originated,
        total_loans_repaid=pool.total_loans_repaid,
        total_liquidations=pool.total_liquidations
    )


class PoolService:
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

    async def ensure_pools(self, asset_addresses: List[str]) -> List[LendingPool]:
        """Create an empty pool row for each asset that has none"""
        pools = []
        for asset_address in asset_addresses:
            pool = await self.repository.get_pool(asset_address)
            if pool is None:
                pool = await self.repository.create_pool(asset_address)
                logger.info(f"Created lending pool for {asset_address}")
            pools.append(pool)
        return pools

    async def get_pool_stats(self, asset_address: str) -> PoolStatsResponse:
        pool = await self.repository.get_pool(asset_address)
        if pool is None:
            raise PoolNotFoundError(asset_address)
        return pool_stats(pool)

    async def get_all_pool_stats(self) -> List[PoolStatsResponse]:
        return [pool_stats(pool) for pool in await self.repository.get_pools()]

    async def deposit(self, request: LiquidityRequest) -> PoolStatsResponse:
        """Move stablecoin from the provider into the treasury and credit the pool"""
        amount_cents = to_cents(request.amount)
        if await self.repository.get_pool(request.asset_address) is None:
            raise PoolNotFoundError(request.asset_address)

        result = await call_with_timeout(
            "deposit",
            self.transfers.transfer_stable(
                request.provider_account,
                self.treasury_account,
                amount_cents,
                f"liquidity deposit {request.asset_address}"
            ),
            self.timeout
        )
        if not result.ok:
            logger.error(f"Liquidity deposit from {request.provider_account} failed: {result.error}")
            raise TransferFailedError("deposit", result.error)

        await self.repository.deposit_liquidity(request.asset_address, amount_cents)
        logger.info(f"Deposited {request.amount} into {request.asset_address} pool ({result.tx_ref})")
        return await self.get_pool_stats(request.asset_address)

    async def withdraw(self, request: LiquidityRequest) -> PoolStatsResponse:
        """
        Take liquidity out of the pool and pay it to the provider. The pool is
        debited first so concurrent originations cannot spend the same funds;
        the debit is reversed if the transfer fails.
        """
        amount_cents = to_cents(request.amount)
        pool = await self.repository.get_pool(request.asset_address)
        if pool is None:
            raise PoolNotFoundError(request.asset_address)

        if not await self.repository.withdraw_liquidity(request.asset_address, amount_cents):
            pool = await self.repository.get_pool(request.asset_address)
            raise InsufficientLiquidityError(request.asset_address, pool.available_liquidity_cents, amount_cents)

        result = await call_with_timeout(
            "withdraw",
            self.transfers.transfer_stable(
                self.treasury_account,
                request.provider_account,
                amount_cents,
                f"liquidity withdrawal {request.asset_address}"
            ),
            self.timeout
        )
        if not result.ok:
            logger.error(f"Liquidity withdrawal to {request.provider_account} failed: {result.error}")
            await self.repository.deposit_liquidity(request.asset_address, amount_cents)
            raise TransferFailedError("withdraw", result.error)

        logger.info(f"Withdrew {request.amount} from {request.asset_address} pool ({result.tx_ref})")
        return await self.get_pool_stats(request.asset_address)
