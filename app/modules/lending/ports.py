"""
Contracts for the external collaborators the lending core depends on, plus
the adapters used to reach them.

The treasury executes custody movements (collateral lock/unlock, stablecoin
transfers, collateral sales); the price oracle quotes collateral tokens in
USD. Neither guarantees at-most-once execution, so callers own idempotency.
"""
import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Set, runtime_checkable

import httpx

from app.modules.lending.exceptions import PriceUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferResult:
    ok: bool
    tx_ref: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, tx_ref: str) -> "TransferResult":
        return cls(ok=True, tx_ref=tx_ref)

    @classmethod
    def failure(cls, error: str) -> "TransferResult":
        return cls(ok=False, error=error)


@runtime_checkable
class TransferPort(Protocol):
    async def lock_collateral(self, borrower: str, token_id: str, amount: float) -> TransferResult:
        ...

    async def unlock_collateral(self, borrower: str, token_id: str, amount: float) -> TransferResult:
        ...

    async def transfer_stable(self, from_account: str, to_account: str, amount_cents: int, memo: str) -> TransferResult:
        ...

    async def sell_collateral(self, token_id: str, amount: float, price: float, memo: str) -> TransferResult:
        """Dispose of seized collateral at the quoted price (execution venue hook)"""
        ...


@runtime_checkable
class PriceOracle(Protocol):
    async def get_price(self, token_id: str) -> float:
        ...


async def call_with_timeout(step: str, call: Awaitable[TransferResult], timeout: float) -> TransferResult:
    """
    Await a Transfer Port call, turning timeouts and transport errors into a
    failed TransferResult so the caller can abort at that step.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"Transfer step {step} timed out after {timeout}s")
        return TransferResult.failure(f"timeout after {timeout}s")
    except httpx.HTTPError as e:
        logger.error(f"Transfer step {step} failed: {str(e)}")
        return TransferResult.failure(str(e))


async def fetch_price(oracle: PriceOracle, token_id: str, timeout: float) -> float:
    """Get a fresh quote, raising PriceUnavailableError on timeout or a bad quote"""
    try:
        price = await asyncio.wait_for(oracle.get_price(token_id), timeout=timeout)
    except asyncio.TimeoutError:
        raise PriceUnavailableError(token_id, f"timeout after {timeout}s")
    except httpx.HTTPError as e:
        raise PriceUnavailableError(token_id, str(e))
    except (KeyError, TypeError, ValueError) as e:
        raise PriceUnavailableError(token_id, f"malformed quote: {e!r}")

    if price is None or price < 0:
        raise PriceUnavailableError(token_id, f"invalid quote {price!r}")
    return float(price)


def _new_tx_ref() -> str:
    return f"0x{int(time.time() * 1000):x}{secrets.token_hex(4)}"


# ============================================================
# In-process adapters
# ============================================================

@dataclass
class TransferCall:
    operation: str
    args: Dict[str, Any]
    result: TransferResult


@dataclass
class SimulatedTreasury:
    """
    Treasury that settles every movement immediately in-process.

    Used in development and tests. Operations named in ``fail_operations``
    return a failure instead of settling.
    """
    treasury_account: str = "0.0.treasury"
    fail_operations: Set[str] = field(default_factory=set)
    failure_reason: str = "simulated failure"
    calls: List[TransferCall] = field(default_factory=list)

    def _settle(self, operation: str, **kwargs) -> TransferResult:
        if operation in self.fail_operations:
            result = TransferResult.failure(self.failure_reason)
        else:
            result = TransferResult.success(_new_tx_ref())
        self.calls.append(TransferCall(operation=operation, args=kwargs, result=result))
        logger.debug(f"Simulated {operation}: ok={result.ok} ref={result.tx_ref}")
        return result

    def calls_for(self, operation: str) -> List[TransferCall]:
        return [c for c in self.calls if c.operation == operation]

    async def lock_collateral(self, borrower: str, token_id: str, amount: float) -> TransferResult:
        return self._settle("lock_collateral", borrower=borrower, token_id=token_id, amount=amount)

    async def unlock_collateral(self, borrower: str, token_id: str, amount: float) -> TransferResult:
        return self._settle("unlock_collateral", borrower=borrower, token_id=token_id, amount=amount)

    async def transfer_stable(self, from_account: str, to_account: str, amount_cents: int, memo: str) -> TransferResult:
        return self._settle(
            "transfer_stable",
            from_account=from_account,
            to_account=to_account,
            amount_cents=amount_cents,
            memo=memo
        )

    async def sell_collateral(self, token_id: str, amount: float, price: float, memo: str) -> TransferResult:
        return self._settle("sell_collateral", token_id=token_id, amount=amount, price=price, memo=memo)


class StaticPriceOracle:
    """Oracle serving quotes set in-process"""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self._prices: Dict[str, float] = dict(prices or {})

    def set_price(self, token_id: str, price: float) -> None:
        self._prices[token_id] = price

    async def get_price(self, token_id: str) -> float:
        if token_id not in self._prices:
            raise PriceUnavailableError(token_id, "no quote available")
        return self._prices[token_id]


# ============================================================
# HTTP adapters
# ============================================================

class HttpTreasuryClient:
    """
    Treasury custody service reached over HTTP.

    Every endpoint answers ``{"success": bool, "transactionId": str, "error": str}``.
    """

    def __init__(self, base_url: str, treasury_account: str, timeout: float = 30.0):
        self.treasury_account = treasury_account
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _post(self, path: str, payload: Dict[str, Any]) -> TransferResult:
        response = await self._client.post(path, json=payload)
        if response.status_code >= 500:
            return TransferResult.failure(f"treasury service error {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            return TransferResult.failure(f"unreadable treasury response ({response.status_code})")
        if not isinstance(body, dict):
            return TransferResult.failure(f"unexpected treasury response ({response.status_code})")
        if body.get("success"):
            return TransferResult.success(body.get("transactionId"))
        return TransferResult.failure(body.get("error") or f"rejected with status {response.status_code}")

    async def lock_collateral(self, borrower: str, token_id: str, amount: float) -> TransferResult:
        return await self._post("/collateral/lock", {
            "borrowerAccount": borrower, "tokenId": token_id, "amount": amount
        })

    async def unlock_collateral(self, borrower: str, token_id: str, amount: float) -> TransferResult:
        return await self._post("/collateral/unlock", {
            "borrowerAccount": borrower, "tokenId": token_id, "amount": amount
        })

    async def transfer_stable(self, from_account: str, to_account: str, amount_cents: int, memo: str) -> TransferResult:
        return await self._post("/stable/transfer", {
            "from": from_account, "to": to_account, "amountCents": amount_cents, "memo": memo
        })

    async def sell_collateral(self, token_id: str, amount: float, price: float, memo: str) -> TransferResult:
        return await self._post("/collateral/sell", {
            "tokenId": token_id, "amount": amount, "price": price, "memo": memo
        })

    async def close(self) -> None:
        await self._client.aclose()


class HttpPriceOracle:
    """Price feed answering ``GET /prices/{token_id}`` with ``{"price": float}``"""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def get_price(self, token_id: str) -> float:
        response = await self._client.get(f"/prices/{token_id}")
        response.raise_for_status()
        return float(response.json()["price"])

    async def close(self) -> None:
        await self._client.aclose()
