"""
Tests for treasury and price oracle adapters
"""
import asyncio
import json
import pytest

import httpx

from app.modules.lending.exceptions import PriceUnavailableError
from app.modules.lending.ports import (
    HttpPriceOracle, HttpTreasuryClient, SimulatedTreasury, StaticPriceOracle, TransferPort, PriceOracle,
    call_with_timeout, fetch_price
)


def mock_client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


class TestCallWithTimeout:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_becomes_failure(self):
        """Timeouts become failed transfer results"""
        async def slow():
            await asyncio.sleep(1)

        result = await call_with_timeout("lock_collateral", slow(), timeout=0.01)

        assert result.ok is False
        assert "timeout" in result.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_becomes_failure(self):
        """Transport errors become failed transfer results"""
        async def broken():
            raise httpx.ConnectError("connection refused")

        result = await call_with_timeout("disburse", broken(), timeout=1)

        assert result.ok is False
        assert "connection refused" in result.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_price_rejects_negative_quote(self):
        """Negative quotes are rejected"""
        oracle = StaticPriceOracle({"t": -1.0})

        with pytest.raises(PriceUnavailableError):
            await fetch_price(oracle, "t", timeout=1)


class TestAdapters:

    @pytest.mark.unit
    def test_adapters_satisfy_ports(self):
        """Adapters implement the port protocols"""
        assert isinstance(SimulatedTreasury(), TransferPort)
        assert isinstance(StaticPriceOracle(), PriceOracle)
        assert isinstance(HttpTreasuryClient("http://treasury", "0.0.treasury"), TransferPort)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_simulated_treasury_failures(self):
        """Simulated treasury fails the configured operations"""
        treasury = SimulatedTreasury(fail_operations={"unlock_collateral"}, failure_reason="custody offline")

        locked = await treasury.lock_collateral("0.0.1", "0.0.grove-1", 10)
        unlocked = await treasury.unlock_collateral("0.0.1", "0.0.grove-1", 10)

        assert locked.ok and locked.tx_ref.startswith("0x")
        assert not unlocked.ok and unlocked.error == "custody offline"
        assert [c.operation for c in treasury.calls] == ["lock_collateral", "unlock_collateral"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_treasury_success(self):
        """Treasury client posts the transfer and reads the reference"""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"success": True, "transactionId": "0.0.5@1700000000.1"})

        client = HttpTreasuryClient("http://treasury", "0.0.treasury")
        client._client = mock_client(handler, "http://treasury")

        result = await client.transfer_stable("0.0.treasury", "0.0.1001", 100000, "loan disbursement")

        assert result.ok
        assert result.tx_ref == "0.0.5@1700000000.1"
        assert requests[0].url.path == "/stable/transfer"
        assert json.loads(requests[0].content)["amountCents"] == 100000
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_treasury_rejection(self):
        """Treasury rejection is returned as a failure"""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"success": False, "error": "INSUFFICIENT_TOKEN_BALANCE"})

        client = HttpTreasuryClient("http://treasury", "0.0.treasury")
        client._client = mock_client(handler, "http://treasury")

        result = await client.lock_collateral("0.0.1001", "0.0.grove-1", 150)

        assert not result.ok
        assert result.error == "INSUFFICIENT_TOKEN_BALANCE"
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_treasury_server_error(self):
        """Treasury 5xx is returned as a failure"""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        client = HttpTreasuryClient("http://treasury", "0.0.treasury")
        client._client = mock_client(handler, "http://treasury")

        result = await client.sell_collateral("0.0.grove-1", 150, 7.0, "liquidation")

        assert not result.ok
        assert "503" in result.error
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_price_oracle(self):
        """Oracle client reads the quote and surfaces missing tokens"""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/prices/0.0.grove-1":
                return httpx.Response(200, json={"price": 12.5})
            return httpx.Response(404)

        oracle = HttpPriceOracle("http://oracle")
        oracle._client = mock_client(handler, "http://oracle")

        assert await fetch_price(oracle, "0.0.grove-1", timeout=1) == 12.5
        with pytest.raises(PriceUnavailableError):
            await fetch_price(oracle, "0.0.unknown", timeout=1)
        await oracle.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_price_oracle_malformed_body(self):
        """A quote without a numeric price is reported as unavailable"""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/prices/0.0.grove-1":
                return httpx.Response(200, json={"quote": 12.5})
            return httpx.Response(200, json={"price": "n/a"})

        oracle = HttpPriceOracle("http://oracle")
        oracle._client = mock_client(handler, "http://oracle")

        with pytest.raises(PriceUnavailableError) as exc_info:
            await fetch_price(oracle, "0.0.grove-1", timeout=1)
        assert "malformed quote" in str(exc_info.value)
        with pytest.raises(PriceUnavailableError):
            await fetch_price(oracle, "0.0.grove-2", timeout=1)
        await oracle.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_treasury_unexpected_body(self):
        """A JSON body that is not an object becomes a failed result"""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["accepted"])

        client = HttpTreasuryClient("http://treasury", "0.0.treasury")
        client._client = mock_client(handler, "http://treasury")

        result = await client.lock_collateral("0.0.1001", "0.0.grove-1", 150)

        assert not result.ok
        assert "unexpected treasury response" in result.error
        await client.close()
