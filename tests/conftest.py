"""
Test configuration and fixtures for the grove lending backend tests.
"""
import pytest
from typing import AsyncGenerator
from decimal import Decimal

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from httpx import AsyncClient, ASGITransport

from app.core.database import Base
from app.core.config import settings
from app.modules.lending import build_lending_services
from app.modules.lending.calculations import to_cents
from app.modules.lending.ports import SimulatedTreasury, StaticPriceOracle
from app.modules.lending.schemas import LoanOriginationRequest
from main import app


GROVE_TOKEN = "0.0.grove-1"
BORROWER = "0.0.1001"


# ============================================================
# Database Fixtures
# ============================================================

@pytest.fixture
async def test_engine(tmp_path):
    """Create a file backed SQLite engine per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'lending.db'}",
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


# ============================================================
# Lending Fixtures
# ============================================================

@pytest.fixture
def treasury():
    return SimulatedTreasury(treasury_account=settings.TREASURY_ACCOUNT)


@pytest.fixture
def oracle():
    return StaticPriceOracle({GROVE_TOKEN: 10.0})


@pytest.fixture
def lending(session_factory, treasury, oracle):
    """Lending services wired to the test database and in-process adapters"""
    return build_lending_services(settings, session_factory, transfers=treasury, oracle=oracle)


@pytest.fixture
def repository(lending):
    return lending.repository


@pytest.fixture
async def usdc_pool(lending):
    """USDC pool seeded with 10,000 of liquidity"""
    await lending.pools.ensure_pools(["USDC"])
    await lending.repository.deposit_liquidity("USDC", to_cents(Decimal("10000.00")))
    return await lending.repository.get_pool("USDC")


def origination_request(**overrides) -> LoanOriginationRequest:
    """1,000 USDC against 150 grove tokens at $10"""
    data = {
        "borrower_account": BORROWER,
        "asset_address": "USDC",
        "loan_amount": Decimal("1000.00"),
        "collateral_token_id": GROVE_TOKEN,
        "collateral_amount": 150.0,
        "collateral_price": 10.0
    }
    data.update(overrides)
    return LoanOriginationRequest(**data)


@pytest.fixture
def loan_request():
    """Factory for origination requests"""
    return origination_request


@pytest.fixture
async def active_loan(lending, usdc_pool):
    return await lending.loans.originate_loan(origination_request())


# ============================================================
# API Fixtures
# ============================================================

@pytest.fixture
async def client(lending) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with the test lending services attached"""
    app.state.lending = lending

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app.state.lending
