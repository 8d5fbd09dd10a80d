#!/usr/bin/env python3
"""Check a single loan and liquidate it if its health factor is below 1.0.

Usage:
    python scripts/liquidate_loan.py <loan_id>
"""
import argparse
import asyncio
import logging

from app.core.config import settings
from app.core.database import AsyncSessionLocal, async_engine
from app.modules.lending import build_lending_services
from app.modules.lending.calculations import health_factor
from app.modules.lending.exceptions import LendingError, PriceUnavailableError
from app.modules.lending.ports import fetch_price
from app.modules.lending.schemas import LoanResponse

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def run(loan_id: str) -> int:
    lending = build_lending_services(settings, AsyncSessionLocal)
    try:
        loan = await lending.loans.get_loan(loan_id)
        if loan is None:
            print(f"Loan not found: {loan_id}")
            return 1

        collateral = await lending.repository.get_collateral(loan_id)
        print(LoanResponse.model_validate(loan).model_dump_json(indent=2))

        if collateral is not None:
            try:
                price = await fetch_price(lending.oracle, collateral.token_id, settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
                current = health_factor(collateral.amount, price, loan.loan_amount_cents, loan.liquidation_threshold)
                print(f"Price:       ${price}")
                print(f"Health:      {current} (current)")
            except PriceUnavailableError as e:
                print(f"Price:       unavailable ({e.reason})")

        result = await lending.liquidations.check_and_liquidate(loan_id)
        print(f"\nOutcome:     {result.outcome.value}")
        if result.reason:
            print(f"Reason:      {result.reason}")
        if result.success:
            print(f"Value:       {result.collateral_value}")
            print(f"Recovered:   {result.usdc_recovered}")
            print(f"Penalty:     {result.liquidation_penalty}")
            print(f"Reward:      {result.liquidator_reward}")
            print(f"Tx:          {result.transaction_ref}")
        return 0 if result.outcome.value != "failed" else 1
    except LendingError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await lending.close()
        await async_engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Check and liquidate a single loan")
    parser.add_argument("loan_id", help="Loan identifier")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(args.loan_id)))


if __name__ == "__main__":
    main()
