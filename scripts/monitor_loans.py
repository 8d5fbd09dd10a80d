#!/usr/bin/env python3
"""Run one health monitor sweep over active loans (cron style).

Usage:
    python scripts/monitor_loans.py
    python scripts/monitor_loans.py --reconcile   # also list loans stuck in flight
"""
import argparse
import asyncio
import logging

from app.core.config import settings
from app.core.database import AsyncSessionLocal, async_engine, get_redis, close_redis
from app.modules.lending import build_lending_services

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def run(reconcile: bool) -> int:
    redis = await get_redis() if settings.MONITOR_LEASE_ENABLED else None
    lending = build_lending_services(settings, AsyncSessionLocal, redis=redis)
    try:
        summary = await lending.monitor.run_tick()
        if summary.skipped:
            print("Sweep skipped: another monitor instance holds the lease")
        else:
            print(f"Checked:    {summary.checked}")
            print(f"Liquidated: {summary.liquidated} {summary.liquidated_loan_ids}")
            print(f"At risk:    {summary.at_risk} {summary.at_risk_loan_ids}")
            print(f"Errors:     {summary.errors} {summary.failed_loan_ids}")

        if reconcile:
            issues = await lending.reconciliation.find_issues()
            print(f"\nReconciliation: {len(issues)} issue(s)")
            for issue in issues:
                print(
                    f"  {issue.loan_id} [{issue.loan_status.value}] {issue.issue}: {issue.detail} "
                    f"(collateral locked: {issue.collateral_locked}, paid: {issue.total_paid})"
                )
        return 1 if summary.errors else 0
    finally:
        await lending.close()
        await close_redis()
        await async_engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Run one loan health monitor sweep")
    parser.add_argument("--reconcile", action="store_true", help="List loans left in an intermediate state")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(args.reconcile)))


if __name__ == "__main__":
    main()
