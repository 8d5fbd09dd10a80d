# Lending module
from app.modules.lending.models import (
    Loan, CollateralLock, LoanPayment, HealthCheck, Liquidation, LendingPool,
    LoanStatus, PaymentType
)
from app.modules.lending.services import LoanService
from app.modules.lending.liquidation import LiquidationService
from app.modules.lending.monitor import HealthMonitor, MonitorLease
from app.modules.lending.pool import PoolService
from app.modules.lending.reconciliation import ReconciliationService
from app.modules.lending.container import LendingServices, build_lending_services

__all__ = [
    "Loan", "CollateralLock", "LoanPayment", "HealthCheck", "Liquidation", "LendingPool",
    "LoanStatus", "PaymentType",
    "LoanService", "LiquidationService", "HealthMonitor", "MonitorLease",
    "PoolService", "ReconciliationService",
    "LendingServices", "build_lending_services"
]
