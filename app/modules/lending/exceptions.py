from typing import Optional


class LendingError(Exception):
    """Base class for lending errors"""


# Validation

class LoanValidationError(LendingError, ValueError):
    """Request rejected before any side effect"""


class InsufficientCollateralError(LoanValidationError):
    def __init__(self, required_cents: int, provided_cents: int):
        self.required_cents = required_cents
        self.provided_cents = provided_cents
        super().__init__(
            f"Insufficient collateral. Required: ${required_cents / 100:.2f}, "
            f"Provided: ${provided_cents / 100:.2f}"
        )


class InsufficientLiquidityError(LoanValidationError):
    def __init__(self, asset_address: str, available_cents: int, requested_cents: int):
        self.asset_address = asset_address
        self.available_cents = available_cents
        self.requested_cents = requested_cents
        super().__init__(
            f"Pool liquidity exhausted for {asset_address}. "
            f"Available: {available_cents / 100:.2f}, Requested: {requested_cents / 100:.2f}"
        )


class BorrowerMismatchError(LoanValidationError):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Borrower account mismatch for loan {loan_id}")


# Not found

class LendingNotFoundError(LendingError, LookupError):
    """Referenced record does not exist"""


class LoanNotFoundError(LendingNotFoundError):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan not found: {loan_id}")


class CollateralNotFoundError(LendingNotFoundError):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Collateral record not found for loan {loan_id}")


class PoolNotFoundError(LendingNotFoundError):
    def __init__(self, asset_address: str):
        self.asset_address = asset_address
        super().__init__(f"Lending pool not found: {asset_address}")


# State conflict

class LoanStateConflictError(LendingError):
    """Operation attempted on a loan that is not in the required status"""

    def __init__(self, loan_id: str, status: str, message: Optional[str] = None):
        self.loan_id = loan_id
        self.status = status
        super().__init__(message or f"Loan {loan_id} is not active. Status: {status}")


class LoanAlreadyTerminalError(LoanStateConflictError):
    """The loan was already repaid, liquidated or failed"""

    def __init__(self, loan_id: str, status: str):
        super().__init__(loan_id, status, f"Loan {loan_id} is already {status}")


# External collaborators

class TransferFailedError(LendingError):
    """
    A Transfer Port call failed or timed out.

    ``collateral_locked`` is True when an earlier step of the same operation
    already moved collateral into custody and it is still there; the loan
    needs reconciliation.
    """

    def __init__(
        self,
        step: str,
        reason: str,
        loan_id: Optional[str] = None,
        collateral_locked: bool = False
    ):
        self.step = step
        self.reason = reason
        self.loan_id = loan_id
        self.collateral_locked = collateral_locked
        super().__init__(f"Transfer failed at {step}: {reason}")


class PriceUnavailableError(LendingError):
    def __init__(self, token_id: str, reason: str):
        self.token_id = token_id
        self.reason = reason
        super().__init__(f"Price unavailable for {token_id}: {reason}")
