from decimal import Decimal
from typing import Optional


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class InvalidInputError(LedgerServiceError):
    pass


class ForbiddenOperationError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, message: str, shortfall: Optional[Decimal] = None):
        super().__init__(message)
        self.shortfall = shortfall


class InsufficientStockError(LedgerServiceError):
    def __init__(self, requested: int, available: int):
        super().__init__(f"Insufficient stock: requested {requested}, available {available}")
        self.requested = requested
        self.available = available


class DuplicateRequestError(LedgerServiceError):
    pass


class AlreadyProcessedError(LedgerServiceError):
    pass


class NothingToRefundError(LedgerServiceError):
    def __init__(self, days_remaining: int):
        super().__init__(f"Nothing to refund. Days remaining: {days_remaining}")
        self.days_remaining = days_remaining
