"""
Credential Marketplace Ledger

This package provides:
- Per-user ledger rows paired with balance updates in one unit of work
- Stock pool with an allocator that splits quantity records into sold units
- First-recharge referral commissions driven by the rule engine
- Time-bound premium roles with lazy demotion
- Support tickets, prorated refunds and provider-initiated refunds
- Withdrawal holds with a configurable fee
"""

from .models import (
    Direction,
    Role,
    TransactionKind,
    TransactionStatus,
    User,
    Product,
    StockRecord,
    Transaction,
    WithdrawalRequest,
)
from .errors import LedgerServiceError
from .events import EventBus
from .marketplace import Marketplace
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "Direction",
    "Role",
    "TransactionKind",
    "TransactionStatus",
    "User",
    "Product",
    "StockRecord",
    "Transaction",
    "WithdrawalRequest",
    "LedgerServiceError",
    "EventBus",
    "Marketplace",
    "LedgerService",
    "InMemoryStorage",
]
