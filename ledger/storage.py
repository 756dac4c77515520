import copy
import itertools
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from .models import Role

ADMIN_USER_ID = UUID("00000000-0000-0000-0000-0000000000a1")
ADMIN_REFERRAL_CODE = "ADM001"

_TABLES = (
    "users", "products", "stock", "transactions", "withdrawals", "orders",
    "settings", "order_code_index", "referral_index",
)


class InMemoryStorage:
    """
    Relational-style store held in dicts of row dicts.

    Ledger rows live in ``transactions`` keyed by transaction id, one row per
    entry, with ``user_id`` and a monotonic ``seq`` for newest-first ordering.
    """

    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.products: dict[UUID, dict] = {}
        self.stock: dict[UUID, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.withdrawals: dict[UUID, dict] = {}
        self.orders: dict[UUID, dict] = {}
        self.settings: dict[str, str] = {}
        self.order_code_index: dict[str, str] = {}
        self.referral_index: dict[str, UUID] = {}
        self._seq = itertools.count(1)
        self._lock = threading.RLock()
        self._depth = 0
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.users[ADMIN_USER_ID] = {
            "id": ADMIN_USER_ID, "username": "admin", "email": "admin@example.com",
            "phone": None, "balance": Decimal("0.00"), "role": Role.ADMIN,
            "discount_percentage": 0, "referral_code": ADMIN_REFERRAL_CODE,
            "referred_by_user_id": None, "premium_expires_at": None,
            "is_banned": False, "is_approved": True,
            "created_at": datetime.now(timezone.utc),
        }
        self.referral_index[ADMIN_REFERRAL_CODE] = ADMIN_USER_ID

    def next_seq(self) -> int:
        return next(self._seq)

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        """
        Unit of work: serialize writers and roll every table back if the
        block raises, so no partial commit survives a failed operation.
        """
        with self._lock:
            # only the outermost block snapshots; nested blocks roll back with it
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._depth = 1
            try:
                yield self
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise
            finally:
                self._depth = 0

    # --- lookups -------------------------------------------------------------

    def user_transactions(self, user_id: UUID) -> list[dict]:
        rows = [t for t in self.transactions.values() if t["user_id"] == user_id]
        rows.sort(key=lambda t: t["seq"], reverse=True)
        return rows

    def user_by_referral_code(self, code: str) -> Optional[dict]:
        user_id = self.referral_index.get(code)
        return self.users.get(user_id) if user_id else None

    def product_stock(self, product_id: UUID) -> list[dict]:
        rows = [s for s in self.stock.values() if s["product_id"] == product_id]
        rows.sort(key=lambda s: s["seq"])
        return rows
