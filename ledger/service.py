import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import SettingsStore
from .constants import new_order_code, order_code_from_id, to_money, utcnow
from .errors import (
    AlreadyProcessedError,
    InsufficientBalanceError,
    InvalidInputError,
    NotFoundError,
)
from .events import (
    EventBus,
    TRANSACTION_APPROVED,
    TRANSACTIONS_UPDATED,
    USERS_UPDATED,
)
from .models import (
    Direction,
    LedgerHistoryResponse,
    PURCHASE_KINDS,
    RechargeMethod,
    RepairReport,
    Transaction,
    TransactionKind,
    TransactionStatus,
    User,
)
from .referrals import CommissionEngine
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

LEGACY_STATUSES = {
    "Pendiente": TransactionStatus.PENDING,
    "Completada": TransactionStatus.COMPLETED,
    "Rechazada": TransactionStatus.REJECTED,
    "Cancelada": TransactionStatus.CANCELLED,
    "Soporte": TransactionStatus.SUPPORT,
    "Esperando aprobación": TransactionStatus.AWAITING_APPROVAL,
    "Devuelto": TransactionStatus.REFUNDED,
}
LEGACY_PROVIDER = "LEGACY"
LEGACY_DETAIL_KEYS = {
    "productName": "product_name",
    "productId": "product_id",
    "providerName": "provider_name",
}


def _parse_uuid(value) -> Optional[UUID]:
    if value is None:
        return None
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        return None


class LedgerService:
    """
    Per-user ledger rows and balances.

    Every balance change goes through ``post`` (ledger row + balance in one
    unit of work); ``adjust_balance`` exists only for the withdrawal hold.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        events: Optional[EventBus] = None,
        settings_store: Optional[SettingsStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.events = events or EventBus()
        self.settings_store = settings_store or SettingsStore(self.storage)
        self.clock = clock or utcnow
        self.commissions = CommissionEngine(self)

    # --- users and balances ---------------------------------------------------

    def get_user_row(self, user_id: UUID) -> dict:
        user = self.storage.users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_user(self, user_id: UUID) -> User:
        return User(**self.get_user_row(user_id))

    def get_balance(self, user_id: UUID) -> Decimal:
        return self.get_user_row(user_id)["balance"]

    def require_funds(self, user_id: UUID, amount: Decimal) -> None:
        balance = self.get_balance(user_id)
        if balance < amount:
            shortfall = to_money(amount - balance)
            raise InsufficientBalanceError(
                f"Insufficient balance: {balance} available, {to_money(amount)} required",
                shortfall=shortfall,
            )

    def set_balance(self, user_id: UUID, new_balance: Decimal) -> Decimal:
        user = self.get_user_row(user_id)
        value = to_money(new_balance)
        if value < 0:
            raise InsufficientBalanceError(
                f"Balance of user {user_id} cannot go negative",
                shortfall=to_money(-value),
            )
        user["balance"] = value
        return value

    def adjust_balance(self, user_id: UUID, delta: Decimal) -> Decimal:
        with self.storage.atomic():
            return self.set_balance(user_id, self.get_balance(user_id) + Decimal(str(delta)))

    # --- ledger rows ----------------------------------------------------------

    def _new_order_code(self) -> str:
        code = new_order_code()
        while code in self.storage.order_code_index:
            code = new_order_code()
        return code

    def append(
        self,
        user_id: UUID,
        *,
        direction: Direction,
        kind: TransactionKind,
        amount: Decimal,
        description: str,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        details: Optional[dict] = None,
        provider_id: Optional[UUID] = None,
        counterparty_id: Optional[UUID] = None,
        related_transaction_id: Optional[str] = None,
        stock_ids: Optional[list[UUID]] = None,
    ) -> dict:
        """Insert a row at the head of the user's ledger. Balance is untouched."""
        self.get_user_row(user_id)
        amount = to_money(amount)
        if amount < 0:
            raise InvalidInputError("Transaction amount cannot be negative")

        tx_id = uuid4().hex
        order_code = self._new_order_code()
        row = {
            "id": tx_id,
            "order_code": order_code,
            "user_id": user_id,
            "seq": self.storage.next_seq(),
            "direction": direction,
            "kind": kind,
            "amount": amount,
            "status": status,
            "description": description,
            "details": dict(details or {}),
            "provider_id": provider_id,
            "counterparty_id": counterparty_id,
            "related_transaction_id": related_transaction_id,
            "stock_ids": list(stock_ids or []),
            "created_at": self.clock(),
        }
        self.storage.transactions[tx_id] = row
        self.storage.order_code_index[order_code] = tx_id
        return row

    def post(self, user_id: UUID, *, direction: Direction, amount: Decimal, **fields) -> Transaction:
        """Append a completed row and move the balance by the same amount."""
        with self.storage.atomic():
            row = self.append(user_id, direction=direction, amount=amount, **fields)
            delta = row["amount"] if direction == Direction.CREDIT else -row["amount"]
            self.set_balance(user_id, self.get_balance(user_id) + delta)
        return Transaction(**row)

    def _ensure_order_code(self, row: dict) -> dict:
        if row.get("order_code") and str(row["order_code"]).strip():
            return row
        code = order_code_from_id(row.get("id"))
        row["order_code"] = code
        self.storage.order_code_index.setdefault(code, row["id"])
        return row

    def _matches(self, row: dict, ref: str) -> bool:
        row = self._ensure_order_code(row)
        tx_id = str(row.get("id") or "").strip()
        code = str(row.get("order_code") or "").strip()
        return (bool(tx_id) and tx_id == ref) or (bool(code) and code == ref)

    def find_row(self, user_id: UUID, ref) -> Optional[dict]:
        incoming = str(ref).strip()
        for row in self.storage.user_transactions(user_id):
            if self._matches(row, incoming):
                return row
        return None

    def find_transaction(self, user_id: UUID, ref) -> Transaction:
        self.get_user_row(user_id)
        row = self.find_row(user_id, ref)
        if row is None:
            raise NotFoundError(f"Transaction {ref} not found")
        return Transaction(**row)

    def locate(self, ref, status: Optional[TransactionStatus] = None) -> Optional[dict]:
        """Find a row by id or order code across every user's ledger."""
        incoming = str(ref).strip()
        tx_id = self.storage.order_code_index.get(incoming, incoming)
        row = self.storage.transactions.get(tx_id)
        if row is None:
            row = next((r for r in self.storage.transactions.values() if self._matches(r, incoming)), None)
        if row is None or (status is not None and row["status"] != status):
            return None
        return row

    def update_transaction(
        self,
        tx_id: str,
        status: Optional[TransactionStatus] = None,
        details_patch: Optional[dict] = None,
    ) -> Transaction:
        row = self.storage.transactions.get(tx_id)
        if row is None:
            raise NotFoundError(f"Transaction {tx_id} not found")
        if status is not None:
            row["status"] = status
        for key, value in (details_patch or {}).items():
            if value is None:
                row["details"].pop(key, None)
            else:
                row["details"][key] = value
        return Transaction(**row)

    def history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        user = self.get_user_row(user_id)
        rows = self.storage.user_transactions(user_id)
        entries = [Transaction(**self._ensure_order_code(r)) for r in rows[offset:offset + limit]]
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=len(rows),
            current_balance=user["balance"],
        )

    # --- recharges --------------------------------------------------------------

    def recharge_minimum(self, method: RechargeMethod) -> Decimal:
        if method == RechargeMethod.BINANCE:
            return self.settings_store.binance_min
        return self.settings_store.yape_min

    def request_recharge(self, user_id: UUID, amount: Decimal, method: RechargeMethod = RechargeMethod.YAPE) -> Transaction:
        amount = to_money(amount)
        minimum = self.recharge_minimum(method)
        if amount <= 0 or amount < minimum:
            raise InvalidInputError(f"Minimum recharge for {method.value} is {to_money(minimum)}")
        with self.storage.atomic():
            row = self.append(
                user_id,
                direction=Direction.CREDIT,
                kind=TransactionKind.RECHARGE,
                amount=amount,
                status=TransactionStatus.PENDING,
                description=f"Balance recharge via {method.value}",
                details={"method": method.value},
            )
        self.events.emit(TRANSACTIONS_UPDATED)
        return Transaction(**row)

    def _pending_recharge(self, user_id: UUID, ref) -> dict:
        self.get_user_row(user_id)
        row = self.find_row(user_id, ref)
        if row is None or row["kind"] != TransactionKind.RECHARGE:
            raise NotFoundError(f"Recharge {ref} not found")
        if row["status"] != TransactionStatus.PENDING:
            raise AlreadyProcessedError(f"Recharge {ref} is already {row['status'].value}")
        return row

    def approve_recharge(self, user_id: UUID, ref) -> Transaction:
        with self.storage.atomic():
            row = self._pending_recharge(user_id, ref)
            user = self.get_user_row(user_id)
            first_recharge = self.commissions.is_first_recharge(user_id, exclude_id=row["id"])

            row["status"] = TransactionStatus.COMPLETED
            self.set_balance(user_id, user["balance"] + row["amount"])

            commission = None
            if first_recharge:
                commission = self.commissions.apply_first_recharge_commission(user, row["amount"])

        logger.info("Recharge %s of %s approved for user %s", row["id"], row["amount"], user_id)
        if commission is not None:
            self.events.emit(
                TRANSACTION_APPROVED,
                {"amount": str(commission.amount), "message": f"You earned ${commission.amount} from {user['username']}'s first recharge"},
                user_id=commission.user_id,
            )
        self.events.emit(
            TRANSACTION_APPROVED,
            {"transaction_id": row["id"], "amount": str(row["amount"]), "message": f"Your recharge of ${row['amount']} was approved"},
            user_id=user_id,
        )
        self.events.emit_all(TRANSACTIONS_UPDATED, USERS_UPDATED)
        return Transaction(**row)

    def reject_recharge(self, user_id: UUID, ref) -> Transaction:
        with self.storage.atomic():
            row = self._pending_recharge(user_id, ref)
            row["status"] = TransactionStatus.REJECTED
        self.events.emit(TRANSACTIONS_UPDATED)
        return Transaction(**row)

    def cancel_recharge(self, user_id: UUID, ref) -> Transaction:
        with self.storage.atomic():
            row = self._pending_recharge(user_id, ref)
            row["status"] = TransactionStatus.CANCELLED
        self.events.emit(TRANSACTIONS_UPDATED)
        return Transaction(**row)

    def pending_recharges(self) -> list[Transaction]:
        rows = [
            r for r in self.storage.transactions.values()
            if r["kind"] == TransactionKind.RECHARGE and r["status"] == TransactionStatus.PENDING
        ]
        rows.sort(key=lambda r: r["seq"], reverse=True)
        return [Transaction(**r) for r in rows]

    # --- legacy data and maintenance ----------------------------------------------

    def import_legacy_history(self, user_id: UUID, entries: list[dict]) -> int:
        """
        Load an old embedded-document history (newest first) as ledger rows.

        Rows keep their original ids; entries whose id is already present are
        skipped, so re-running an import is harmless. Balances are untouched.
        """
        imported = 0
        with self.storage.atomic():
            self.get_user_row(user_id)
            for entry in reversed(entries):
                raw_id = entry.get("id")
                tx_id = str(raw_id).strip() if raw_id is not None and str(raw_id).strip() else uuid4().hex
                if tx_id in self.storage.transactions:
                    continue
                direction = Direction.CREDIT if str(entry.get("type", "")).lower() == "credit" else Direction.DEBIT
                status_raw = entry.get("status") or "COMPLETED"
                try:
                    status = LEGACY_STATUSES.get(status_raw) or TransactionStatus(str(status_raw).upper())
                except ValueError:
                    raise InvalidInputError(f"Unknown legacy status {status_raw!r} on entry {tx_id}")
                details = dict(entry.get("details") or {})
                for old_key, new_key in LEGACY_DETAIL_KEYS.items():
                    if details.get(old_key) is not None:
                        details.setdefault(new_key, details[old_key])
                if entry.get("date"):
                    details.setdefault("legacy_date", entry["date"])
                if entry.get("buyerUserId") is not None:
                    details.setdefault("legacy_buyer_user_id", str(entry["buyerUserId"]))
                order_code = entry.get("orderCode") or None
                row = {
                    "id": tx_id,
                    "order_code": order_code,
                    "user_id": user_id,
                    "seq": self.storage.next_seq(),
                    "direction": direction,
                    "kind": self._legacy_kind(entry, direction),
                    "amount": to_money(entry.get("amount") or 0),
                    "status": status,
                    "description": entry.get("description", ""),
                    "details": details,
                    "provider_id": None,
                    "counterparty_id": None,
                    "related_transaction_id": str(entry["buyerTransactionId"]) if entry.get("buyerTransactionId") is not None else None,
                    "stock_ids": self._legacy_stock_ids(details),
                    "created_at": self.clock(),
                }
                self.storage.transactions[tx_id] = row
                if order_code:
                    self.storage.order_code_index[order_code] = tx_id
                imported += 1
        logger.info("Imported %d legacy ledger rows for user %s", imported, user_id)
        return imported

    @staticmethod
    def _legacy_kind(entry: dict, direction: Direction) -> TransactionKind:
        details = entry.get("details") or {}
        if entry.get("isWithdrawalRefund"):
            return TransactionKind.WITHDRAWAL_REVERSAL
        if entry.get("isWithdrawal"):
            return TransactionKind.WITHDRAWAL
        if entry.get("isRefund"):
            return TransactionKind.REFUND if direction == Direction.CREDIT else TransactionKind.REFUND_ISSUED
        if entry.get("isRenewal"):
            return TransactionKind.RENEWAL_SALE
        if entry.get("isCommission"):
            return TransactionKind.SALE if entry.get("buyerTransactionId") is not None else TransactionKind.COMMISSION
        if details.get("type") == "premium_upgrade":
            return TransactionKind.PREMIUM_UPGRADE
        if details.get("isRenovation"):
            return TransactionKind.RENEWAL
        if direction == Direction.DEBIT:
            return TransactionKind.PURCHASE
        return TransactionKind.RECHARGE

    def _legacy_stock_ids(self, details: dict) -> list[UUID]:
        """Stock ids named by an old ``fullCredentials`` list that still exist in the pool."""
        stock_ids = []
        for credential in details.get("fullCredentials") or []:
            if not isinstance(credential, dict):
                continue
            stock_id = _parse_uuid(credential.get("stockId"))
            if stock_id is not None and stock_id in self.storage.stock:
                stock_ids.append(stock_id)
        return stock_ids

    def _resolve_provider(self, row: dict) -> Optional[dict]:
        stock_ids = list(row.get("stock_ids") or []) + self._legacy_stock_ids(row["details"])
        for stock_id in stock_ids:
            record = self.storage.stock.get(stock_id)
            if record is not None:
                return self.storage.users.get(record["provider_id"])
        details = row["details"]
        product = None
        product_id = _parse_uuid(details.get("product_id") or details.get("productId"))
        if product_id is not None:
            product = self.storage.products.get(product_id)
        name = details.get("product_name") or details.get("productName")
        if product is None and name:
            product = next((p for p in self.storage.products.values() if p["name"] == name), None)
        if product is not None:
            return self.storage.users.get(product["creator_user_id"])
        return None

    def repair_transactions(self) -> RepairReport:
        """
        Backfill missing order codes and provider links on purchase rows.

        Idempotent: rows already carrying a code and a live provider link are
        left alone; rows whose provider cannot be inferred are marked legacy.
        """
        report = RepairReport()
        with self.storage.atomic():
            for row in self.storage.transactions.values():
                if row["direction"] != Direction.DEBIT:
                    continue
                if not row.get("order_code"):
                    self._ensure_order_code(row)
                    report.fixed_order_codes += 1
                if row["kind"] not in PURCHASE_KINDS:
                    continue

                provider = self.storage.users.get(row["provider_id"]) if row.get("provider_id") else None
                if provider is None:
                    provider = self._resolve_provider(row)
                if provider is None:
                    if not row["details"].get("is_legacy"):
                        row["details"]["provider_name"] = LEGACY_PROVIDER
                        row["details"]["is_legacy"] = True
                        report.marked_legacy += 1
                    continue
                if row.get("provider_id") != provider["id"] or row["details"].get("provider_name") != provider["username"]:
                    row["provider_id"] = provider["id"]
                    row["details"]["provider_name"] = provider["username"]
                    row["details"].pop("is_legacy", None)
                    report.fixed_providers += 1
        logger.info(
            "Ledger repair: %d order codes, %d provider links, %d legacy",
            report.fixed_order_codes, report.fixed_providers, report.marked_legacy,
        )
        self.events.emit(TRANSACTIONS_UPDATED)
        return report
