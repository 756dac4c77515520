import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .constants import to_money, to_rate
from .errors import (
    AlreadyProcessedError,
    DuplicateRequestError,
    ForbiddenOperationError,
    InsufficientBalanceError,
    InvalidInputError,
    NotFoundError,
)
from .events import TRANSACTION_APPROVED, TRANSACTIONS_UPDATED, USERS_UPDATED, WITHDRAWALS_UPDATED
from .models import Direction, TransactionKind, WithdrawalRequest, WithdrawalStatus

logger = logging.getLogger(__name__)


class WithdrawalService:
    """
    Withdrawal requests: PENDING -> APPROVED | REJECTED, or deleted by the
    owner while still PENDING.

    The gross amount is held from the balance when the request is made.
    Approval records the net payout only; the fee is not booked anywhere.
    """

    def __init__(self, ledger):
        self.ledger = ledger

    @property
    def storage(self):
        return self.ledger.storage

    def _get(self, withdrawal_id: UUID) -> dict:
        row = self.storage.withdrawals.get(withdrawal_id)
        if row is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        return row

    def _pending(self, withdrawal_id: UUID) -> dict:
        row = self._get(withdrawal_id)
        if row["status"] != WithdrawalStatus.PENDING:
            raise AlreadyProcessedError(f"Withdrawal {withdrawal_id} is already {row['status'].value}")
        return row

    def request(self, user_id: UUID, amount: Decimal) -> WithdrawalRequest:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidInputError("Withdrawal amount must be positive")

        with self.storage.atomic():
            self.ledger.get_user_row(user_id)
            if any(
                w["user_id"] == user_id and w["status"] == WithdrawalStatus.PENDING
                for w in self.storage.withdrawals.values()
            ):
                raise DuplicateRequestError("You already have a pending withdrawal request")

            balance = to_money(self.ledger.get_balance(user_id))
            if amount > balance:
                raise InsufficientBalanceError(
                    f"Insufficient balance: {balance} available, {amount} requested",
                    shortfall=to_money(amount - balance),
                )

            fee_rate = to_rate(self.ledger.settings_store.withdrawal_fee)
            fee = amount * fee_rate
            net = to_money(amount - fee)

            row = {
                "id": uuid4(),
                "user_id": user_id,
                "amount_original": amount,
                "fee_rate": fee_rate,
                "amount_final": net,
                "status": WithdrawalStatus.PENDING,
                "created_at": self.ledger.clock(),
                "processed_at": None,
            }
            self.storage.withdrawals[row["id"]] = row
            self.ledger.adjust_balance(user_id, -amount)

        logger.info("Withdrawal %s requested by %s: gross %s net %s", row["id"], user_id, amount, net)
        self.ledger.events.emit_all(WITHDRAWALS_UPDATED, USERS_UPDATED)
        return WithdrawalRequest(**row)

    def approve(self, withdrawal_id: UUID) -> WithdrawalRequest:
        with self.storage.atomic():
            row = self._pending(withdrawal_id)
            row["status"] = WithdrawalStatus.APPROVED
            row["processed_at"] = self.ledger.clock()
            # the gross amount was already held; this row only documents the payout
            self.ledger.append(
                row["user_id"],
                direction=Direction.DEBIT,
                kind=TransactionKind.WITHDRAWAL,
                amount=row["amount_final"],
                description=f"Withdrawal approved: ${row['amount_final']}",
                details={
                    "withdrawal_id": str(row["id"]),
                    "amount_original": str(row["amount_original"]),
                    "fee_rate": str(row["fee_rate"]),
                },
            )

        logger.info("Withdrawal %s approved", withdrawal_id)
        self.ledger.events.emit(
            TRANSACTION_APPROVED,
            {"withdrawal_id": str(row["id"]), "amount": str(row["amount_final"]), "message": "Your withdrawal was approved"},
            user_id=row["user_id"],
        )
        self.ledger.events.emit_all(WITHDRAWALS_UPDATED, TRANSACTIONS_UPDATED)
        return WithdrawalRequest(**row)

    def reject(self, withdrawal_id: UUID) -> WithdrawalRequest:
        with self.storage.atomic():
            row = self._pending(withdrawal_id)
            row["status"] = WithdrawalStatus.REJECTED
            row["processed_at"] = self.ledger.clock()
            self.ledger.post(
                row["user_id"],
                direction=Direction.CREDIT,
                kind=TransactionKind.WITHDRAWAL_REVERSAL,
                amount=row["amount_original"],
                description=f"Withdrawal rejected: ${row['amount_original']} returned",
                details={"withdrawal_id": str(row["id"])},
            )

        logger.info("Withdrawal %s rejected", withdrawal_id)
        self.ledger.events.emit_all(WITHDRAWALS_UPDATED, TRANSACTIONS_UPDATED, USERS_UPDATED)
        return WithdrawalRequest(**row)

    def cancel(self, user_id: UUID, withdrawal_id: UUID) -> WithdrawalRequest:
        with self.storage.atomic():
            row = self._get(withdrawal_id)
            if row["user_id"] != user_id:
                raise ForbiddenOperationError("Withdrawal belongs to another user")
            if row["status"] != WithdrawalStatus.PENDING:
                raise AlreadyProcessedError("Only pending withdrawals can be cancelled")
            del self.storage.withdrawals[withdrawal_id]
            self.ledger.adjust_balance(user_id, row["amount_original"])

        self.ledger.events.emit_all(WITHDRAWALS_UPDATED, USERS_UPDATED)
        return WithdrawalRequest(**row)

    def list_for_user(self, user_id: UUID) -> list[WithdrawalRequest]:
        rows = [w for w in self.storage.withdrawals.values() if w["user_id"] == user_id]
        rows.sort(key=lambda w: w["created_at"], reverse=True)
        return [WithdrawalRequest(**w) for w in rows]

    def list_all(self, status: Optional[WithdrawalStatus] = None) -> list[WithdrawalRequest]:
        rows = list(self.storage.withdrawals.values())
        if status is not None:
            rows = [w for w in rows if w["status"] == status]
        rows.sort(key=lambda w: w["created_at"], reverse=True)
        rows.sort(key=lambda w: w["status"] != WithdrawalStatus.PENDING)
        return [WithdrawalRequest(**w) for w in rows]
