"""
Support tickets on purchases and the refunds they can end in.

State machine of a buyer's purchase row:

    COMPLETED -> SUPPORT                 (buyer opens a ticket)
    SUPPORT -> COMPLETED                 (provider fixed it in place)
    SUPPORT -> REFUNDED                  (prorated refund to the buyer)
    SUPPORT -> AWAITING_APPROVAL         (provider proposes new credentials)
    AWAITING_APPROVAL -> COMPLETED       (buyer accepts the proposal)
"""

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .constants import parse_duration_days, to_money
from .errors import (
    AlreadyProcessedError,
    ForbiddenOperationError,
    InvalidInputError,
    NotFoundError,
    NothingToRefundError,
)
from .events import PRODUCTS_UPDATED, TRANSACTIONS_UPDATED, USERS_UPDATED
from .models import (
    DeliveryMode,
    Direction,
    PURCHASE_KINDS,
    RefundQuote,
    SALE_KINDS,
    SupportAction,
    Transaction,
    TransactionKind,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
SUPPORT_FIELDS = ("support_message", "support_date")
CORRECTION_FIELDS = ("correction_message", "correction_date", "proposed_credentials")


def calculate_refund(amount, duration_label, purchased_at: datetime, now: datetime, default_days: int = 30) -> RefundQuote:
    """
    Prorate ``amount`` over the subscription length.

    The current partial day counts as used, so a refund never covers it.
    """
    total_days = parse_duration_days(duration_label, default=default_days)
    elapsed = (now - purchased_at).total_seconds()
    days_used = max(0, math.floor(elapsed / SECONDS_PER_DAY))
    days_remaining = max(0, total_days - days_used)
    refund = to_money(Decimal(days_remaining) * Decimal(str(amount)) / Decimal(total_days))
    return RefundQuote(
        total_days=total_days,
        days_used=days_used,
        days_remaining=days_remaining,
        amount=refund,
    )


class SupportService:
    def __init__(self, ledger, stock):
        self.ledger = ledger
        self.stock = stock

    @property
    def storage(self):
        return self.ledger.storage

    def _purchase_in_state(self, ref, status: TransactionStatus, provider_id: Optional[UUID] = None) -> dict:
        row = self.ledger.locate(ref)
        if row is None or row["kind"] not in PURCHASE_KINDS:
            raise NotFoundError(f"Purchase {ref} not found")
        if row["status"] != status:
            raise AlreadyProcessedError(f"Purchase {ref} is {row['status'].value}, expected {status.value}")
        if provider_id is not None and row.get("provider_id") != provider_id:
            raise ForbiddenOperationError("This purchase belongs to another provider")
        return row

    def open_ticket(self, user_id: UUID, ref, message: str) -> Transaction:
        if not message or not message.strip():
            raise InvalidInputError("A support message is required")
        with self.storage.atomic():
            self.ledger.get_user_row(user_id)
            row = self.ledger.find_row(user_id, ref)
            if row is None or row["kind"] not in PURCHASE_KINDS:
                raise NotFoundError(f"Purchase {ref} not found")
            if row["status"] != TransactionStatus.COMPLETED:
                raise AlreadyProcessedError(f"Purchase {ref} is {row['status'].value}")

            patch = {"support_message": message.strip(), "support_date": self.ledger.clock().isoformat()}
            provider = self.storage.users.get(row["provider_id"]) if row.get("provider_id") else None
            if provider is not None:
                patch["provider_name"] = provider["username"]
            tx = self.ledger.update_transaction(row["id"], TransactionStatus.SUPPORT, patch)

        logger.info("Support ticket opened on %s by %s", row["id"], user_id)
        self.ledger.events.emit(TRANSACTIONS_UPDATED)
        return tx

    def quote(self, row: dict) -> RefundQuote:
        duration = row["details"].get("duration")
        return calculate_refund(
            row["amount"], duration, row["created_at"], self.ledger.clock(),
            default_days=self.ledger.settings_store.settings.DEFAULT_DURATION_DAYS,
        )

    def resolve(self, ref, action: SupportAction, provider_id: Optional[UUID] = None) -> Transaction:
        action = SupportAction(action)
        refund_tx = None
        with self.storage.atomic():
            row = self._purchase_in_state(ref, TransactionStatus.SUPPORT, provider_id)

            if action == SupportAction.COMPLETE:
                tx = self.ledger.update_transaction(
                    row["id"], TransactionStatus.COMPLETED, {key: None for key in SUPPORT_FIELDS},
                )
            else:
                quote = self.quote(row)
                if quote.amount <= 0:
                    raise NothingToRefundError(quote.days_remaining)
                refund_tx = self.ledger.post(
                    row["user_id"],
                    direction=Direction.CREDIT,
                    kind=TransactionKind.REFUND,
                    amount=quote.amount,
                    description=f"Refund for {row['details'].get('product_name', 'purchase')} ({quote.days_remaining} of {quote.total_days} days)",
                    details={"days_remaining": quote.days_remaining, "total_days": quote.total_days},
                    provider_id=row.get("provider_id"),
                    related_transaction_id=row["id"],
                )
                # a renewal refund only gives back time; the units stay with the original purchase
                if (
                    row["kind"] == TransactionKind.PURCHASE
                    and row["details"].get("delivery") != DeliveryMode.ON_REQUEST.value
                    and row.get("stock_ids")
                ):
                    self.stock.restore(row["stock_ids"], buyer_id=row["user_id"])
                tx = self.ledger.update_transaction(
                    row["id"], TransactionStatus.REFUNDED,
                    {"refund_amount": str(quote.amount), "refund_transaction_id": refund_tx.id},
                )

        logger.info("Support on %s resolved with %s", row["id"], action.value)
        if refund_tx is not None:
            self.ledger.events.emit_all(TRANSACTIONS_UPDATED, USERS_UPDATED, PRODUCTS_UPDATED)
        else:
            self.ledger.events.emit(TRANSACTIONS_UPDATED)
        return tx

    def propose_fix(self, ref, message: str, new_credentials: Optional[list[dict]] = None, provider_id: Optional[UUID] = None) -> Transaction:
        if not message or not message.strip():
            raise InvalidInputError("A correction message is required")
        with self.storage.atomic():
            row = self._purchase_in_state(ref, TransactionStatus.SUPPORT, provider_id)
            tx = self.ledger.update_transaction(
                row["id"], TransactionStatus.AWAITING_APPROVAL,
                {
                    "correction_message": message.strip(),
                    "correction_date": self.ledger.clock().isoformat(),
                    "proposed_credentials": list(new_credentials) if new_credentials is not None else None,
                },
            )
        self.ledger.events.emit(TRANSACTIONS_UPDATED)
        return tx

    def approve_fix(self, user_id: UUID, ref) -> Transaction:
        with self.storage.atomic():
            self.ledger.get_user_row(user_id)
            row = self.ledger.find_row(user_id, ref)
            if row is None or row["kind"] not in PURCHASE_KINDS:
                raise NotFoundError(f"Purchase {ref} not found")
            if row["status"] != TransactionStatus.AWAITING_APPROVAL:
                raise AlreadyProcessedError(f"Purchase {ref} has no pending correction")

            patch = {key: None for key in SUPPORT_FIELDS + CORRECTION_FIELDS}
            proposed = row["details"].get("proposed_credentials")
            if proposed is not None:
                patch["credentials"] = proposed
            tx = self.ledger.update_transaction(row["id"], TransactionStatus.COMPLETED, patch)

        self.ledger.events.emit(TRANSACTIONS_UPDATED)
        return tx

    def proportional_refund(self, provider_id: UUID, buyer_id: UUID, buyer_tx_ref, amount: Decimal) -> tuple[Transaction, Transaction]:
        """
        Provider-initiated reversal: the provider pays back ``amount`` of a sale.

        The buyer row is found in the buyer's ledger and must be linked from a
        sale row in the provider's own ledger. Returns (provider_debit, buyer_credit).
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidInputError("Refund amount must be positive")

        with self.storage.atomic():
            self.ledger.get_user_row(provider_id)
            self.ledger.get_user_row(buyer_id)
            buyer_row = self.ledger.find_row(buyer_id, buyer_tx_ref)
            if buyer_row is None:
                raise NotFoundError(f"Buyer transaction {buyer_tx_ref} not found")
            if buyer_row["status"] == TransactionStatus.REFUNDED:
                raise AlreadyProcessedError("This transaction was already refunded")

            sale_row = next(
                (
                    r for r in self.storage.user_transactions(provider_id)
                    if r["kind"] in SALE_KINDS and r.get("related_transaction_id") == buyer_row["id"]
                ),
                None,
            )
            if sale_row is None:
                raise NotFoundError("No sale in your ledger matches that buyer transaction")

            self.ledger.require_funds(provider_id, amount)
            product_name = buyer_row["details"].get("product_name", "purchase")
            provider_tx = self.ledger.post(
                provider_id,
                direction=Direction.DEBIT,
                kind=TransactionKind.REFUND_ISSUED,
                amount=amount,
                description=f"Refund issued for {product_name}",
                counterparty_id=buyer_id,
                related_transaction_id=sale_row["id"],
            )
            buyer_tx = self.ledger.post(
                buyer_id,
                direction=Direction.CREDIT,
                kind=TransactionKind.REFUND,
                amount=amount,
                description=f"Refund for {product_name}",
                provider_id=provider_id,
                counterparty_id=provider_id,
                related_transaction_id=buyer_row["id"],
            )
            self.ledger.update_transaction(
                buyer_row["id"], TransactionStatus.REFUNDED,
                {"refund_amount": str(amount), "refund_transaction_id": buyer_tx.id},
            )

        logger.info("Provider %s refunded %s to %s for %s", provider_id, amount, buyer_id, buyer_row["id"])
        self.ledger.events.emit_all(TRANSACTIONS_UPDATED, USERS_UPDATED)
        return provider_tx, buyer_tx
