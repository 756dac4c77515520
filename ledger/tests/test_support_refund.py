"""
Tests for the support workflow and both refund paths.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from conftest import START
from ledger.errors import (
    AlreadyProcessedError,
    ForbiddenOperationError,
    InsufficientBalanceError,
    InsufficientStockError,
    InvalidInputError,
    NotFoundError,
    NothingToRefundError,
)
from ledger.models import SupportAction, TransactionKind, TransactionStatus
from ledger.support import calculate_refund


@pytest.fixture
def sale(market, make_user, make_product):
    """A completed $30 / 30-day purchase of one stock unit."""
    provider_id = make_user(username="prov")
    buyer_id = make_user(username="buyer", balance="30.00")
    product_id = make_product(provider_id, quantities=(1,), price="30.00", duration="30 days")
    response = market.purchase(buyer_id, product_id, 1)
    return provider_id, buyer_id, product_id, response.transaction


class TestCalculateRefund:

    def test_ten_days_into_thirty(self):
        quote = calculate_refund(Decimal("30.00"), "30 days", START, START + timedelta(days=10))

        assert (quote.total_days, quote.days_used, quote.days_remaining) == (30, 10, 20)
        assert quote.amount == Decimal("20.00")

    def test_partial_day_counts_as_used(self):
        quote = calculate_refund(Decimal("30.00"), "30 days", START, START + timedelta(days=10, hours=23))

        assert quote.days_used == 10
        assert quote.amount == Decimal("20.00")

    def test_past_duration_refunds_nothing(self):
        quote = calculate_refund(Decimal("30.00"), "30 days", START, START + timedelta(days=31))

        assert quote.days_remaining == 0
        assert quote.amount == Decimal("0.00")

    @pytest.mark.parametrize("label,days", [
        ("1 month", 30), ("2 weeks", 14), ("1 year", 365), ("90 Días", 90), ("Premium", 30), (None, 30), ("0 days", 1),
    ])
    def test_duration_labels(self, label, days):
        assert calculate_refund(Decimal("10"), label, START, START).total_days == days

    def test_rounding(self):
        quote = calculate_refund(Decimal("10.00"), "3 days", START, START + timedelta(days=1))

        assert quote.amount == Decimal("6.67")


class TestSupportStateMachine:

    def test_refund_credits_buyer_and_restores_stock(self, market, sale, clock):
        provider_id, buyer_id, product_id, purchase = sale
        clock.advance(days=10)
        market.support.open_ticket(buyer_id, purchase.order_code, "Password does not work")

        resolved = market.support.resolve(purchase.id, SupportAction.REFUND, provider_id)

        assert resolved.status == TransactionStatus.REFUNDED
        assert resolved.details["refund_amount"] == "20.00"
        assert market.ledger.get_balance(buyer_id) == Decimal("20.00")
        assert market.ledger.get_balance(provider_id) == Decimal("30.00")
        assert market.stock.available(product_id) == 1
        refund = market.ledger.history(buyer_id).entries[0]
        assert refund.kind == TransactionKind.REFUND
        assert refund.related_transaction_id == purchase.id

    def test_nothing_to_refund_keeps_ticket_open(self, market, sale, clock):
        provider_id, buyer_id, product_id, purchase = sale
        market.support.open_ticket(buyer_id, purchase.id, "Expired?")
        clock.advance(days=31)

        with pytest.raises(NothingToRefundError) as exc_info:
            market.support.resolve(purchase.id, SupportAction.REFUND)

        assert exc_info.value.days_remaining == 0
        assert market.ledger.find_transaction(buyer_id, purchase.id).status == TransactionStatus.SUPPORT
        assert market.ledger.get_balance(buyer_id) == Decimal("0.00")
        assert market.stock.available(product_id) == 0

    def test_complete_clears_support_fields(self, market, sale):
        provider_id, buyer_id, _, purchase = sale
        ticket = market.support.open_ticket(buyer_id, purchase.id, "Help")
        assert ticket.details["support_message"] == "Help"
        assert ticket.details["provider_name"] == "prov"

        done = market.support.resolve(purchase.id, SupportAction.COMPLETE, provider_id)

        assert done.status == TransactionStatus.COMPLETED
        assert "support_message" not in done.details
        assert "support_date" not in done.details

    def test_fix_then_buyer_approval(self, market, sale):
        _, buyer_id, _, purchase = sale
        market.support.open_ticket(buyer_id, purchase.id, "Wrong password")
        new_credentials = [{"username": "fixed@mail.com", "password": "new"}]

        proposed = market.support.propose_fix(purchase.id, "Replaced the account", new_credentials)
        assert proposed.status == TransactionStatus.AWAITING_APPROVAL

        approved = market.support.approve_fix(buyer_id, purchase.order_code)

        assert approved.status == TransactionStatus.COMPLETED
        assert approved.details["credentials"] == new_credentials
        assert "proposed_credentials" not in approved.details
        assert "correction_message" not in approved.details
        assert "correction_date" not in approved.details
        assert "support_message" not in approved.details

    def test_other_provider_cannot_propose_fix(self, market, sale, make_user):
        provider_id, buyer_id, _, purchase = sale
        market.support.open_ticket(buyer_id, purchase.id, "Help")

        with pytest.raises(ForbiddenOperationError):
            market.support.propose_fix(purchase.id, "Try this", provider_id=make_user())

        proposed = market.support.propose_fix(purchase.id, "Try this", provider_id=provider_id)
        assert proposed.status == TransactionStatus.AWAITING_APPROVAL
        assert proposed.details["correction_date"] == START.isoformat()

    def test_refunding_a_renewal_keeps_the_unit_sold(self, market, make_user, make_product):
        provider_id = make_user(username="prov")
        buyer_id = make_user(balance="40.00")
        other_id = make_user(balance="40.00")
        product_id = make_product(
            provider_id, quantities=(1,), price="30.00", is_renewable=True, price_renewal_standard=Decimal("5.00"),
        )
        purchase = market.purchase(buyer_id, product_id, 1).transaction
        renewal = market.renew(buyer_id, purchase.id, 1).transaction
        assert renewal.stock_ids == []

        market.support.open_ticket(buyer_id, renewal.id, "Renewal did not apply")
        market.support.resolve(renewal.id, SupportAction.REFUND, provider_id)

        assert market.ledger.get_balance(buyer_id) == Decimal("10.00")
        assert market.stock.available(product_id) == 0
        (unit_id,) = purchase.stock_ids
        assert market.storage.stock[unit_id]["buyer_id"] == buyer_id
        assert market.ledger.find_transaction(buyer_id, purchase.id).status == TransactionStatus.COMPLETED
        with pytest.raises(InsufficientStockError):
            market.purchase(other_id, product_id, 1)

    def test_ticket_requires_completed_purchase(self, market, sale):
        _, buyer_id, _, purchase = sale
        market.support.open_ticket(buyer_id, purchase.id, "first")

        with pytest.raises(AlreadyProcessedError):
            market.support.open_ticket(buyer_id, purchase.id, "second")
        with pytest.raises(InvalidInputError):
            market.support.open_ticket(buyer_id, purchase.id, "   ")

    def test_other_provider_cannot_resolve(self, market, sale, make_user):
        _, buyer_id, _, purchase = sale
        market.support.open_ticket(buyer_id, purchase.id, "Help")

        with pytest.raises(ForbiddenOperationError):
            market.support.resolve(purchase.id, SupportAction.COMPLETE, make_user())

    def test_approve_without_proposal(self, market, sale):
        _, buyer_id, _, purchase = sale

        with pytest.raises(AlreadyProcessedError):
            market.support.approve_fix(buyer_id, purchase.id)


class TestProportionalRefund:

    def test_symmetric_reversal(self, market, sale):
        provider_id, buyer_id, _, purchase = sale

        provider_tx, buyer_tx = market.support.proportional_refund(provider_id, buyer_id, purchase.order_code, Decimal("12.00"))

        assert provider_tx.kind == TransactionKind.REFUND_ISSUED
        assert buyer_tx.kind == TransactionKind.REFUND
        assert market.ledger.get_balance(provider_id) == Decimal("18.00")
        assert market.ledger.get_balance(buyer_id) == Decimal("12.00")
        assert market.ledger.find_transaction(buyer_id, purchase.id).status == TransactionStatus.REFUNDED

    def test_cannot_refund_twice(self, market, sale):
        provider_id, buyer_id, _, purchase = sale
        market.support.proportional_refund(provider_id, buyer_id, purchase.id, Decimal("5.00"))

        with pytest.raises(AlreadyProcessedError):
            market.support.proportional_refund(provider_id, buyer_id, purchase.id, Decimal("5.00"))
        assert market.ledger.get_balance(provider_id) == Decimal("25.00")

    def test_provider_without_funds(self, market, sale):
        provider_id, buyer_id, _, purchase = sale

        with pytest.raises(InsufficientBalanceError):
            market.support.proportional_refund(provider_id, buyer_id, purchase.id, Decimal("31.00"))
        assert market.ledger.find_transaction(buyer_id, purchase.id).status == TransactionStatus.COMPLETED
        assert market.ledger.get_balance(buyer_id) == Decimal("0.00")

    def test_unrelated_provider(self, market, sale, make_user):
        _, buyer_id, _, purchase = sale
        stranger = make_user(balance="100.00")

        with pytest.raises(NotFoundError):
            market.support.proportional_refund(stranger, buyer_id, purchase.id, Decimal("5.00"))

    def test_amount_must_be_positive(self, market, sale):
        provider_id, buyer_id, _, purchase = sale
        with pytest.raises(InvalidInputError):
            market.support.proportional_refund(provider_id, buyer_id, purchase.id, Decimal("0"))
