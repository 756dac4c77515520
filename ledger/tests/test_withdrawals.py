"""
Tests for provider withdrawals.

The gross amount is held on request; approval records only the net payout,
rejection credits the gross back, cancellation restores it without a row.
"""

import pytest
from decimal import Decimal

from ledger.errors import (
    AlreadyProcessedError,
    DuplicateRequestError,
    ForbiddenOperationError,
    InsufficientBalanceError,
    InvalidInputError,
    NotFoundError,
)
from ledger.events import TRANSACTION_APPROVED
from ledger.models import Direction, Role, TransactionKind, WithdrawalStatus


@pytest.fixture
def provider(make_user):
    return make_user(role=Role.PROVIDER, balance="100.00")


def rows_of(market, user_id):
    return market.ledger.history(user_id).entries


class TestWithdrawalLifecycle:

    def test_request_holds_gross_amount(self, market, provider):
        request = market.withdrawals.request(provider, Decimal("100.00"))

        assert request.status == WithdrawalStatus.PENDING
        assert request.fee_rate == Decimal("0.100")
        assert request.amount_final == Decimal("90.00")
        assert market.ledger.get_balance(provider) == Decimal("0.00")
        assert rows_of(market, provider) == []

    def test_approve_records_net_debit_only(self, market, provider, recorder):
        request = market.withdrawals.request(provider, Decimal("100.00"))

        approved = market.withdrawals.approve(request.id)

        assert approved.status == WithdrawalStatus.APPROVED
        assert approved.processed_at is not None
        assert market.ledger.get_balance(provider) == Decimal("0.00")
        (row,) = rows_of(market, provider)
        assert row.kind == TransactionKind.WITHDRAWAL
        assert row.direction == Direction.DEBIT
        assert row.amount == Decimal("90.00")
        assert TRANSACTION_APPROVED in [e.name for e in recorder.for_user(provider)]

        with pytest.raises(AlreadyProcessedError):
            market.withdrawals.approve(request.id)

    def test_reject_credits_gross_back(self, market, provider):
        request = market.withdrawals.request(provider, Decimal("100.00"))

        market.withdrawals.reject(request.id)

        assert market.ledger.get_balance(provider) == Decimal("100.00")
        (row,) = rows_of(market, provider)
        assert row.kind == TransactionKind.WITHDRAWAL_REVERSAL
        assert row.direction == Direction.CREDIT
        assert row.amount == Decimal("100.00")
        with pytest.raises(AlreadyProcessedError):
            market.withdrawals.reject(request.id)

    def test_cancel_restores_without_ledger_row(self, market, provider):
        request = market.withdrawals.request(provider, Decimal("100.00"))

        market.withdrawals.cancel(provider, request.id)

        assert market.ledger.get_balance(provider) == Decimal("100.00")
        assert rows_of(market, provider) == []
        assert market.withdrawals.list_for_user(provider) == []
        with pytest.raises(NotFoundError):
            market.withdrawals.approve(request.id)

    def test_cancel_after_approval_is_refused(self, market, provider):
        request = market.withdrawals.request(provider, Decimal("40.00"))
        market.withdrawals.approve(request.id)

        with pytest.raises(AlreadyProcessedError):
            market.withdrawals.cancel(provider, request.id)
        assert market.ledger.get_balance(provider) == Decimal("60.00")

    def test_cancel_by_other_user(self, market, provider, make_user):
        request = market.withdrawals.request(provider, Decimal("10.00"))

        with pytest.raises(ForbiddenOperationError):
            market.withdrawals.cancel(make_user(), request.id)
        assert market.withdrawals.list_for_user(provider)[0].status == WithdrawalStatus.PENDING


class TestWithdrawalValidation:

    def test_one_pending_request_per_user(self, market, provider):
        market.withdrawals.request(provider, Decimal("10.00"))

        with pytest.raises(DuplicateRequestError):
            market.withdrawals.request(provider, Decimal("10.00"))
        assert market.ledger.get_balance(provider) == Decimal("90.00")

    def test_insufficient_balance(self, market, provider):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            market.withdrawals.request(provider, Decimal("100.01"))

        assert exc_info.value.shortfall == Decimal("0.01")
        assert market.withdrawals.list_for_user(provider) == []

    def test_amount_is_compared_at_cent_precision(self, market, provider):
        request = market.withdrawals.request(provider, Decimal("100.004"))

        assert request.amount_original == Decimal("100.00")
        assert market.ledger.get_balance(provider) == Decimal("0.00")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount(self, market, provider, amount):
        with pytest.raises(InvalidInputError):
            market.withdrawals.request(provider, Decimal(amount))

    def test_fee_follows_runtime_setting(self, market, provider):
        market.set_withdrawal_fee(Decimal("0.05"))

        request = market.withdrawals.request(provider, Decimal("100.00"))

        assert request.amount_final == Decimal("95.00")


class TestWithdrawalListing:

    def test_admin_list_puts_pending_first(self, market, provider, make_user, clock):
        other = make_user(role=Role.PROVIDER, balance="50.00")
        first = market.withdrawals.request(provider, Decimal("20.00"))
        clock.advance(hours=1)
        second = market.withdrawals.request(other, Decimal("20.00"))
        market.withdrawals.approve(second.id)

        listed = market.withdrawals.list_all()

        assert [w.id for w in listed] == [first.id, second.id]
        assert [w.id for w in market.withdrawals.list_all(WithdrawalStatus.APPROVED)] == [second.id]
