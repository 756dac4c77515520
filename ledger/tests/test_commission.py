"""
Tests for first-recharge referral commissions.
"""

import pytest
from decimal import Decimal

from ledger.events import TRANSACTION_APPROVED
from ledger.models import Direction, Role, TransactionKind
from ledger.referrals import generate_referral_code


def recharge(market, user_id, amount):
    tx = market.ledger.request_recharge(user_id, Decimal(amount))
    return market.ledger.approve_recharge(user_id, tx.id)


def commissions_of(market, user_id):
    return [e for e in market.ledger.history(user_id).entries if e.kind == TransactionKind.COMMISSION]


class TestCommissionRates:

    @pytest.mark.parametrize("role,expected", [
        (Role.DISTRIBUTOR, Decimal("5.00")),
        (Role.PROVIDER, Decimal("5.00")),
        (Role.DISTRIBUTOR_PREMIUM, Decimal("7.50")),
    ])
    def test_rate_by_referrer_role(self, market, make_user, role, expected):
        referrer_id = make_user(role=role)
        buyer_id = make_user(referrer_id=referrer_id)

        recharge(market, buyer_id, "50.00")

        assert market.ledger.get_balance(referrer_id) == expected
        assert market.ledger.get_balance(buyer_id) == Decimal("50.00")

    @pytest.mark.parametrize("role", [Role.STANDARD, Role.PROVIDER_PREMIUM, Role.ADMIN, Role.PENDING])
    def test_ineligible_roles_earn_nothing(self, market, make_user, role):
        referrer_id = make_user(role=role)
        buyer_id = make_user(referrer_id=referrer_id)

        recharge(market, buyer_id, "50.00")

        assert market.ledger.get_balance(referrer_id) == Decimal("0.00")
        assert commissions_of(market, referrer_id) == []


class TestFirstRechargeOnly:

    def test_distributor_scenario(self, market, make_user, recorder):
        """Buyer registered with a distributor's code recharges $50: distributor earns $5.00."""
        distributor_id = make_user(username="dist", role=Role.DISTRIBUTOR)
        code = market.storage.users[distributor_id]["referral_code"]
        buyer = market.register("buyer", "buyer@example.com", None, code.lower())

        recharge(market, buyer.id, "50.00")

        assert market.ledger.get_balance(buyer.id) == Decimal("50.00")
        assert market.ledger.get_balance(distributor_id) == Decimal("5.00")
        entries = commissions_of(market, distributor_id)
        assert len(entries) == 1
        assert entries[0].counterparty_id == buyer.id
        assert entries[0].details["source_username"] == "buyer"
        assert entries[0].details["original_amount"] == "50.00"
        assert "10%" in entries[0].description
        assert TRANSACTION_APPROVED in [e.name for e in recorder.for_user(distributor_id)]

    def test_second_recharge_pays_nothing(self, market, make_user):
        referrer_id = make_user(role=Role.DISTRIBUTOR_PREMIUM)
        buyer_id = make_user(referrer_id=referrer_id)

        recharge(market, buyer_id, "20.00")
        recharge(market, buyer_id, "100.00")

        assert market.ledger.get_balance(referrer_id) == Decimal("3.00")
        assert len(commissions_of(market, referrer_id)) == 1

    def test_rejected_recharge_does_not_count_as_first(self, market, make_user):
        referrer_id = make_user(role=Role.DISTRIBUTOR)
        buyer_id = make_user(referrer_id=referrer_id)
        rejected = market.ledger.request_recharge(buyer_id, Decimal("80.00"))
        market.ledger.reject_recharge(buyer_id, rejected.id)

        recharge(market, buyer_id, "30.00")

        assert market.ledger.get_balance(referrer_id) == Decimal("3.00")

    def test_prior_completed_credit_blocks_commission(self, market, make_user):
        """Any completed credit (not only a recharge) means the next recharge is not the first."""
        referrer_id = make_user(role=Role.DISTRIBUTOR)
        buyer_id = make_user(referrer_id=referrer_id)
        market.ledger.post(
            buyer_id, direction=Direction.CREDIT, kind=TransactionKind.REFUND,
            amount=Decimal("1.00"), description="earlier credit",
        )

        recharge(market, buyer_id, "30.00")

        assert market.ledger.get_balance(referrer_id) == Decimal("0.00")

    def test_no_referrer(self, market, make_user):
        buyer_id = make_user()

        recharge(market, buyer_id, "30.00")

        assert market.ledger.get_balance(buyer_id) == Decimal("30.00")

    def test_deleted_referrer_is_skipped(self, market, make_user):
        referrer_id = make_user(role=Role.DISTRIBUTOR)
        buyer_id = make_user(referrer_id=referrer_id)
        market.delete_user(referrer_id)

        recharge(market, buyer_id, "30.00")

        assert market.ledger.get_balance(buyer_id) == Decimal("30.00")


class TestReferralCodes:

    def test_generated_code_shape_and_uniqueness(self, market):
        code = generate_referral_code(market.storage)

        assert len(code) == 6
        assert code[:3].isalpha() and code[3:].isdigit()
        assert code not in market.storage.referral_index

    def test_referred_users(self, market, make_user):
        referrer_id = make_user(role=Role.DISTRIBUTOR)
        first = make_user(referrer_id=referrer_id)
        second = make_user(referrer_id=referrer_id)
        make_user()
        code = market.storage.users[referrer_id]["referral_code"]

        assert [u.id for u in market.referred_users(code.lower())] == [first, second]
