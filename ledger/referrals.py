import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from rules import ActionType, RuleEngine, TriggerEvent, create_commission_rules

from .constants import ZERO, new_referral_code, random_code, to_money
from .models import Direction, Transaction, TransactionKind, TransactionStatus, User

logger = logging.getLogger(__name__)

REFERRAL_CODE_ATTEMPTS = 10


class CommissionEngine:
    """
    Pays a referrer on the referred user's first completed recharge.

    The rate comes from the commission rule table; a referrer whose role
    matches no rule earns nothing.
    """

    def __init__(self, ledger, rule_engine: Optional[RuleEngine] = None):
        self.ledger = ledger
        self.rule_engine = rule_engine or RuleEngine(create_commission_rules())

    @property
    def storage(self):
        return self.ledger.storage

    def rate_for(self, referrer: dict) -> Decimal:
        context = {"referrer": {"id": str(referrer["id"]), "role": referrer["role"]}}
        rate = self.rule_engine.action_param(
            TriggerEvent.FIRST_RECHARGE_COMPLETED, context,
            ActionType.CREDIT_COMMISSION, "rate", default=ZERO,
        )
        return Decimal(str(rate))

    def is_first_recharge(self, user_id: UUID, exclude_id: Optional[str] = None) -> bool:
        for row in self.storage.user_transactions(user_id):
            if row["id"] == exclude_id:
                continue
            if row["status"] == TransactionStatus.COMPLETED and row["direction"] == Direction.CREDIT:
                return False
        return True

    def apply_first_recharge_commission(self, user: dict, amount: Decimal) -> Optional[Transaction]:
        referrer_id = user.get("referred_by_user_id")
        if not referrer_id:
            return None
        referrer = self.storage.users.get(referrer_id)
        if referrer is None:
            logger.warning("Referrer %s of user %s no longer exists", referrer_id, user["id"])
            return None

        rate = self.rate_for(referrer)
        commission = to_money(Decimal(str(amount)) * rate)
        if commission <= 0:
            return None

        percent = f"{float(rate * 100):g}"
        tx = self.ledger.post(
            referrer_id,
            direction=Direction.CREDIT,
            kind=TransactionKind.COMMISSION,
            amount=commission,
            description=f"Commission ({percent}%): recharge ${to_money(amount)} | commission ${commission}",
            details={
                "source_user_id": str(user["id"]),
                "source_username": user["username"],
                "original_amount": str(to_money(amount)),
                "rate": str(rate),
            },
            counterparty_id=user["id"],
        )
        logger.info("Commission %s (%s%%) credited to %s for %s", commission, percent, referrer_id, user["id"])
        return tx


def generate_referral_code(storage) -> str:
    for _ in range(REFERRAL_CODE_ATTEMPTS):
        code = new_referral_code()
        if code not in storage.referral_index:
            return code
    return f"U{random_code(5)}"


def referred_users(storage, referral_code: str) -> list[User]:
    referrer = storage.user_by_referral_code(referral_code.upper())
    if referrer is None:
        return []
    rows = [u for u in storage.users.values() if u.get("referred_by_user_id") == referrer["id"]]
    rows.sort(key=lambda u: u["created_at"])
    return [User(**u) for u in rows]
