import logging
from decimal import Decimal
from uuid import UUID

from .constants import add_months, to_money
from .errors import InvalidInputError
from .events import TRANSACTIONS_UPDATED, USERS_UPDATED
from .models import Direction, PremiumResponse, Role, TransactionKind

logger = logging.getLogger(__name__)

DEMOTIONS = {
    Role.PROVIDER_PREMIUM: Role.PROVIDER,
    Role.DISTRIBUTOR_PREMIUM: Role.DISTRIBUTOR,
}


class PremiumService:
    """Time-bound premium roles, demoted lazily when read after expiry."""

    def __init__(self, ledger):
        self.ledger = ledger

    @property
    def storage(self):
        return self.ledger.storage

    def resolve_role(self, user_id: UUID) -> Role:
        demoted = False
        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            expires_at = user.get("premium_expires_at")
            if expires_at is not None and expires_at <= self.ledger.clock():
                previous = user["role"]
                user["role"] = DEMOTIONS.get(previous, Role.STANDARD)
                user["premium_expires_at"] = None
                demoted = True
        if demoted:
            logger.info("Premium expired for user %s: %s -> %s", user_id, previous.value, user["role"].value)
            self.ledger.events.emit(USERS_UPDATED)
        return user["role"]

    @staticmethod
    def target_role(current: Role) -> Role:
        if current in (Role.PROVIDER, Role.PROVIDER_PREMIUM):
            return Role.PROVIDER_PREMIUM
        return Role.DISTRIBUTOR_PREMIUM

    def upgrade(self, user_id: UUID, amount: Decimal, months: int) -> PremiumResponse:
        amount = to_money(amount)
        if amount <= 0 or months < 1:
            raise InvalidInputError("Amount and months must be positive")

        self.resolve_role(user_id)
        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            self.ledger.require_funds(user_id, amount)

            now = self.ledger.clock()
            target = self.target_role(user["role"])
            current_expiry = user.get("premium_expires_at")
            if user["role"] == target and current_expiry is not None and current_expiry > now:
                start = current_expiry
            else:
                start = now
            expires_at = add_months(start, months)

            tx = self.ledger.post(
                user_id,
                direction=Direction.DEBIT,
                kind=TransactionKind.PREMIUM_UPGRADE,
                amount=amount,
                description=f"Premium upgrade: {target.value} for {months} month(s)",
                details={
                    "plan_role": target.value,
                    "months": months,
                    "expires_at": expires_at.isoformat(),
                    "previous_role": user["role"].value,
                },
            )
            user["role"] = target
            user["premium_expires_at"] = expires_at

        logger.info("User %s upgraded to %s until %s", user_id, target.value, expires_at.isoformat())
        self.ledger.events.emit_all(USERS_UPDATED, TRANSACTIONS_UPDATED)
        return PremiumResponse(
            role=target,
            expires_at=expires_at,
            new_balance=user["balance"],
            transaction=tx,
        )
