"""
Change notifications emitted after committed mutations.

Delivery is fire-and-forget: a failing subscriber is logged and skipped, and
never affects the operation that emitted the event.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from .models import Event

logger = logging.getLogger(__name__)

PRODUCTS_UPDATED = "productsUpdated"
USERS_UPDATED = "usersUpdated"
TRANSACTIONS_UPDATED = "transactionsUpdated"
WITHDRAWALS_UPDATED = "withdrawalsUpdated"
PENDING_USERS_UPDATED = "pendingUsersUpdated"
SETTINGS_UPDATED = "settingsUpdated"
ORDERS_UPDATED = "ordersUpdated"
TRANSACTION_APPROVED = "transactionApproved"
APPLICATION_RESULT = "applicationResult"
USER_BAN_STATUS_UPDATE = "userBanStatusUpdate"

Handler = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, name: str, payload: Optional[dict] = None, user_id: Optional[UUID] = None) -> Event:
        event = Event(
            name=name,
            payload=payload or {},
            user_id=user_id,
            emitted_at=datetime.now(timezone.utc),
        )
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", name)
        return event

    def emit_all(self, *names: str) -> None:
        for name in names:
            self.emit(name)


class EventRecorder:
    """Subscriber that keeps emitted events in memory (tests, admin views)."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.events: list[Event] = []
        if bus is not None:
            bus.subscribe(self)

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def for_user(self, user_id: UUID) -> list[Event]:
        return [e for e in self.events if e.user_id == user_id]
