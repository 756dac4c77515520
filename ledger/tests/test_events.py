"""
Tests for event delivery.
"""

import logging
from decimal import Decimal
from uuid import uuid4

from ledger.events import EventBus, EventRecorder, TRANSACTIONS_UPDATED, USERS_UPDATED


class TestEventBus:

    def test_failing_handler_is_logged_and_skipped(self, caplog):
        bus = EventBus()

        def broken(event):
            raise RuntimeError("socket closed")

        bus.subscribe(broken)
        recorder = EventRecorder(bus)

        with caplog.at_level(logging.ERROR, logger="ledger.events"):
            bus.emit(USERS_UPDATED, {"reason": "test"})

        assert recorder.names() == [USERS_UPDATED]
        assert "Event handler failed" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        bus.unsubscribe(recorder)
        bus.unsubscribe(recorder)

        bus.emit(USERS_UPDATED)

        assert recorder.events == []

    def test_failing_subscriber_does_not_undo_the_operation(self, market, make_user):
        """Events fire after commit; a broken subscriber leaves the posted row in place."""
        user_id = make_user()
        tx = market.ledger.request_recharge(user_id, Decimal("20.00"))

        def broken(event):
            raise ValueError("boom")

        market.events.subscribe(broken)
        market.ledger.approve_recharge(user_id, tx.id)

        assert market.ledger.get_balance(user_id) == Decimal("20.00")

    def test_targeted_events(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        user_id = uuid4()

        bus.emit(TRANSACTIONS_UPDATED)
        targeted = bus.emit(TRANSACTIONS_UPDATED, {"amount": "1.00"}, user_id=user_id)

        assert recorder.for_user(user_id) == [targeted]
        assert targeted.payload == {"amount": "1.00"}
