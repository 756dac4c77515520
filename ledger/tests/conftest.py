"""
Shared fixtures for the ledger test suite.

- A controllable UTC clock so expiry and refund arithmetic is deterministic
- A Marketplace wired to fresh storage and an event recorder
- Factories that seed users and published products directly into storage
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger.config import Settings
from ledger.constants import to_money
from ledger.events import EventBus, EventRecorder
from ledger.marketplace import Marketplace
from ledger.models import CreateProductRequest, DeliveryMode, Role
from ledger.storage import InMemoryStorage

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def market(clock, events):
    return Marketplace(storage=InMemoryStorage(), events=events, settings=Settings(), clock=clock)


@pytest.fixture
def make_user(market):
    """Insert a user row; returns its id."""
    counter = iter(range(1, 10_000))

    def _make_user(username=None, role=Role.STANDARD, balance="0.00", referrer_id=None, discount=0, premium_expires_at=None):
        n = next(counter)
        user_id = uuid4()
        code = f"TST{n:03d}"
        market.storage.users[user_id] = {
            "id": user_id,
            "username": username or f"user{n}",
            "email": f"{username or f'user{n}'}@example.com",
            "phone": f"555{n:04d}",
            "balance": to_money(balance),
            "role": role,
            "discount_percentage": discount,
            "referral_code": code,
            "referred_by_user_id": referrer_id,
            "premium_expires_at": premium_expires_at,
            "is_banned": False,
            "is_approved": True,
            "created_at": market.clock(),
        }
        market.storage.referral_index[code] = user_id
        return user_id

    return _make_user


@pytest.fixture
def make_product(market):
    """Create a product with published stock records of the given quantities."""

    def _make_product(provider_id, quantities=(1,), price="10.00", duration="30 days", delivery=DeliveryMode.AUTOMATIC, **fields):
        product = market.create_product(CreateProductRequest(
            name=fields.pop("name", f"Streaming {uuid4().hex[:4]}"),
            platform=fields.pop("platform", "StreamFlix"),
            creator_user_id=provider_id,
            price_standard=Decimal(price),
            duration=duration,
            delivery=delivery,
            **fields,
        ))
        if quantities:
            records = market.stock.add_stock(
                product.id, provider_id,
                [{"username": f"acct{i}@mail.com", "password": f"pw{i}", "quantity": q} for i, q in enumerate(quantities)],
            )
            for record in records:
                market.stock.publish(record.id)
        return product.id

    return _make_product
