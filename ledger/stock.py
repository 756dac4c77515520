import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from .constants import new_stock_code, to_money, utcnow
from .errors import InsufficientStockError, InvalidInputError, NotFoundError
from .models import AllocatedUnit, StockRecord, StockStatus

logger = logging.getLogger(__name__)


def _quantity(record: dict) -> int:
    try:
        return max(0, int(record["payload"].get("quantity", 1)))
    except (TypeError, ValueError):
        return 0


def _is_sellable(record: dict) -> bool:
    return not record["is_sold"] and record["payload"].get("status") == StockStatus.PUBLISHED.value


class StockService:
    """
    Stock pool per product and the allocator that carves sold units out of it.

    The product's ``stock`` column is a cache: it is recomputed from the pool
    after every mutation and never adjusted incrementally.
    """

    def __init__(self, storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or utcnow

    def _product(self, product_id: UUID) -> dict:
        product = self.storage.products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def _record(self, stock_id: UUID) -> dict:
        record = self.storage.stock.get(stock_id)
        if record is None:
            raise NotFoundError(f"Stock record {stock_id} not found")
        return record

    def _new_record(self, product_id: UUID, provider_id: UUID, payload: dict, **fields) -> dict:
        record = {
            "id": uuid4(),
            "product_id": product_id,
            "provider_id": provider_id,
            "payload": payload,
            "is_sold": False,
            "buyer_id": None,
            "sold_at": None,
            "client_name": None,
            "client_phone": None,
            "seq": self.storage.next_seq(),
        }
        record.update(fields)
        self.storage.stock[record["id"]] = record
        return record

    # --- pool maintenance ---------------------------------------------------------

    def recompute(self, product_id: UUID) -> int:
        product = self.storage.products.get(product_id)
        if product is None:
            return 0
        total = sum(_quantity(r) for r in self.storage.product_stock(product_id) if _is_sellable(r))
        product["stock"] = total
        return total

    def available(self, product_id: UUID) -> int:
        self._product(product_id)
        return self.recompute(product_id)

    def add_stock(self, product_id: UUID, provider_id: UUID, items: list[dict]) -> list[StockRecord]:
        if not items:
            raise InvalidInputError("At least one stock item is required")
        with self.storage.atomic():
            self._product(product_id)
            created = []
            for item in items:
                payload = dict(item)
                try:
                    quantity = int(payload.get("quantity", 1))
                except (TypeError, ValueError):
                    raise InvalidInputError("Stock quantity must be an integer")
                if quantity < 1:
                    raise InvalidInputError("Stock quantity must be at least 1")
                payload.update(
                    quantity=quantity,
                    status=StockStatus.UNPUBLISHED.value,
                    unique_code=new_stock_code(),
                    added_at=self.clock().isoformat(),
                )
                created.append(self._new_record(product_id, provider_id, payload))
            self.recompute(product_id)
        logger.info("Added %d stock records to product %s", len(created), product_id)
        return [StockRecord(**r) for r in created]

    def publish(self, stock_id: UUID) -> StockRecord:
        with self.storage.atomic():
            record = self._record(stock_id)
            record["payload"]["status"] = StockStatus.PUBLISHED.value
            self.recompute(record["product_id"])
        return StockRecord(**record)

    def update_payload(self, stock_id: UUID, data: dict) -> StockRecord:
        """Replace the credential data of an unsold record, keeping its bookkeeping keys."""
        with self.storage.atomic():
            record = self._record(stock_id)
            if record["is_sold"]:
                raise InvalidInputError("Sold stock cannot be edited")
            payload = dict(data)
            for key in ("status", "unique_code", "added_at"):
                payload.setdefault(key, record["payload"].get(key))
            payload.setdefault("quantity", record["payload"].get("quantity", 1))
            if _quantity({"payload": payload}) < 1:
                raise InvalidInputError("Stock quantity must be at least 1")
            record["payload"] = payload
            self.recompute(record["product_id"])
        return StockRecord(**record)

    def delete(self, stock_id: UUID) -> None:
        with self.storage.atomic():
            record = self.storage.stock.pop(stock_id, None)
            if record is None:
                raise NotFoundError(f"Stock record {stock_id} not found")
            self.recompute(record["product_id"])

    # --- allocation -------------------------------------------------------------

    def allocate(self, product_id: UUID, quantity: int, buyer_id: UUID, unit_price: Decimal) -> list[AllocatedUnit]:
        """
        Carve ``quantity`` sold units out of the product's published pool.

        Availability is checked before anything is written; a short pool
        raises InsufficientStockError and leaves every record untouched.
        Records larger than the remaining need are split: the source keeps
        the remainder and one sold record of quantity 1 is created per unit.
        """
        if quantity < 1:
            raise InvalidInputError("Quantity must be at least 1")
        unit_price = to_money(unit_price)
        with self.storage.atomic():
            self._product(product_id)
            pool = [r for r in self.storage.product_stock(product_id) if _is_sellable(r)]
            available = sum(_quantity(r) for r in pool)
            if available < quantity:
                raise InsufficientStockError(quantity, available)

            sold_at = self.clock()
            allocated: list[AllocatedUnit] = []
            remaining = quantity
            for record in pool:
                if remaining == 0:
                    break
                record_qty = _quantity(record)
                if record_qty == 0:
                    continue
                if record_qty > remaining:
                    record["payload"]["quantity"] = record_qty - remaining
                    for _ in range(remaining):
                        payload = dict(record["payload"])
                        payload.update(quantity=1, unique_code=new_stock_code(), price_sold_per_unit=str(unit_price))
                        unit = self._new_record(
                            product_id, record["provider_id"], payload,
                            is_sold=True, buyer_id=buyer_id, sold_at=sold_at,
                        )
                        allocated.append(AllocatedUnit(stock_id=unit["id"], payload=payload))
                    remaining = 0
                else:
                    record["payload"]["price_sold_per_unit"] = str(unit_price)
                    record.update(is_sold=True, buyer_id=buyer_id, sold_at=sold_at)
                    allocated.append(AllocatedUnit(stock_id=record["id"], payload=dict(record["payload"])))
                    remaining -= record_qty

            self.recompute(product_id)
        logger.info("Allocated %d units of product %s to %s", quantity, product_id, buyer_id)
        return allocated

    def restore(self, stock_ids: Iterable[UUID], buyer_id: Optional[UUID] = None) -> int:
        """
        Return sold records to the pool. Unknown or unsold ids are skipped, and
        so are records held by anyone other than ``buyer_id`` when it is given.
        """
        restored = 0
        products = set()
        with self.storage.atomic():
            for stock_id in stock_ids:
                record = self.storage.stock.get(stock_id)
                if record is None or not record["is_sold"]:
                    continue
                if buyer_id is not None and record["buyer_id"] != buyer_id:
                    logger.warning("Stock %s is held by another buyer; not restored", stock_id)
                    continue
                record.update(is_sold=False, buyer_id=None, sold_at=None, client_name=None, client_phone=None)
                record["payload"].pop("price_sold_per_unit", None)
                products.add(record["product_id"])
                restored += 1
            for product_id in products:
                self.recompute(product_id)
        return restored

    def record_delivery(self, stock_ids: Iterable[UUID], client_name: str, client_phone: str) -> int:
        updated = 0
        with self.storage.atomic():
            for stock_id in stock_ids:
                record = self._record(stock_id)
                if not record["is_sold"]:
                    raise InvalidInputError(f"Stock record {stock_id} has not been sold")
                record.update(client_name=client_name, client_phone=client_phone)
                updated += 1
        return updated

    def inventory(self, provider_id: UUID) -> list[StockRecord]:
        rows = [r for r in self.storage.stock.values() if r["provider_id"] == provider_id]
        rows.sort(key=lambda r: r["seq"])
        return [StockRecord(**r) for r in rows]
