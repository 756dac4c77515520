import copy
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import Settings, SettingsStore, get_settings
from .constants import add_months, parse_duration_days, to_money
from .errors import (
    DuplicateRequestError,
    ForbiddenOperationError,
    InvalidInputError,
    NotFoundError,
)
from .events import (
    APPLICATION_RESULT,
    EventBus,
    ORDERS_UPDATED,
    PENDING_USERS_UPDATED,
    PRODUCTS_UPDATED,
    SETTINGS_UPDATED,
    TRANSACTION_APPROVED,
    TRANSACTIONS_UPDATED,
    USER_BAN_STATUS_UPDATE,
    USERS_UPDATED,
)
from .models import (
    CreateProductRequest,
    DeliveryMode,
    Direction,
    Order,
    PlatformConfig,
    PREMIUM_ROLES,
    Product,
    ProfileResponse,
    ProviderOrder,
    ProviderSale,
    PURCHASE_KINDS,
    PurchaseResponse,
    Role,
    SALE_KINDS,
    StockRecord,
    Transaction,
    TransactionKind,
    TransactionStatus,
    User,
)
from .premium import PremiumService
from .referrals import generate_referral_code, referred_users
from .service import LedgerService
from .stock import StockService
from .storage import InMemoryStorage
from .support import SupportService
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)

FINANCIAL_KINDS = SALE_KINDS + (
    TransactionKind.COMMISSION,
    TransactionKind.REFUND,
    TransactionKind.REFUND_ISSUED,
    TransactionKind.WITHDRAWAL,
    TransactionKind.WITHDRAWAL_REVERSAL,
)


class Marketplace:
    """
    Entry point for every marketplace operation.

    Wires the ledger, stock, premium, withdrawal and support services over a
    single storage, settings store and event bus. Multi-party operations
    (purchase, renewal) run inside one ``storage.atomic()`` block and emit
    their events only after it commits.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.events = events or EventBus()
        self.settings = settings or get_settings()
        self.settings_store = SettingsStore(self.storage, self.settings)
        self.ledger = LedgerService(self.storage, self.events, self.settings_store, clock)
        self.stock = StockService(self.storage, self.ledger.clock)
        self.premium = PremiumService(self.ledger)
        self.withdrawals = WithdrawalService(self.ledger)
        self.support = SupportService(self.ledger, self.stock)

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.ledger.clock

    def _product(self, product_id: UUID) -> dict:
        product = self.storage.products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def _owned_product(self, product_id: UUID, provider_id: UUID) -> dict:
        product = self._product(product_id)
        if product["creator_user_id"] != provider_id:
            raise ForbiddenOperationError("This product belongs to another provider")
        return product

    # --- users -----------------------------------------------------------------

    def register(self, username: str, email: str, phone: Optional[str], referral_code_used: str) -> User:
        username = (username or "").strip()
        email = (email or "").strip()
        code = (referral_code_used or "").strip().upper()
        if not username or not email or not code:
            raise InvalidInputError("Username, email and referral code are required")

        with self.storage.atomic():
            if any(u["username"] == username or u["email"] == email for u in self.storage.users.values()):
                raise DuplicateRequestError("Username or email is already registered")
            referrer = self.storage.user_by_referral_code(code)
            if referrer is None:
                raise InvalidInputError(f'Referral code "{code}" is not valid')

            personal_code = generate_referral_code(self.storage)
            row = {
                "id": uuid4(),
                "username": username,
                "email": email,
                "phone": phone,
                "balance": Decimal("0.00"),
                "role": Role.STANDARD,
                "discount_percentage": 0,
                "referral_code": personal_code,
                "referred_by_user_id": referrer["id"],
                "premium_expires_at": None,
                "is_banned": False,
                "is_approved": True,
                "created_at": self.clock(),
            }
            self.storage.users[row["id"]] = row
            self.storage.referral_index[personal_code] = row["id"]

        logger.info("Registered user %s referred by %s", username, referrer["username"])
        self.events.emit(USERS_UPDATED)
        return User(**row)

    def get_profile(self, user_id: UUID) -> ProfileResponse:
        """User with role resolved and full ledger, credentials enriched with delivery contacts."""
        self.premium.resolve_role(user_id)
        user = self.ledger.get_user(user_id)
        entries = []
        for tx in self.ledger.history(user_id, limit=len(self.storage.transactions) or 1).entries:
            credentials = tx.details.get("credentials")
            if credentials:
                enriched = []
                for credential in credentials:
                    record = self.storage.stock.get(UUID(str(credential.get("stock_id")))) if credential.get("stock_id") else None
                    if record is not None:
                        provider = self.storage.users.get(record["provider_id"])
                        credential = {
                            **credential,
                            "client_name": record["client_name"],
                            "client_phone": record["client_phone"],
                            "provider_name": provider["username"] if provider else None,
                            "provider_phone": provider["phone"] if provider else None,
                        }
                    enriched.append(credential)
                tx = tx.model_copy(update={"details": {**tx.details, "credentials": enriched}})
            entries.append(tx)
        return ProfileResponse(user=user, transactions=entries)

    def list_users(self) -> list[User]:
        rows = sorted(self.storage.users.values(), key=lambda u: u["created_at"])
        return [User(**u) for u in rows]

    def referred_users(self, referral_code: str) -> list[User]:
        return referred_users(self.storage, referral_code)

    def pending_users(self) -> list[User]:
        rows = [u for u in self.storage.users.values() if u["role"] == Role.PENDING or not u["is_approved"]]
        rows.sort(key=lambda u: u["created_at"])
        return [User(**u) for u in rows]

    def apply_supplier(self, user_id: UUID, referral_code: str) -> User:
        code = (referral_code or "").strip().upper()
        if not code:
            raise InvalidInputError("A referral code is required")
        cost = to_money(self.settings.SUPPLIER_APPLICATION_COST)

        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            if user["role"] == Role.PENDING:
                raise DuplicateRequestError("An application is already pending")

            referrer_id = None
            if code != self.settings.SYSTEM_REFERRAL_CODE:
                referrer = self.storage.user_by_referral_code(code)
                if referrer is None:
                    raise InvalidInputError("Referral code does not exist")
                if referrer["id"] == user_id:
                    raise InvalidInputError("You cannot use your own referral code")
                referrer_id = referrer["id"]

            self.ledger.require_funds(user_id, cost)
            self.ledger.post(
                user_id,
                direction=Direction.DEBIT,
                kind=TransactionKind.SUPPLIER_APPLICATION,
                amount=cost,
                description="Distributor rank purchase",
                details={"product_name": "Distributor rank", "provider_name": "System"},
            )
            user.update(role=Role.PENDING, is_approved=False, referred_by_user_id=referrer_id)

        logger.info("User %s applied for distributor rank", user_id)
        self.events.emit_all(PENDING_USERS_UPDATED, USERS_UPDATED)
        self.events.emit(
            TRANSACTION_APPROVED, {"message": "Payment received, application submitted"}, user_id=user_id,
        )
        return User(**user)

    def _pending_applicant(self, user_id: UUID) -> dict:
        user = self.ledger.get_user_row(user_id)
        if user["role"] != Role.PENDING:
            raise InvalidInputError(f"User {user_id} has no pending application")
        return user

    def cancel_supplier_application(self, user_id: UUID) -> User:
        with self.storage.atomic():
            user = self._pending_applicant(user_id)
            user.update(role=Role.STANDARD, is_approved=True)
        self.events.emit(PENDING_USERS_UPDATED)
        return User(**user)

    def approve_application(self, user_id: UUID) -> User:
        with self.storage.atomic():
            user = self._pending_applicant(user_id)
            user.update(role=Role.DISTRIBUTOR, is_approved=True)
        self.events.emit_all(PENDING_USERS_UPDATED, USERS_UPDATED)
        self.events.emit(
            APPLICATION_RESULT, {"status": "approved", "referral_code": user["referral_code"]}, user_id=user_id,
        )
        return User(**user)

    def reject_application(self, user_id: UUID) -> User:
        with self.storage.atomic():
            user = self._pending_applicant(user_id)
            user.update(role=Role.STANDARD, is_approved=True)
        self.events.emit(PENDING_USERS_UPDATED)
        self.events.emit(APPLICATION_RESULT, {"status": "rejected"}, user_id=user_id)
        return User(**user)

    def set_ban(self, user_id: UUID, banned: bool) -> User:
        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            if user["role"] == Role.ADMIN and banned:
                raise ForbiddenOperationError("The administrator account cannot be banned")
            user["is_banned"] = bool(banned)
        message = "Your account has been suspended" if banned else "Your account has been reactivated"
        self.events.emit(USER_BAN_STATUS_UPDATE, {"is_banned": bool(banned), "message": message}, user_id=user_id)
        self.events.emit(USERS_UPDATED)
        return User(**user)

    def update_user(
        self,
        user_id: UUID,
        role: Optional[str] = None,
        discount_percentage: Optional[int] = None,
        balance_change: Optional[Decimal] = None,
    ) -> User:
        """
        Admin edit of a user's role, discount and balance.

        A non-zero balance change is posted as an ADJUSTMENT row so the ledger
        still sums to the balance; a debit cannot take the balance below zero.
        """
        new_role = None
        if role is not None:
            try:
                new_role = Role(role)
            except ValueError:
                raise InvalidInputError(f"Unknown role {role!r}")
            if new_role == Role.PENDING:
                raise InvalidInputError("Supplier applications go through the application flow")
        if discount_percentage is not None and not 0 <= discount_percentage <= 100:
            raise InvalidInputError("Discount must be between 0 and 100")
        change = to_money(balance_change) if balance_change is not None else Decimal("0.00")

        posted = False
        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            if new_role is not None and new_role != user["role"]:
                if user["role"] == Role.ADMIN:
                    raise ForbiddenOperationError("The administrator role cannot be changed")
                user["role"] = new_role
                if new_role not in PREMIUM_ROLES:
                    user["premium_expires_at"] = None
            if discount_percentage is not None:
                user["discount_percentage"] = discount_percentage
            if change:
                direction = Direction.CREDIT if change > 0 else Direction.DEBIT
                if direction == Direction.DEBIT:
                    self.ledger.require_funds(user_id, -change)
                self.ledger.post(
                    user_id,
                    direction=direction,
                    kind=TransactionKind.ADJUSTMENT,
                    amount=abs(change),
                    description="Balance adjustment by administrator",
                )
                posted = True

        logger.info("Updated user %s (role=%s, discount=%s, balance change=%s)", user_id, role, discount_percentage, change)
        if posted:
            self.events.emit_all(USERS_UPDATED, TRANSACTIONS_UPDATED)
        else:
            self.events.emit(USERS_UPDATED)
        return User(**self.ledger.get_user_row(user_id))

    def delete_user(self, user_id: UUID) -> None:
        """Remove a user with their stock, orders, products and withdrawals. Ledger rows are kept."""
        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            if user["role"] == Role.ADMIN:
                raise ForbiddenOperationError("The administrator account cannot be deleted")

            product_ids = {pid for pid, p in self.storage.products.items() if p["creator_user_id"] == user_id}
            self.storage.stock = {
                sid: s for sid, s in self.storage.stock.items()
                if s["provider_id"] != user_id and s["product_id"] not in product_ids
            }
            self.storage.orders = {
                oid: o for oid, o in self.storage.orders.items()
                if user_id not in (o["buyer_user_id"], o["provider_user_id"])
            }
            for product_id in product_ids:
                del self.storage.products[product_id]
            self.storage.withdrawals = {
                wid: w for wid, w in self.storage.withdrawals.items() if w["user_id"] != user_id
            }
            for product in self.storage.products.values():
                self.stock.recompute(product["id"])
            if user.get("referral_code"):
                self.storage.referral_index.pop(user["referral_code"], None)
            del self.storage.users[user_id]

        logger.info("Deleted user %s", user_id)
        self.events.emit_all(USERS_UPDATED, PRODUCTS_UPDATED)

    # --- products and stock ----------------------------------------------------------

    def create_product(self, request: CreateProductRequest) -> Product:
        with self.storage.atomic():
            self.ledger.get_user_row(request.creator_user_id)
            row = request.model_dump(exclude={"credentials"})
            row.update(
                id=uuid4(),
                price_standard=to_money(request.price_standard),
                stock=0,
                publication_end_date=None,
                created_at=self.clock(),
            )
            for key in ("price_premium", "price_renewal_standard", "price_renewal_premium"):
                if row[key] is not None:
                    row[key] = to_money(row[key])
            self.storage.products[row["id"]] = row
            if request.credentials:
                self.stock.add_stock(row["id"], request.creator_user_id, request.credentials)

        logger.info("Product %s created by %s", row["name"], request.creator_user_id)
        self.events.emit(PRODUCTS_UPDATED)
        return Product(**row)

    def pay_publication(self, user_id: UUID, product_id: UUID, months: int, amount: Decimal) -> Product:
        amount = to_money(amount)
        if months < 1 or amount < 0:
            raise InvalidInputError("Months must be at least 1 and the amount non-negative")

        with self.storage.atomic():
            product = self._owned_product(product_id, user_id)
            self.ledger.require_funds(user_id, amount)

            now = self.clock()
            current_end = product.get("publication_end_date")
            start = current_end if current_end is not None and current_end > now else now
            end = add_months(start, months)

            self.ledger.post(
                user_id,
                direction=Direction.DEBIT,
                kind=TransactionKind.PUBLICATION_FEE,
                amount=amount,
                description=f"Publication of {product['name']} for {months} month(s)",
                details={"product_id": str(product_id), "product_name": product["name"], "months": months, "publication_end_date": end.isoformat()},
            )
            product["publication_end_date"] = end

        logger.info("Product %s published until %s", product_id, end.isoformat())
        self.events.emit_all(TRANSACTIONS_UPDATED, USERS_UPDATED, PRODUCTS_UPDATED)
        return Product(**product)

    def list_products(self, now: Optional[datetime] = None) -> list[Product]:
        """Products whose publication window is still open."""
        now = now or self.clock()
        rows = [
            p for p in self.storage.products.values()
            if p.get("publication_end_date") is not None and p["publication_end_date"] > now
        ]
        rows.sort(key=lambda p: p["created_at"], reverse=True)
        return [Product(**p) for p in rows]

    def provider_products(self, provider_id: UUID) -> list[Product]:
        rows = [p for p in self.storage.products.values() if p["creator_user_id"] == provider_id]
        rows.sort(key=lambda p: p["created_at"], reverse=True)
        return [Product(**p) for p in rows]

    def add_stock(self, product_id: UUID, provider_id: UUID, items: list[dict]) -> list[StockRecord]:
        self._owned_product(product_id, provider_id)
        records = self.stock.add_stock(product_id, provider_id, items)
        self.events.emit(PRODUCTS_UPDATED)
        return records

    def publish_stock(self, stock_id: UUID) -> StockRecord:
        record = self.stock.publish(stock_id)
        self.events.emit(PRODUCTS_UPDATED)
        return record

    def update_stock(self, stock_id: UUID, data: dict) -> StockRecord:
        record = self.stock.update_payload(stock_id, data)
        self.events.emit(PRODUCTS_UPDATED)
        return record

    def delete_stock(self, stock_id: UUID) -> None:
        self.stock.delete(stock_id)
        self.events.emit(PRODUCTS_UPDATED)

    def record_delivery(self, stock_ids: list[UUID], client_name: str, client_phone: str) -> int:
        updated = self.stock.record_delivery(stock_ids, client_name, client_phone)
        self.events.emit(TRANSACTIONS_UPDATED)
        return updated

    # --- purchases -------------------------------------------------------------

    def unit_price(self, user: dict, product: dict) -> Decimal:
        """Tier price for the buyer's role, less the buyer's personal discount."""
        base = product["price_standard"]
        if user["role"] in PREMIUM_ROLES and product.get("price_premium") is not None:
            base = product["price_premium"]
        discount = Decimal(min(max(int(user.get("discount_percentage") or 0), 0), 100))
        return to_money(Decimal(base) * (Decimal(100) - discount) / Decimal(100))

    def renewal_unit_price(self, user: dict, product: dict) -> Optional[Decimal]:
        if user["role"] in PREMIUM_ROLES and product.get("price_renewal_premium") is not None:
            return product["price_renewal_premium"]
        return product.get("price_renewal_standard")

    def purchase(self, user_id: UUID, product_id: UUID, quantity: int = 1) -> PurchaseResponse:
        if quantity < 1:
            raise InvalidInputError("Quantity must be at least 1")
        self.premium.resolve_role(user_id)

        order = None
        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            if user["is_banned"]:
                raise ForbiddenOperationError("Banned users cannot purchase")
            product = self._product(product_id)
            provider = self.ledger.get_user_row(product["creator_user_id"])

            unit_price = self.unit_price(user, product)
            total = to_money(unit_price * quantity)
            self.ledger.require_funds(user_id, total)

            on_request = product["delivery"] == DeliveryMode.ON_REQUEST
            credentials: list[dict] = []
            stock_ids: list[UUID] = []
            if not on_request:
                for unit in self.stock.allocate(product_id, quantity, user_id, unit_price):
                    stock_ids.append(unit.stock_id)
                    credentials.append({"stock_id": str(unit.stock_id), **unit.payload})

            now = self.clock()
            expires_at = now + timedelta(days=parse_duration_days(product["duration"], self.settings.DEFAULT_DURATION_DAYS))
            buyer_tx = self.ledger.post(
                user_id,
                direction=Direction.DEBIT,
                kind=TransactionKind.PURCHASE,
                amount=total,
                description=f"Purchase of {product['name']} ({quantity}x)",
                details={
                    "product_id": str(product_id),
                    "product_name": product["name"],
                    "platform": product["platform"],
                    "plan_type": product.get("plan_type"),
                    "duration": product["duration"],
                    "delivery": product["delivery"].value,
                    "quantity": quantity,
                    "unit_price": str(unit_price),
                    "credentials": credentials,
                    "purchased_at": now.isoformat(),
                    "expiration_date": expires_at.isoformat(),
                    "is_renewable": product["is_renewable"],
                    "provider_name": provider["username"],
                    "instructions": product.get("instructions"),
                },
                provider_id=provider["id"],
                stock_ids=stock_ids,
            )
            self.ledger.post(
                provider["id"],
                direction=Direction.CREDIT,
                kind=TransactionKind.SALE,
                amount=total,
                description=f"Sale: {product['name']} ({user['username']})",
                details={"product_id": str(product_id), "product_name": product["name"], "quantity": quantity, "source_username": user["username"]},
                counterparty_id=user_id,
                related_transaction_id=buyer_tx.id,
                stock_ids=stock_ids,
            )
            if on_request:
                order = {
                    "id": uuid4(),
                    "purchase_id": buyer_tx.id,
                    "buyer_user_id": user_id,
                    "provider_user_id": provider["id"],
                    "product_id": product_id,
                    "quantity": quantity,
                    "total_price": total,
                    "status": "PENDING",
                    "created_at": now,
                }
                self.storage.orders[order["id"]] = order
            new_balance = user["balance"]

        logger.info("User %s bought %dx %s for %s", user_id, quantity, product_id, total)
        if order is not None:
            self.events.emit(ORDERS_UPDATED)
        self.events.emit_all(TRANSACTIONS_UPDATED, PRODUCTS_UPDATED, USERS_UPDATED)
        self.events.emit(
            TRANSACTION_APPROVED,
            {"transaction_id": buyer_tx.id, "amount": str(total), "message": f"Your purchase of {product['name']} is complete"},
            user_id=user_id,
        )
        return PurchaseResponse(
            transaction=buyer_tx,
            credentials=credentials,
            new_balance=new_balance,
            order=Order(**order) if order else None,
            message="Purchase completed",
        )

    def renew(self, user_id: UUID, purchase_ref, months: int) -> PurchaseResponse:
        if months < 1:
            raise InvalidInputError("Months must be at least 1")
        self.premium.resolve_role(user_id)

        with self.storage.atomic():
            user = self.ledger.get_user_row(user_id)
            row = self.ledger.find_row(user_id, purchase_ref)
            if row is None or row["direction"] != Direction.DEBIT or row["kind"] not in PURCHASE_KINDS:
                raise NotFoundError(f"Purchase {purchase_ref} not found")
            product_id = row["details"].get("product_id")
            try:
                product = self.storage.products.get(UUID(str(product_id))) if product_id else None
            except ValueError:
                product = None
            if product is None:
                raise NotFoundError("The purchased product no longer exists")
            if not product["is_renewable"]:
                raise InvalidInputError(f"{product['name']} cannot be renewed")
            monthly = self.renewal_unit_price(user, product)
            if monthly is None:
                raise InvalidInputError(f"{product['name']} has no renewal price")

            quantity = int(row["details"].get("quantity") or 1)
            total = to_money(Decimal(monthly) * months * quantity)
            self.ledger.require_funds(user_id, total)

            now = self.clock()
            current = row["details"].get("expiration_date")
            current_expiry = datetime.fromisoformat(current) if current else None
            start = current_expiry if current_expiry is not None and current_expiry > now else now
            new_expiry = add_months(start, months)

            details = copy.deepcopy(row["details"])
            for key in ("support_message", "support_date", "correction_message", "correction_date", "proposed_credentials", "refund_amount", "refund_transaction_id"):
                details.pop(key, None)
            details.update(
                months=months,
                renewal_of=row["id"],
                expiration_date=new_expiry.isoformat(),
                renewal_unit_price=str(to_money(monthly)),
            )
            renewal_tx = self.ledger.post(
                user_id,
                direction=Direction.DEBIT,
                kind=TransactionKind.RENEWAL,
                amount=total,
                description=f"Renewal: {product['name']} ({months} month(s))",
                details=details,
                provider_id=product["creator_user_id"],
                related_transaction_id=row["id"],
            )
            self.ledger.update_transaction(row["id"], details_patch={"expiration_date": new_expiry.isoformat()})

            provider = self.storage.users.get(product["creator_user_id"])
            if provider is not None:
                self.ledger.post(
                    provider["id"],
                    direction=Direction.CREDIT,
                    kind=TransactionKind.RENEWAL_SALE,
                    amount=total,
                    description=f"Renewal: {product['name']} ({user['username']})",
                    details={"product_id": str(product["id"]), "product_name": product["name"], "months": months, "source_username": user["username"]},
                    counterparty_id=user_id,
                    related_transaction_id=renewal_tx.id,
                )
            else:
                logger.warning("Provider of product %s is gone; renewal %s has no sale row", product["id"], renewal_tx.id)
            new_balance = user["balance"]

        self.events.emit_all(TRANSACTIONS_UPDATED, USERS_UPDATED)
        return PurchaseResponse(
            transaction=renewal_tx,
            credentials=renewal_tx.details.get("credentials", []),
            new_balance=new_balance,
            message="Renewal completed",
        )

    # --- provider views -----------------------------------------------------------

    def provider_sales(self, provider_id: UUID) -> list[ProviderSale]:
        """Sold stock of a provider grouped per buyer, product and sale moment."""
        groups: dict[tuple, list[dict]] = {}
        for record in self.storage.stock.values():
            if record["provider_id"] == provider_id and record["is_sold"]:
                key = (record["sold_at"], record["buyer_id"], record["product_id"])
                groups.setdefault(key, []).append(record)

        sales = []
        for (sold_at, buyer_id, product_id), records in groups.items():
            product = self.storage.products.get(product_id)
            buyer = self.storage.users.get(buyer_id)
            if product is None or buyer is None:
                continue
            payload = records[0]["payload"]
            unit_price = product["price_standard"]
            if payload.get("price_sold_per_unit"):
                unit_price = to_money(payload["price_sold_per_unit"])
            quantity = sum(int(r["payload"].get("quantity", 1)) for r in records)
            sales.append(ProviderSale(
                product_id=product_id,
                product_name=product["name"],
                platform=product["platform"],
                duration=product["duration"],
                buyer_id=buyer_id,
                buyer_name=buyer["username"],
                buyer_phone=buyer.get("phone"),
                buyer_role=buyer["role"],
                quantity=quantity,
                unit_price=unit_price,
                total=to_money(unit_price * quantity),
                sold_at=sold_at,
                credentials={"username": payload.get("username", "N/A"), "password": payload.get("password", "N/A")},
            ))
        sales.sort(key=lambda s: s.sold_at, reverse=True)
        return sales

    def provider_orders(self, provider_id: UUID) -> list[ProviderOrder]:
        orders = []
        for order in self.storage.orders.values():
            if order["provider_user_id"] != provider_id:
                continue
            product = self.storage.products.get(order["product_id"])
            buyer = self.storage.users.get(order["buyer_user_id"])
            if product is None or buyer is None:
                continue
            orders.append(ProviderOrder(
                id=order["id"],
                purchase_id=order["purchase_id"],
                product_name=product["name"],
                buyer_name=buyer["username"],
                buyer_role=buyer["role"],
                buyer_phone=buyer.get("phone"),
                quantity=order["quantity"],
                status=order["status"],
                created_at=order["created_at"],
            ))
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def financial_transactions(self, provider_id: UUID) -> list[Transaction]:
        self.ledger.get_user_row(provider_id)
        return [
            Transaction(**row) for row in self.storage.user_transactions(provider_id)
            if row["status"] == TransactionStatus.COMPLETED and row["kind"] in FINANCIAL_KINDS
        ]

    # --- settings ---------------------------------------------------------------

    def platform_config(self) -> PlatformConfig:
        store = self.settings_store
        return PlatformConfig(
            exchange_rate=store.exchange_rate,
            withdrawal_fee=store.withdrawal_fee,
            yape_min=store.yape_min,
            binance_min=store.binance_min,
        )

    def set_exchange_rate(self, rate) -> PlatformConfig:
        self.settings_store.set_exchange_rate(rate)
        self.events.emit(SETTINGS_UPDATED)
        return self.platform_config()

    def set_withdrawal_fee(self, fee) -> PlatformConfig:
        self.settings_store.set_withdrawal_fee(fee)
        self.events.emit(SETTINGS_UPDATED)
        return self.platform_config()

    def set_recharge_limits(self, yape_min, binance_min) -> PlatformConfig:
        self.settings_store.set_recharge_limits(yape_min, binance_min)
        self.events.emit(SETTINGS_UPDATED)
        return self.platform_config()
