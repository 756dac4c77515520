from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class Role(str, Enum):
    STANDARD = "STANDARD"
    DISTRIBUTOR = "DISTRIBUTOR"
    DISTRIBUTOR_PREMIUM = "DISTRIBUTOR_PREMIUM"
    PROVIDER = "PROVIDER"
    PROVIDER_PREMIUM = "PROVIDER_PREMIUM"
    ADMIN = "ADMIN"
    PENDING = "PENDING"


PREMIUM_ROLES = (Role.DISTRIBUTOR_PREMIUM, Role.PROVIDER_PREMIUM)


class Direction(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    SUPPORT = "SUPPORT"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    REFUNDED = "REFUNDED"


class TransactionKind(str, Enum):
    RECHARGE = "RECHARGE"
    PURCHASE = "PURCHASE"
    RENEWAL = "RENEWAL"
    SALE = "SALE"
    RENEWAL_SALE = "RENEWAL_SALE"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    REFUND_ISSUED = "REFUND_ISSUED"
    WITHDRAWAL = "WITHDRAWAL"
    WITHDRAWAL_REVERSAL = "WITHDRAWAL_REVERSAL"
    PREMIUM_UPGRADE = "PREMIUM_UPGRADE"
    SUPPLIER_APPLICATION = "SUPPLIER_APPLICATION"
    PUBLICATION_FEE = "PUBLICATION_FEE"
    ADJUSTMENT = "ADJUSTMENT"


# Buyer-side rows that the support workflow and renewals operate on.
PURCHASE_KINDS = (TransactionKind.PURCHASE, TransactionKind.RENEWAL)
SALE_KINDS = (TransactionKind.SALE, TransactionKind.RENEWAL_SALE)


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class StockStatus(str, Enum):
    UNPUBLISHED = "unpublished"
    PUBLISHED = "published"


class DeliveryMode(str, Enum):
    AUTOMATIC = "AUTOMATIC"
    ON_REQUEST = "ON_REQUEST"


class RechargeMethod(str, Enum):
    YAPE = "YAPE"
    BINANCE = "BINANCE"


class SupportAction(str, Enum):
    COMPLETE = "complete"
    REFUND = "refund"


class WithdrawalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# --- Entities ---------------------------------------------------------------

class User(BaseModel):
    id: UUID
    username: str
    email: str
    phone: Optional[str] = None
    balance: Decimal = Decimal("0.00")
    role: Role = Role.STANDARD
    discount_percentage: int = 0
    referral_code: Optional[str] = None
    referred_by_user_id: Optional[UUID] = None
    premium_expires_at: Optional[datetime] = None
    is_banned: bool = False
    is_approved: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Product(BaseModel):
    id: UUID
    name: str
    platform: str
    creator_user_id: UUID
    description: Optional[str] = None
    product_details: Optional[str] = None
    instructions: Optional[str] = None
    duration: str = "30 days"
    plan_type: Optional[str] = None
    delivery: DeliveryMode = DeliveryMode.AUTOMATIC
    is_renewable: bool = False
    price_standard: Decimal
    price_premium: Optional[Decimal] = None
    price_renewal_standard: Optional[Decimal] = None
    price_renewal_premium: Optional[Decimal] = None
    stock: int = 0
    publication_end_date: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StockRecord(BaseModel):
    id: UUID
    product_id: UUID
    provider_id: UUID
    payload: dict = Field(default_factory=dict)
    is_sold: bool = False
    buyer_id: Optional[UUID] = None
    sold_at: Optional[datetime] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: str
    order_code: Optional[str] = None
    user_id: UUID
    direction: Direction
    kind: TransactionKind
    amount: Decimal
    status: TransactionStatus
    description: str
    details: dict = Field(default_factory=dict)
    provider_id: Optional[UUID] = None
    counterparty_id: Optional[UUID] = None
    related_transaction_id: Optional[str] = None
    stock_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WithdrawalRequest(BaseModel):
    id: UUID
    user_id: UUID
    amount_original: Decimal
    fee_rate: Decimal
    amount_final: Decimal
    status: WithdrawalStatus
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Order(BaseModel):
    id: UUID
    purchase_id: str
    buyer_user_id: UUID
    provider_user_id: UUID
    product_id: UUID
    quantity: int
    total_price: Decimal
    status: str = "PENDING"
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AllocatedUnit(BaseModel):
    stock_id: UUID
    payload: dict


class Event(BaseModel):
    name: str
    payload: dict = Field(default_factory=dict)
    user_id: Optional[UUID] = None
    emitted_at: datetime


# --- Requests ---------------------------------------------------------------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: Optional[str] = None
    referral_code_used: str = Field(..., description="Referral code of an existing user")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "username": "buyer01",
            "email": "buyer01@example.com",
            "phone": "5550001",
            "referral_code_used": "ABC123"
        }
    })


class RechargeRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    method: RechargeMethod = RechargeMethod.YAPE


class TransactionRefRequest(BaseModel):
    user_id: UUID
    transaction_id: str


class CreateProductRequest(BaseModel):
    name: str
    platform: str
    creator_user_id: UUID
    price_standard: Decimal = Field(..., gt=0)
    price_premium: Optional[Decimal] = None
    price_renewal_standard: Optional[Decimal] = None
    price_renewal_premium: Optional[Decimal] = None
    description: Optional[str] = None
    product_details: Optional[str] = None
    instructions: Optional[str] = None
    duration: str = "30 days"
    plan_type: Optional[str] = None
    delivery: DeliveryMode = DeliveryMode.AUTOMATIC
    is_renewable: bool = False
    credentials: list[dict] = Field(default_factory=list)


class PublicationRequest(BaseModel):
    user_id: UUID
    product_id: UUID
    months: int = Field(..., ge=1)
    amount: Decimal = Field(..., ge=0)


class AddStockRequest(BaseModel):
    product_id: UUID
    provider_id: UUID
    items: list[dict] = Field(..., min_length=1)


class UpdateStockRequest(BaseModel):
    data: dict


class DeliveryConfirmationRequest(BaseModel):
    stock_ids: list[UUID] = Field(..., min_length=1)
    client_name: str
    client_phone: str


class PurchaseRequest(BaseModel):
    user_id: UUID
    product_id: UUID
    quantity: int = Field(default=1, ge=1)


class RenewRequest(BaseModel):
    user_id: UUID
    purchase_id: str
    months: int = Field(..., ge=1)


class PremiumUpgradeRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    months: int = Field(..., ge=1)


class SupplierApplicationRequest(BaseModel):
    user_id: UUID
    referral_code: str


class SupportTicketRequest(BaseModel):
    user_id: UUID
    transaction_id: str
    message: str = Field(..., min_length=1)


class HandleSupportRequest(BaseModel):
    purchase_id: str
    action: SupportAction
    provider_id: Optional[UUID] = None


class SupportFixRequest(BaseModel):
    purchase_id: str
    correction_message: str = Field(..., min_length=1)
    new_credentials: Optional[list[dict]] = None
    provider_id: Optional[UUID] = None


class SupportApproveRequest(BaseModel):
    user_id: UUID
    purchase_id: str


class ProportionalRefundRequest(BaseModel):
    provider_id: UUID
    buyer_user_id: UUID
    buyer_transaction_id: str
    amount: Decimal = Field(..., gt=0)


class WithdrawRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)


class CancelWithdrawalRequest(BaseModel):
    user_id: UUID
    withdrawal_id: UUID


class ManageWithdrawalRequest(BaseModel):
    withdrawal_id: UUID
    action: WithdrawalAction


class UserIdRequest(BaseModel):
    user_id: UUID


class BanRequest(BaseModel):
    user_id: UUID
    banned: bool


class UpdateUserRequest(BaseModel):
    user_id: UUID
    role: Optional[str] = None
    discount_percentage: Optional[int] = None
    balance_change: Optional[Decimal] = None


class ExchangeRateRequest(BaseModel):
    rate: Decimal = Field(..., gt=0)


class WithdrawalFeeRequest(BaseModel):
    fee: Decimal = Field(..., ge=0, le=1)


class RechargeLimitsRequest(BaseModel):
    yape_min: Decimal = Field(..., ge=0)
    binance_min: Decimal = Field(..., ge=0)


# --- Responses --------------------------------------------------------------

class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal


class ProfileResponse(BaseModel):
    user: User
    transactions: list[Transaction]


class PurchaseResponse(BaseModel):
    transaction: Transaction
    credentials: list[dict]
    new_balance: Decimal
    order: Optional[Order] = None
    message: str


class RefundQuote(BaseModel):
    total_days: int
    days_used: int
    days_remaining: int
    amount: Decimal


class PremiumResponse(BaseModel):
    role: Role
    expires_at: datetime
    new_balance: Decimal
    transaction: Transaction


class RepairReport(BaseModel):
    fixed_order_codes: int = 0
    fixed_providers: int = 0
    marked_legacy: int = 0


class PlatformConfig(BaseModel):
    exchange_rate: Decimal
    withdrawal_fee: Decimal
    yape_min: Decimal
    binance_min: Decimal


class OperationResult(BaseModel):
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class ProviderSale(BaseModel):
    product_id: UUID
    product_name: str
    platform: str
    duration: str
    buyer_id: UUID
    buyer_name: str
    buyer_phone: Optional[str] = None
    buyer_role: Role
    quantity: int
    unit_price: Decimal
    total: Decimal
    sold_at: datetime
    credentials: dict = Field(default_factory=dict)


class ProviderOrder(BaseModel):
    id: UUID
    purchase_id: str
    product_name: str
    buyer_name: str
    buyer_role: Role
    buyer_phone: Optional[str] = None
    quantity: int
    status: str
    created_at: datetime
