import logging
from uuid import UUID

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .errors import (
    AlreadyProcessedError,
    DuplicateRequestError,
    ForbiddenOperationError,
    InsufficientBalanceError,
    InsufficientStockError,
    InvalidInputError,
    LedgerServiceError,
    NotFoundError,
    NothingToRefundError,
)
from .marketplace import Marketplace
from .models import (
    AddStockRequest,
    BanRequest,
    CancelWithdrawalRequest,
    CreateProductRequest,
    DeliveryConfirmationRequest,
    ExchangeRateRequest,
    HandleSupportRequest,
    LedgerHistoryResponse,
    ManageWithdrawalRequest,
    OperationResult,
    PlatformConfig,
    PremiumResponse,
    PremiumUpgradeRequest,
    Product,
    ProfileResponse,
    ProportionalRefundRequest,
    ProviderOrder,
    ProviderSale,
    PublicationRequest,
    PurchaseRequest,
    PurchaseResponse,
    RechargeLimitsRequest,
    RechargeRequest,
    RegisterRequest,
    RenewRequest,
    RepairReport,
    StockRecord,
    SupplierApplicationRequest,
    SupportApproveRequest,
    SupportFixRequest,
    SupportTicketRequest,
    Transaction,
    TransactionRefRequest,
    UpdateStockRequest,
    UpdateUserRequest,
    User,
    UserIdRequest,
    WithdrawalAction,
    WithdrawalFeeRequest,
    WithdrawalRequest,
    WithdrawRequest,
)

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="Balances, stock allocation, commissions, refunds and withdrawals for a credential marketplace",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

marketplace = Marketplace(settings=settings)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenOperationError: status.HTTP_403_FORBIDDEN,
    DuplicateRequestError: status.HTTP_409_CONFLICT,
    AlreadyProcessedError: status.HTTP_409_CONFLICT,
    InsufficientStockError: status.HTTP_409_CONFLICT,
    InsufficientBalanceError: status.HTTP_400_BAD_REQUEST,
    NothingToRefundError: status.HTTP_400_BAD_REQUEST,
    InvalidInputError: status.HTTP_400_BAD_REQUEST,
}


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    content = {"detail": str(exc), "type": type(exc).__name__}
    if isinstance(exc, InsufficientBalanceError) and exc.shortfall is not None:
        content["shortfall"] = str(exc.shortfall)
    if isinstance(exc, InsufficientStockError):
        content.update(requested=exc.requested, available=exc.available)
    if isinstance(exc, NothingToRefundError):
        content["days_remaining"] = exc.days_remaining
    logger.info("%s %s -> %d %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content=content)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credential-market-ledger", "version": settings.APP_VERSION}


@app.get("/api/config", response_model=PlatformConfig, tags=["System"])
def get_config() -> PlatformConfig:
    return marketplace.platform_config()


# --- users -------------------------------------------------------------------------

@app.post("/register", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register(request: RegisterRequest) -> User:
    return marketplace.register(request.username, request.email, request.phone, request.referral_code_used)


@app.get("/profile/{user_id}", response_model=ProfileResponse, tags=["Users"])
def get_profile(user_id: UUID) -> ProfileResponse:
    return marketplace.get_profile(user_id)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    return marketplace.ledger.history(user_id, limit, offset)


@app.post("/user/apply-supplier", response_model=User, tags=["Users"])
def apply_supplier(request: SupplierApplicationRequest) -> User:
    return marketplace.apply_supplier(request.user_id, request.referral_code)


@app.post("/user/cancel-supplier-application", response_model=User, tags=["Users"])
def cancel_supplier_application(request: UserIdRequest) -> User:
    return marketplace.cancel_supplier_application(request.user_id)


@app.post("/user/upgrade-to-premium", response_model=PremiumResponse, tags=["Users"])
def upgrade_to_premium(request: PremiumUpgradeRequest) -> PremiumResponse:
    return marketplace.premium.upgrade(request.user_id, request.amount, request.months)


# --- recharges -----------------------------------------------------------------------

@app.post("/transaction/record", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Recharges"])
def record_recharge(request: RechargeRequest) -> Transaction:
    return marketplace.ledger.request_recharge(request.user_id, request.amount, request.method)


@app.post("/transaction/cancel", response_model=Transaction, tags=["Recharges"])
def cancel_recharge(request: TransactionRefRequest) -> Transaction:
    return marketplace.ledger.cancel_recharge(request.user_id, request.transaction_id)


@app.get("/admin/transactions", response_model=list[Transaction], tags=["Recharges"])
def pending_recharges() -> list[Transaction]:
    return marketplace.ledger.pending_recharges()


@app.post("/admin/transaction/approve", response_model=Transaction, tags=["Recharges"])
def approve_recharge(request: TransactionRefRequest) -> Transaction:
    return marketplace.ledger.approve_recharge(request.user_id, request.transaction_id)


@app.post("/admin/transaction/reject", response_model=Transaction, tags=["Recharges"])
def reject_recharge(request: TransactionRefRequest) -> Transaction:
    return marketplace.ledger.reject_recharge(request.user_id, request.transaction_id)


# --- products and stock ------------------------------------------------------------------

@app.post("/products", response_model=Product, status_code=status.HTTP_201_CREATED, tags=["Products"])
def create_product(request: CreateProductRequest) -> Product:
    return marketplace.create_product(request)


@app.get("/products", response_model=list[Product], tags=["Products"])
def list_products() -> list[Product]:
    return marketplace.list_products()


@app.get("/products/supplier/{provider_id}", response_model=list[Product], tags=["Products"])
def provider_products(provider_id: UUID) -> list[Product]:
    return marketplace.provider_products(provider_id)


@app.post("/user/pay-publication", response_model=Product, tags=["Products"])
def pay_publication(request: PublicationRequest) -> Product:
    return marketplace.pay_publication(request.user_id, request.product_id, request.months, request.amount)


@app.get("/supplier/inventory/{provider_id}", response_model=list[StockRecord], tags=["Stock"])
def provider_inventory(provider_id: UUID) -> list[StockRecord]:
    return marketplace.stock.inventory(provider_id)


@app.post("/supplier/stock/add", response_model=list[StockRecord], status_code=status.HTTP_201_CREATED, tags=["Stock"])
def add_stock(request: AddStockRequest) -> list[StockRecord]:
    return marketplace.add_stock(request.product_id, request.provider_id, request.items)


@app.put("/supplier/stock/{stock_id}", response_model=StockRecord, tags=["Stock"])
def update_stock(stock_id: UUID, request: UpdateStockRequest) -> StockRecord:
    return marketplace.update_stock(stock_id, request.data)


@app.post("/supplier/stock/{stock_id}/publish", response_model=StockRecord, tags=["Stock"])
def publish_stock(stock_id: UUID) -> StockRecord:
    return marketplace.publish_stock(stock_id)


@app.delete("/supplier/stock/{stock_id}", response_model=OperationResult, tags=["Stock"])
def delete_stock(stock_id: UUID) -> OperationResult:
    marketplace.delete_stock(stock_id)
    return OperationResult(message="Stock record deleted")


@app.post("/user/delivery-confirmation", response_model=OperationResult, tags=["Stock"])
def delivery_confirmation(request: DeliveryConfirmationRequest) -> OperationResult:
    updated = marketplace.record_delivery(request.stock_ids, request.client_name, request.client_phone)
    return OperationResult(message="Delivery recorded", data={"updated": updated})


# --- purchases -------------------------------------------------------------------

@app.post("/user/purchase", response_model=PurchaseResponse, tags=["Purchases"])
def purchase(request: PurchaseRequest) -> PurchaseResponse:
    return marketplace.purchase(request.user_id, request.product_id, request.quantity)


@app.post("/user/purchase/renew", response_model=PurchaseResponse, tags=["Purchases"])
def renew(request: RenewRequest) -> PurchaseResponse:
    return marketplace.renew(request.user_id, request.purchase_id, request.months)


# --- support -------------------------------------------------------------------

@app.post("/user/send-to-support", response_model=Transaction, tags=["Support"])
def send_to_support(request: SupportTicketRequest) -> Transaction:
    return marketplace.support.open_ticket(request.user_id, request.transaction_id, request.message)


@app.post("/supplier/handle-support", response_model=Transaction, tags=["Support"])
def handle_support(request: HandleSupportRequest) -> Transaction:
    return marketplace.support.resolve(request.purchase_id, request.action, request.provider_id)


@app.post("/supplier/support/fix", response_model=Transaction, tags=["Support"])
def propose_fix(request: SupportFixRequest) -> Transaction:
    return marketplace.support.propose_fix(
        request.purchase_id, request.correction_message, request.new_credentials, request.provider_id,
    )


@app.post("/user/support/approve", response_model=Transaction, tags=["Support"])
def approve_fix(request: SupportApproveRequest) -> Transaction:
    return marketplace.support.approve_fix(request.user_id, request.purchase_id)


@app.post("/supplier/refund/proportional", response_model=list[Transaction], tags=["Support"])
def proportional_refund(request: ProportionalRefundRequest) -> list[Transaction]:
    provider_tx, buyer_tx = marketplace.support.proportional_refund(
        request.provider_id, request.buyer_user_id, request.buyer_transaction_id, request.amount,
    )
    return [provider_tx, buyer_tx]


# --- provider views -------------------------------------------------------------------

@app.get("/supplier/sales/{provider_id}", response_model=list[ProviderSale], tags=["Providers"])
def provider_sales(provider_id: UUID) -> list[ProviderSale]:
    return marketplace.provider_sales(provider_id)


@app.get("/supplier/orders/{provider_id}", response_model=list[ProviderOrder], tags=["Providers"])
def provider_orders(provider_id: UUID) -> list[ProviderOrder]:
    return marketplace.provider_orders(provider_id)


@app.get("/supplier/financial-transactions/{provider_id}", response_model=list[Transaction], tags=["Providers"])
def financial_transactions(provider_id: UUID) -> list[Transaction]:
    return marketplace.financial_transactions(provider_id)


# --- withdrawals ---------------------------------------------------------------------

@app.post("/supplier/withdraw", response_model=WithdrawalRequest, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def request_withdrawal(request: WithdrawRequest) -> WithdrawalRequest:
    return marketplace.withdrawals.request(request.user_id, request.amount)


@app.post("/supplier/withdraw/cancel", response_model=WithdrawalRequest, tags=["Withdrawals"])
def cancel_withdrawal(request: CancelWithdrawalRequest) -> WithdrawalRequest:
    return marketplace.withdrawals.cancel(request.user_id, request.withdrawal_id)


@app.get("/supplier/withdrawals/{user_id}", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
def user_withdrawals(user_id: UUID) -> list[WithdrawalRequest]:
    return marketplace.withdrawals.list_for_user(user_id)


@app.get("/admin/withdrawals", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
def all_withdrawals() -> list[WithdrawalRequest]:
    return marketplace.withdrawals.list_all()


@app.post("/admin/withdraw/manage", response_model=WithdrawalRequest, tags=["Withdrawals"])
def manage_withdrawal(request: ManageWithdrawalRequest) -> WithdrawalRequest:
    if request.action == WithdrawalAction.APPROVE:
        return marketplace.withdrawals.approve(request.withdrawal_id)
    return marketplace.withdrawals.reject(request.withdrawal_id)


# --- admin -----------------------------------------------------------------------

@app.get("/admin/users", response_model=list[User], tags=["Admin"])
def list_users() -> list[User]:
    return marketplace.list_users()


@app.get("/admin/pending-users", response_model=list[User], tags=["Admin"])
def pending_users() -> list[User]:
    return marketplace.pending_users()


@app.get("/admin/referrals/{referral_code}", response_model=list[User], tags=["Admin"])
def referred_users(referral_code: str) -> list[User]:
    return marketplace.referred_users(referral_code)


@app.post("/admin/user/approve", response_model=User, tags=["Admin"])
def approve_application(request: UserIdRequest) -> User:
    return marketplace.approve_application(request.user_id)


@app.post("/admin/user/reject", response_model=User, tags=["Admin"])
def reject_application(request: UserIdRequest) -> User:
    return marketplace.reject_application(request.user_id)


@app.post("/admin/user/toggle-ban", response_model=User, tags=["Admin"])
def toggle_ban(request: BanRequest) -> User:
    return marketplace.set_ban(request.user_id, request.banned)


@app.post("/admin/user/update", response_model=User, tags=["Admin"])
def update_user(request: UpdateUserRequest) -> User:
    return marketplace.update_user(
        request.user_id,
        role=request.role,
        discount_percentage=request.discount_percentage,
        balance_change=request.balance_change,
    )


@app.post("/admin/user/delete", response_model=OperationResult, tags=["Admin"])
def delete_user(request: UserIdRequest) -> OperationResult:
    marketplace.delete_user(request.user_id)
    return OperationResult(message="Account deleted")


@app.post("/admin/settings/exchange-rate", response_model=PlatformConfig, tags=["Admin"])
def set_exchange_rate(request: ExchangeRateRequest) -> PlatformConfig:
    return marketplace.set_exchange_rate(request.rate)


@app.post("/admin/settings/withdrawal-fee", response_model=PlatformConfig, tags=["Admin"])
def set_withdrawal_fee(request: WithdrawalFeeRequest) -> PlatformConfig:
    return marketplace.set_withdrawal_fee(request.fee)


@app.post("/admin/settings/recharge-limits", response_model=PlatformConfig, tags=["Admin"])
def set_recharge_limits(request: RechargeLimitsRequest) -> PlatformConfig:
    return marketplace.set_recharge_limits(request.yape_min, request.binance_min)


@app.post("/admin/maintenance/repair-transactions", response_model=RepairReport, tags=["Admin"])
def repair_transactions() -> RepairReport:
    return marketplace.ledger.repair_transactions()


if __name__ == "__main__":
    uvicorn.run("ledger.api:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
