import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import AccountService
from .config import Settings, get_settings
from .database import Database
from .errors import (
    ConstraintViolationError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidCaseError,
    InvalidPromoCodeError,
    LedgerServiceError,
    NotFoundOrAlreadyProcessedError,
    PromoCodeAlreadyUsedError,
    StorageFailureError,
)
from .logging import setup_logging
from .models import (
    AdjustBalanceRequest,
    ApplyPromoCodeRequest,
    CaseOpeningResponse,
    CaseOpeningView,
    CreatePromoCodeRequest,
    GrantBonusRequest,
    InventoryItem,
    LedgerEntry,
    LedgerHistoryResponse,
    OpenCaseRequest,
    PaymentRequestResponse,
    PaymentRequestView,
    PaymentStatus,
    PrizeSaleResponse,
    ProcessPaymentRequest,
    PromoCodeApplyResponse,
    PromoCodeView,
    PurchaseProductRequest,
    PurchaseResponse,
    PurchaseView,
    ReferralBonusResponse,
    ReferralCheckResponse,
    ReferredListResponse,
    RefundPurchaseRequest,
    RefundResponse,
    RegisterUserRequest,
    SellPrizeRequest,
    SubmitPaymentRequest,
    UserBalance,
    UserView,
)
from .notifications import LogNotifier, Notifier
from .payments import PaymentRequestService
from .promocodes import PromoCodeService
from .referrals import ReferralService
from .service import LedgerService
from .settlement import SettlementService

logger = structlog.get_logger(__name__)

ERROR_STATUS = [
    (InvalidAmountError, status.HTTP_400_BAD_REQUEST),
    (InvalidCaseError, status.HTTP_400_BAD_REQUEST),
    (PromoCodeAlreadyUsedError, status.HTTP_409_CONFLICT),
    (InvalidPromoCodeError, status.HTTP_400_BAD_REQUEST),
    (InsufficientFundsError, status.HTTP_409_CONFLICT),
    (NotFoundOrAlreadyProcessedError, status.HTTP_404_NOT_FOUND),
    (ConstraintViolationError, status.HTTP_409_CONFLICT),
]


@dataclass
class Services:
    settings: Settings
    db: Database
    ledger: LedgerService
    payments: PaymentRequestService
    referrals: ReferralService
    accounts: AccountService
    settlement: SettlementService
    promocodes: PromoCodeService


def build_services(settings: Settings, notifier: Optional[Notifier] = None) -> Services:
    notifier = notifier or LogNotifier()
    db = Database(settings.database_url, echo=settings.database_echo, busy_timeout=settings.sqlite_busy_timeout_seconds)
    ledger = LedgerService(db, currency=settings.currency)
    referrals = ReferralService(ledger, notifier)
    return Services(
        settings=settings,
        db=db,
        ledger=ledger,
        payments=PaymentRequestService(ledger, notifier),
        referrals=referrals,
        accounts=AccountService(referrals, settings.default_referral_percentage),
        settlement=SettlementService(ledger, referrals, notifier),
        promocodes=PromoCodeService(ledger, notifier),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    services: Services = Depends(get_services),
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    expected = services.settings.admin_token
    if expected is None:
        if services.settings.admin_open:
            return
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access is not configured")
    if x_admin_token is None or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "storefront-ledger"}


@router.post("/users", response_model=UserView, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, services: Services = Depends(get_services)) -> UserView:
    user, _ = services.accounts.register(request)
    return user


@router.get("/users/{user_id}", response_model=UserView, tags=["Users"])
def get_user(user_id: int, services: Services = Depends(get_services)) -> UserView:
    return services.accounts.get_user(user_id)


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: int, services: Services = Depends(get_services)) -> UserBalance:
    return services.ledger.get_balance(user_id)


@router.get("/users/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_transactions(
    user_id: int, limit: int = 50, offset: int = 0, services: Services = Depends(get_services)
) -> LedgerHistoryResponse:
    return services.ledger.history(user_id, limit, offset)


@router.post(
    "/users/{user_id}/adjustments",
    response_model=LedgerEntry,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def adjust_user_balance(
    user_id: int, request: AdjustBalanceRequest, services: Services = Depends(get_services)
) -> LedgerEntry:
    return services.ledger.adjust(user_id, request.amount, request.description)


@router.get("/users/{user_id}/inventory", response_model=list[InventoryItem], tags=["Inventory"])
def get_user_inventory(user_id: int, services: Services = Depends(get_services)) -> list[InventoryItem]:
    return services.settlement.list_inventory(user_id)


@router.delete("/users/{user_id}/inventory/{item_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Inventory"])
def delete_inventory_item(user_id: int, item_id: int, services: Services = Depends(get_services)) -> Response:
    services.settlement.delete_inventory_item(user_id, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/{user_id}/purchases", response_model=list[PurchaseView], tags=["Purchases"])
def get_user_purchases(user_id: int, services: Services = Depends(get_services)) -> list[PurchaseView]:
    return services.settlement.list_purchases(user_id)


@router.get("/users/{user_id}/case-openings", response_model=list[CaseOpeningView], tags=["Cases"])
def get_user_case_openings(user_id: int, services: Services = Depends(get_services)) -> list[CaseOpeningView]:
    return services.settlement.list_case_openings(user_id)


@router.get("/users/{user_id}/referrals", response_model=ReferredListResponse, tags=["Referrals"])
def get_user_referrals(user_id: int, services: Services = Depends(get_services)) -> ReferredListResponse:
    return services.referrals.list_referred(user_id)


@router.get("/referrals/check", response_model=ReferralCheckResponse, tags=["Referrals"])
def check_referral_code(code: str, services: Services = Depends(get_services)):
    result = services.referrals.check_code(code)
    if not result.is_valid:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=result.model_dump())
    return result


@router.post(
    "/referrals/{referral_id}/bonus",
    response_model=ReferralBonusResponse,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def grant_referral_bonus(
    referral_id: int, request: GrantBonusRequest, services: Services = Depends(get_services)
) -> ReferralBonusResponse:
    return services.referrals.grant_referral_bonus(referral_id, request.amount, request.event)


@router.post(
    "/payment-requests",
    response_model=PaymentRequestView,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
)
def submit_payment_request(
    request: SubmitPaymentRequest, services: Services = Depends(get_services)
) -> PaymentRequestView:
    return services.payments.submit(request.user_id, request.amount, request.payment_method_details)


@router.get(
    "/payment-requests",
    response_model=list[PaymentRequestView],
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def list_payment_requests(
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    services: Services = Depends(get_services),
) -> list[PaymentRequestView]:
    return services.payments.list_requests(status_filter)


@router.get("/payment-requests/{request_id}", response_model=PaymentRequestView, tags=["Payments"])
def get_payment_request(request_id: int, services: Services = Depends(get_services)) -> PaymentRequestView:
    return services.payments.get(request_id)


@router.post(
    "/payment-requests/{request_id}/approve",
    response_model=PaymentRequestResponse,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def approve_payment_request(
    request_id: int,
    request: Optional[ProcessPaymentRequest] = None,
    services: Services = Depends(get_services),
) -> PaymentRequestResponse:
    return services.payments.approve(request_id, request.admin_notes if request else None)


@router.post(
    "/payment-requests/{request_id}/reject",
    response_model=PaymentRequestResponse,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def reject_payment_request(
    request_id: int,
    request: Optional[ProcessPaymentRequest] = None,
    services: Services = Depends(get_services),
) -> PaymentRequestResponse:
    return services.payments.reject(request_id, request.admin_notes if request else None)


@router.post("/purchases", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED, tags=["Purchases"])
def purchase_product(request: PurchaseProductRequest, services: Services = Depends(get_services)) -> PurchaseResponse:
    return services.settlement.settle_purchase(request)


@router.post(
    "/purchases/{purchase_id}/refund",
    response_model=RefundResponse,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def refund_purchase(
    purchase_id: int, request: RefundPurchaseRequest, services: Services = Depends(get_services)
) -> RefundResponse:
    return services.settlement.refund_purchase(purchase_id, request)


@router.post("/case-openings", response_model=CaseOpeningResponse, status_code=status.HTTP_201_CREATED, tags=["Cases"])
def open_case(request: OpenCaseRequest, services: Services = Depends(get_services)) -> CaseOpeningResponse:
    return services.settlement.settle_case_opening(request)


@router.post("/case-openings/{case_opening_id}/sell", response_model=PrizeSaleResponse, tags=["Cases"])
def sell_case_prize(
    case_opening_id: int, request: SellPrizeRequest, services: Services = Depends(get_services)
) -> PrizeSaleResponse:
    return services.settlement.sell_case_prize(case_opening_id, request)


@router.post(
    "/promo-codes",
    response_model=PromoCodeView,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def create_promo_code(request: CreatePromoCodeRequest, services: Services = Depends(get_services)) -> PromoCodeView:
    return services.promocodes.create(request)


@router.post("/promo-codes/apply", response_model=PromoCodeApplyResponse, tags=["Promo codes"])
def apply_promo_code(request: ApplyPromoCodeRequest, services: Services = Depends(get_services)) -> PromoCodeApplyResponse:
    return services.promocodes.apply(request.user_id, request.code)


def setup_error_handlers(app: FastAPI) -> None:
    """Map ledger failures to status codes with a readable message and a machine code."""

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        for error_type, status_code in ERROR_STATUS:
            if isinstance(exc, error_type):
                return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})

        # StorageFailureError and anything unclassified
        logger.error("ledger_failure", path=request.url.path, method=request.method, error=str(exc), code=exc.code)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error", "code": StorageFailureError.code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error", "code": "internal_error"},
        )


def create_app(settings: Optional[Settings] = None, notifier: Optional[Notifier] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)
    services = build_services(settings, notifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.db.create_all()
        logger.info("ledger_started", version=settings.app_version)
        yield
        services.db.dispose()

    app = FastAPI(
        title="Storefront Ledger API",
        description="Balance ledger, deposit requests and referral bonuses for the storefront",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
