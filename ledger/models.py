from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from . import tables
from .money import from_minor


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    PURCHASE = "purchase"
    CASE_OPENING = "case_opening"
    PRIZE_SALE = "prize_sale"
    REFERRAL_BONUS = "referral_bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReferralEvent(str, Enum):
    FIRST_PURCHASE = "first_purchase"
    MANUAL = "manual"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    BOOSTER = "booster"


class PurchaseStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"


class CaseOpeningStatus(str, Enum):
    COMPLETED = "completed"
    SOLD = "sold"


class ActivationStatus(str, Enum):
    NOT_ACTIVATED = "not_activated"
    PENDING = "pending"
    ACTIVATED = "activated"


class PrizeType(str, Enum):
    PRODUCT = "product_duration"
    BALANCE = "balance_gh"


class PromoCodeType(str, Enum):
    BALANCE = "balance_gh"
    PRODUCT = "product"


class TransactionRefs(BaseModel):
    """Foreign references stored on a ledger entry."""

    payment_request_id: Optional[int] = None
    purchase_id: Optional[int] = None
    case_opening_id: Optional[int] = None
    referral_id: Optional[int] = None
    referral_event: Optional[ReferralEvent] = None


# Requests

class RegisterUserRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    password_hash: Optional[str] = None
    role: UserRole = UserRole.CUSTOMER
    referral_code: Optional[str] = Field(default=None, description="Referral code of the inviting user")


class AdjustBalanceRequest(BaseModel):
    amount: Decimal = Field(..., description="Signed amount; negative values debit the user")
    description: str = Field(..., min_length=1)


class SubmitPaymentRequest(BaseModel):
    user_id: int
    amount: Decimal
    payment_method_details: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"user_id": 1, "amount": 50.00, "payment_method_details": "Card"}
    })


class ProcessPaymentRequest(BaseModel):
    admin_notes: Optional[str] = None


class PurchaseProductRequest(BaseModel):
    user_id: int
    product_id: str
    product_name: str
    price: Decimal
    pricing_option_id: Optional[str] = None
    duration_days: Optional[int] = Field(default=None, ge=1)
    key_based: bool = True


class CasePrize(BaseModel):
    id: str
    name: str
    chance: float = Field(default=0.0, ge=0)
    prize_type: PrizeType = PrizeType.PRODUCT
    sell_value: Optional[Decimal] = None
    balance_amount: Optional[Decimal] = Field(default=None, description="Credited at once for balance prizes")
    product_id: Optional[str] = None


class OpenCaseRequest(BaseModel):
    user_id: int
    case_id: str
    case_name: str
    cost: Decimal
    prizes: list[CasePrize]


class SellPrizeRequest(BaseModel):
    user_id: int


class RefundPurchaseRequest(BaseModel):
    reason: str = Field(..., description="Reason for the refund")


class GrantBonusRequest(BaseModel):
    amount: Decimal
    event: ReferralEvent = ReferralEvent.MANUAL


class CreatePromoCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    promo_type: PromoCodeType = PromoCodeType.BALANCE
    value: Optional[Decimal] = Field(default=None, description="Balance credited by balance codes")
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    duration_days: Optional[int] = Field(default=None, ge=1)
    max_uses: int = Field(default=1, ge=1)
    expires_at: Optional[datetime] = None
    is_active: bool = True


class ApplyPromoCodeRequest(BaseModel):
    user_id: int
    code: str


# Views

class UserView(BaseModel):
    id: int
    username: str
    email: str
    role: UserRole
    balance: Decimal
    referral_code: str
    referred_by_user_id: Optional[int] = None
    referral_percentage: Decimal
    created_at: datetime

    @classmethod
    def from_row(cls, row: tables.User) -> "UserView":
        return cls(
            id=row.id, username=row.username, email=row.email, role=UserRole(row.role),
            balance=from_minor(row.balance_minor), referral_code=row.referral_code,
            referred_by_user_id=row.referred_by_user_id,
            referral_percentage=row.referral_percentage, created_at=row.created_at,
        )


class LedgerEntry(BaseModel):
    id: int
    user_id: int
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    related_payment_request_id: Optional[int] = None
    related_purchase_id: Optional[int] = None
    related_case_opening_id: Optional[int] = None
    related_referral_id: Optional[int] = None
    referral_event: Optional[ReferralEvent] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: tables.BalanceTransaction) -> "LedgerEntry":
        return cls(
            id=row.id, user_id=row.user_id,
            transaction_type=TransactionType(row.transaction_type),
            amount=from_minor(row.amount_minor),
            balance_after=from_minor(row.balance_after_minor),
            description=row.description,
            related_payment_request_id=row.related_payment_request_id,
            related_purchase_id=row.related_purchase_id,
            related_case_opening_id=row.related_case_opening_id,
            related_referral_id=row.related_referral_id,
            referral_event=ReferralEvent(row.referral_event) if row.referral_event else None,
            created_at=row.created_at,
        )


class UserBalance(BaseModel):
    user_id: int
    currency: str
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class BalanceCheck(BaseModel):
    user_id: int
    cached_balance: Decimal
    ledger_balance: Decimal
    consistent: bool


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class PaymentRequestView(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    status: PaymentStatus
    payment_method_details: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: tables.PaymentRequest) -> "PaymentRequestView":
        return cls(
            id=row.id, user_id=row.user_id, amount=from_minor(row.amount_minor),
            status=PaymentStatus(row.status),
            payment_method_details=row.payment_method_details,
            admin_notes=row.admin_notes,
            created_at=row.created_at, updated_at=row.updated_at,
        )


class PaymentRequestResponse(BaseModel):
    payment_request: PaymentRequestView
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class ReferralView(BaseModel):
    id: int
    referrer_user_id: int
    referred_user_id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferredUser(BaseModel):
    referral: ReferralView
    username: str
    bonus_granted: bool


class ReferredListResponse(BaseModel):
    referrer_user_id: int
    count: int
    referred: list[ReferredUser]


class ReferralCheckResponse(BaseModel):
    is_valid: bool
    referrer_id: Optional[int] = None
    referrer_name: Optional[str] = None


class ReferralBonusResponse(BaseModel):
    referral: ReferralView
    ledger_entry: Optional[LedgerEntry] = None
    created: bool
    message: str


class PurchaseView(BaseModel):
    id: int
    user_id: int
    product_id: str
    product_name: str
    pricing_option_id: Optional[str] = None
    amount_paid: Decimal
    status: PurchaseStatus
    balance_transaction_id: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: tables.Purchase) -> "PurchaseView":
        return cls(
            id=row.id, user_id=row.user_id, product_id=row.product_id,
            product_name=row.product_name, pricing_option_id=row.pricing_option_id,
            amount_paid=from_minor(row.amount_paid_minor), status=PurchaseStatus(row.status),
            balance_transaction_id=row.balance_transaction_id, created_at=row.created_at,
        )


class CaseOpeningView(BaseModel):
    id: int
    user_id: int
    case_id: str
    case_name: str
    won_prize_id: str
    won_prize_name: str
    cost: Decimal
    status: CaseOpeningStatus
    sold_value: Optional[Decimal] = None
    balance_transaction_id: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: tables.CaseOpening) -> "CaseOpeningView":
        return cls(
            id=row.id, user_id=row.user_id, case_id=row.case_id, case_name=row.case_name,
            won_prize_id=row.won_prize_id, won_prize_name=row.won_prize_name,
            cost=from_minor(row.cost_minor), status=CaseOpeningStatus(row.status),
            sold_value=from_minor(row.sold_value_minor) if row.sold_value_minor is not None else None,
            balance_transaction_id=row.balance_transaction_id, created_at=row.created_at,
        )


class InventoryItem(BaseModel):
    id: int
    user_id: int
    product_id: Optional[str] = None
    product_name: str
    activation_code: Optional[str] = None
    activation_status: ActivationStatus
    expires_at: Optional[datetime] = None
    purchase_id: Optional[int] = None
    case_opening_id: Optional[int] = None
    case_prize_id: Optional[str] = None
    acquired_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PurchaseResponse(BaseModel):
    purchase: PurchaseView
    ledger_entry: LedgerEntry
    inventory_item: Optional[InventoryItem] = None
    message: str


class CaseOpeningResponse(BaseModel):
    case_opening: CaseOpeningView
    winning_prize: CasePrize
    ledger_entry: LedgerEntry
    prize_credit: Optional[LedgerEntry] = None
    inventory_item: Optional[InventoryItem] = None
    message: str


class PrizeSaleResponse(BaseModel):
    case_opening: CaseOpeningView
    ledger_entry: LedgerEntry
    message: str


class RefundResponse(BaseModel):
    purchase: PurchaseView
    ledger_entry: LedgerEntry
    message: str


class PromoCodeView(BaseModel):
    id: int
    code: str
    promo_type: PromoCodeType
    value: Optional[Decimal] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    duration_days: Optional[int] = None
    max_uses: int
    current_uses: int
    expires_at: Optional[datetime] = None
    is_active: bool
    created_at: datetime

    @classmethod
    def from_row(cls, row: tables.PromoCode) -> "PromoCodeView":
        return cls(
            id=row.id, code=row.code, promo_type=PromoCodeType(row.promo_type),
            value=from_minor(row.value_minor) if row.value_minor is not None else None,
            product_id=row.product_id, product_name=row.product_name, duration_days=row.duration_days,
            max_uses=row.max_uses, current_uses=row.current_uses, expires_at=row.expires_at,
            is_active=row.is_active, created_at=row.created_at,
        )


class PromoCodeApplyResponse(BaseModel):
    promo_code: str
    ledger_entry: Optional[LedgerEntry] = None
    inventory_item: Optional[InventoryItem] = None
    message: str
