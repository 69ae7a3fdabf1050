import secrets
from datetime import timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import select, update

from .errors import (
    ConstraintViolationError,
    InvalidPromoCodeError,
    NotFoundOrAlreadyProcessedError,
    PromoCodeAlreadyUsedError,
    UserNotFoundError,
)
from .models import (
    ActivationStatus,
    CreatePromoCodeRequest,
    InventoryItem,
    LedgerEntry,
    PromoCodeApplyResponse,
    PromoCodeType,
    PromoCodeView,
    TransactionType,
)
from .money import from_minor, to_minor
from .notifications import LogNotifier, Notifier, notify
from .service import LedgerService
from .tables import PromoCode, PromoCodeUse, User, UserInventory, as_utc, utcnow

logger = structlog.get_logger(__name__)


class PromoCodeService:
    """Promo codes that credit balance or grant a product key.

    Each user applies a code at most once, and a code is never applied more
    than ``max_uses`` times in total.
    """

    def __init__(self, ledger: LedgerService, notifier: Optional[Notifier] = None):
        self.ledger = ledger
        self.db = ledger.db
        self.notifier = notifier or LogNotifier()

    def create(self, request: CreatePromoCodeRequest) -> PromoCodeView:
        value_minor = None
        if request.promo_type == PromoCodeType.BALANCE:
            if request.value is None:
                raise InvalidPromoCodeError("Balance promo codes need a value")
            value_minor = to_minor(request.value)
        elif not (request.product_id and request.product_name):
            raise InvalidPromoCodeError("Product promo codes need a product id and name")

        expires_at = request.expires_at
        if expires_at is not None and expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(timezone.utc)

        with self.db.session() as session:
            row = PromoCode(
                code=request.code,
                promo_type=request.promo_type.value,
                value_minor=value_minor,
                product_id=request.product_id,
                product_name=request.product_name,
                duration_days=request.duration_days,
                max_uses=request.max_uses,
                current_uses=0,
                expires_at=expires_at,
                is_active=request.is_active,
            )
            session.add(row)
            session.flush()
        logger.info("promo_code_created", promo_code_id=row.id, code=row.code, promo_type=row.promo_type)
        return PromoCodeView.from_row(row)

    def apply(self, user_id: int, code: str) -> PromoCodeApplyResponse:
        try:
            with self.db.session() as session:
                if session.get(User, user_id) is None:
                    raise UserNotFoundError(f"User {user_id} not found")
                promo = session.scalars(select(PromoCode).where(PromoCode.code == code)).first()
                if promo is None:
                    raise NotFoundOrAlreadyProcessedError(f"Promo code {code} not found")
                if not promo.is_active:
                    raise InvalidPromoCodeError(f"Promo code {code} is no longer active")
                if promo.expires_at is not None and as_utc(promo.expires_at) < utcnow():
                    raise InvalidPromoCodeError(f"Promo code {code} has expired")

                already_used = session.scalar(
                    select(PromoCodeUse.id).where(PromoCodeUse.user_id == user_id, PromoCodeUse.promo_code_id == promo.id)
                )
                if already_used is not None:
                    raise PromoCodeAlreadyUsedError(f"Promo code {code} was already applied")

                # Usage count guard and increment in one statement
                claimed = session.execute(
                    update(PromoCode)
                    .where(PromoCode.id == promo.id, PromoCode.current_uses < PromoCode.max_uses)
                    .values(current_uses=PromoCode.current_uses + 1)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    raise InvalidPromoCodeError(f"Promo code {code} has reached its usage limit")

                session.add(PromoCodeUse(user_id=user_id, promo_code_id=promo.id))
                session.flush()

                tx = item = None
                if promo.promo_type == PromoCodeType.BALANCE.value:
                    tx = self.ledger.credit_in(
                        session, user_id, promo.value_minor, TransactionType.DEPOSIT,
                        f"Promo code {promo.code} (+{from_minor(promo.value_minor)} {self.ledger.currency})",
                    )
                else:
                    item = UserInventory(
                        user_id=user_id,
                        product_id=promo.product_id,
                        product_name=promo.product_name,
                        activation_code=f"GH-PROMO-{secrets.token_hex(3).upper()}",
                        activation_status=ActivationStatus.NOT_ACTIVATED.value,
                        expires_at=utcnow() + timedelta(days=promo.duration_days) if promo.duration_days else None,
                    )
                    session.add(item)
                    session.flush()
        except ConstraintViolationError as e:
            # A concurrent apply by the same user won the unique use row
            raise PromoCodeAlreadyUsedError(f"Promo code {code} was already applied") from e

        entry = LedgerEntry.from_row(tx) if tx is not None else None
        if entry is not None:
            message = f"Promo code {code} applied, {entry.amount} {self.ledger.currency} credited"
        else:
            message = f"Promo code {code} applied, {promo.product_name} added to the inventory"
        logger.info("promo_code_applied", user_id=user_id, promo_code_id=promo.id, promo_type=promo.promo_type)
        response = PromoCodeApplyResponse(
            promo_code=code,
            ledger_entry=entry,
            inventory_item=InventoryItem.model_validate(item) if item is not None else None,
            message=message,
        )
        notify(self.notifier, "promo_code_applied", user_id, response)
        return response
