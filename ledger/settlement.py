import random
import secrets
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .errors import (
    InvalidAmountError,
    InvalidCaseError,
    NotFoundOrAlreadyProcessedError,
    UserNotFoundError,
)
from .models import (
    ActivationStatus,
    CaseOpeningResponse,
    CaseOpeningStatus,
    CaseOpeningView,
    CasePrize,
    InventoryItem,
    LedgerEntry,
    OpenCaseRequest,
    PrizeSaleResponse,
    PrizeType,
    PurchaseProductRequest,
    PurchaseResponse,
    PurchaseStatus,
    PurchaseView,
    RefundPurchaseRequest,
    RefundResponse,
    SellPrizeRequest,
    TransactionRefs,
    TransactionType,
)
from .money import from_minor, to_minor
from .notifications import LogNotifier, Notifier, notify
from .referrals import ReferralService
from .service import LedgerService
from .tables import CaseOpening, Purchase, User, UserInventory, utcnow

logger = structlog.get_logger(__name__)

PrizePolicy = Callable[[Sequence[CasePrize]], CasePrize]


def weighted_prize_policy(prizes: Sequence[CasePrize], rng: Optional[random.Random] = None) -> CasePrize:
    """Pick a prize with probability proportional to its chance.

    When every chance is zero each prize is equally likely.
    """
    rng = rng or random
    weights = [prize.chance for prize in prizes]
    if sum(weights) <= 0:
        return rng.choice(list(prizes))
    return rng.choices(list(prizes), weights=weights, k=1)[0]


def _activation_code(prefix: str) -> str:
    return f"GH-{prefix}-{secrets.token_hex(3).upper()}"


class SettlementService:
    """Turns a cost into goods: each settlement debits once and records its
    purchase or case opening plus the inventory item in the same unit of work."""

    def __init__(
        self,
        ledger: LedgerService,
        referrals: ReferralService,
        notifier: Optional[Notifier] = None,
        prize_policy: PrizePolicy = weighted_prize_policy,
    ):
        self.ledger = ledger
        self.referrals = referrals
        self.db = ledger.db
        self.notifier = notifier or LogNotifier()
        self.prize_policy = prize_policy

    def settle_purchase(self, request: PurchaseProductRequest) -> PurchaseResponse:
        price_minor = to_minor(request.price)
        label = request.product_name
        if request.duration_days:
            label = f"{label} ({request.duration_days} days)"

        with self.db.session() as session:
            self._require_user(session, request.user_id)
            purchase = Purchase(
                user_id=request.user_id,
                product_id=request.product_id,
                product_name=request.product_name,
                pricing_option_id=request.pricing_option_id,
                amount_paid_minor=price_minor,
                status=PurchaseStatus.COMPLETED.value,
            )
            session.add(purchase)
            session.flush()

            tx = self.ledger.debit_in(
                session, request.user_id, price_minor, TransactionType.PURCHASE,
                f"Purchase: {label}", TransactionRefs(purchase_id=purchase.id),
            )
            purchase.balance_transaction_id = tx.id

            item = None
            if request.key_based:
                item = UserInventory(
                    user_id=request.user_id,
                    product_id=request.product_id,
                    product_name=request.product_name,
                    activation_code=_activation_code("PROD"),
                    activation_status=ActivationStatus.NOT_ACTIVATED.value,
                    expires_at=utcnow() + timedelta(days=request.duration_days) if request.duration_days else None,
                    purchase_id=purchase.id,
                )
                session.add(item)
            session.flush()

        view = PurchaseView.from_row(purchase)
        entry = LedgerEntry.from_row(tx)
        logger.info("purchase_settled", purchase_id=purchase.id, user_id=request.user_id, amount=str(view.amount_paid))
        notify(self.notifier, "purchase_completed", view, entry)

        try:
            self.referrals.on_purchase_completed(request.user_id, purchase.id, price_minor, request.product_name)
        except Exception as e:
            # The purchase has committed; the bonus can be granted again later
            logger.error("referral_bonus_failed", purchase_id=purchase.id, error=str(e), exc_info=e)

        return PurchaseResponse(
            purchase=view,
            ledger_entry=entry,
            inventory_item=InventoryItem.model_validate(item) if item else None,
            message=f'Purchase of "{label}" completed',
        )

    def settle_case_opening(self, request: OpenCaseRequest) -> CaseOpeningResponse:
        """Debit the cost and award one prize.

        Balance prizes are credited at once and close the opening as sold;
        every other prize lands in the inventory.
        """
        if not request.prizes:
            raise InvalidCaseError(f"Case {request.case_id} has no prizes")
        for candidate in request.prizes:
            if candidate.prize_type == PrizeType.BALANCE and candidate.balance_amount is None:
                raise InvalidCaseError(f"Balance prize {candidate.id} has no amount")
        cost_minor = to_minor(request.cost)

        with self.db.session() as session:
            self._require_user(session, request.user_id)
            prize = self.prize_policy(request.prizes)
            opening = CaseOpening(
                user_id=request.user_id,
                case_id=request.case_id,
                case_name=request.case_name,
                won_prize_id=prize.id,
                won_prize_name=prize.name,
                prize_sell_value_minor=to_minor(prize.sell_value) if prize.sell_value else None,
                cost_minor=cost_minor,
                status=CaseOpeningStatus.COMPLETED.value,
            )
            session.add(opening)
            session.flush()

            tx = self.ledger.debit_in(
                session, request.user_id, cost_minor, TransactionType.CASE_OPENING,
                f"Case opening: {request.case_name}", TransactionRefs(case_opening_id=opening.id),
            )
            opening.balance_transaction_id = tx.id

            item = prize_tx = None
            if prize.prize_type == PrizeType.BALANCE:
                won_minor = to_minor(prize.balance_amount)
                prize_tx = self.ledger.credit_in(
                    session, request.user_id, won_minor, TransactionType.PRIZE_SALE,
                    f"Balance won from case: {prize.name}", TransactionRefs(case_opening_id=opening.id),
                )
                opening.prize_sell_value_minor = None
                opening.status = CaseOpeningStatus.SOLD.value
                opening.sold_value_minor = won_minor
            else:
                item = UserInventory(
                    user_id=request.user_id,
                    product_id=prize.product_id,
                    product_name=prize.name,
                    activation_code=_activation_code("CASE"),
                    activation_status=ActivationStatus.NOT_ACTIVATED.value,
                    case_opening_id=opening.id,
                    case_prize_id=prize.id,
                )
                session.add(item)
            session.flush()

        view = CaseOpeningView.from_row(opening)
        entry = LedgerEntry.from_row(tx)
        logger.info("case_opening_settled", case_opening_id=opening.id, user_id=request.user_id, prize_id=prize.id)
        notify(self.notifier, "case_opened", view, entry)
        return CaseOpeningResponse(
            case_opening=view,
            winning_prize=prize,
            ledger_entry=entry,
            prize_credit=LedgerEntry.from_row(prize_tx) if prize_tx is not None else None,
            inventory_item=InventoryItem.model_validate(item) if item is not None else None,
            message=f"Case opened, you won {prize.name}",
        )

    def sell_case_prize(self, case_opening_id: int, request: SellPrizeRequest) -> PrizeSaleResponse:
        """Exchange an unused case prize for its sell value."""
        with self.db.session() as session:
            opening = session.execute(
                update(CaseOpening)
                .where(
                    CaseOpening.id == case_opening_id,
                    CaseOpening.user_id == request.user_id,
                    CaseOpening.status == CaseOpeningStatus.COMPLETED.value,
                    CaseOpening.prize_sell_value_minor.is_not(None),
                )
                .values(status=CaseOpeningStatus.SOLD.value, sold_value_minor=CaseOpening.prize_sell_value_minor)
                .returning(CaseOpening)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if opening is None:
                current = session.get(CaseOpening, case_opening_id)
                if (
                    current is not None
                    and current.user_id == request.user_id
                    and current.status == CaseOpeningStatus.COMPLETED.value
                ):
                    raise InvalidAmountError(f"Prize {current.won_prize_name} cannot be sold")
                raise NotFoundOrAlreadyProcessedError(f"Case opening {case_opening_id} not found or already processed")

            removed = session.execute(
                delete(UserInventory)
                .where(
                    UserInventory.case_opening_id == case_opening_id,
                    UserInventory.user_id == request.user_id,
                    UserInventory.activation_status == ActivationStatus.NOT_ACTIVATED.value,
                )
                .execution_options(synchronize_session=False)
            )
            if removed.rowcount != 1:
                raise NotFoundOrAlreadyProcessedError(f"Prize from case opening {case_opening_id} is no longer in the inventory")

            tx = self.ledger.credit_in(
                session, request.user_id, opening.prize_sell_value_minor, TransactionType.PRIZE_SALE,
                f"Prize sale from case: {opening.won_prize_name}", TransactionRefs(case_opening_id=case_opening_id),
            )

        view = CaseOpeningView.from_row(opening)
        logger.info("case_prize_sold", case_opening_id=case_opening_id, user_id=request.user_id, amount=str(view.sold_value))
        return PrizeSaleResponse(
            case_opening=view,
            ledger_entry=LedgerEntry.from_row(tx),
            message=f"{opening.won_prize_name} sold for {view.sold_value} {self.ledger.currency}",
        )

    def refund_purchase(self, purchase_id: int, request: RefundPurchaseRequest) -> RefundResponse:
        with self.db.session() as session:
            purchase = session.execute(
                update(Purchase)
                .where(Purchase.id == purchase_id, Purchase.status == PurchaseStatus.COMPLETED.value)
                .values(status=PurchaseStatus.REFUNDED.value)
                .returning(Purchase)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if purchase is None:
                raise NotFoundOrAlreadyProcessedError(f"Purchase {purchase_id} not found or already refunded")

            tx = self.ledger.credit_in(
                session, purchase.user_id, purchase.amount_paid_minor, TransactionType.REFUND,
                f"Refund: {purchase.product_name} ({request.reason})", TransactionRefs(purchase_id=purchase_id),
            )
            session.execute(
                delete(UserInventory)
                .where(UserInventory.purchase_id == purchase_id)
                .execution_options(synchronize_session=False)
            )

        view = PurchaseView.from_row(purchase)
        logger.info("purchase_refunded", purchase_id=purchase_id, user_id=purchase.user_id, reason=request.reason)
        return RefundResponse(
            purchase=view,
            ledger_entry=LedgerEntry.from_row(tx),
            message=f"Purchase #{purchase_id} refunded, {view.amount_paid} {self.ledger.currency} returned",
        )

    def delete_inventory_item(self, user_id: int, item_id: int) -> None:
        """Remove an item from the owner's inventory. Ledger history is untouched."""
        with self.db.session() as session:
            result = session.execute(
                delete(UserInventory)
                .where(UserInventory.id == item_id, UserInventory.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundOrAlreadyProcessedError(f"Inventory item {item_id} not found for user {user_id}")
        logger.info("inventory_item_deleted", user_id=user_id, item_id=item_id)

    def list_inventory(self, user_id: int) -> list[InventoryItem]:
        with self.db.session() as session:
            self._require_user(session, user_id)
            rows = session.scalars(
                select(UserInventory)
                .where(UserInventory.user_id == user_id)
                .order_by(UserInventory.acquired_at.desc(), UserInventory.id.desc())
            )
            return [InventoryItem.model_validate(row) for row in rows]

    def list_purchases(self, user_id: int) -> list[PurchaseView]:
        with self.db.session() as session:
            self._require_user(session, user_id)
            rows = session.scalars(
                select(Purchase).where(Purchase.user_id == user_id).order_by(Purchase.created_at.desc(), Purchase.id.desc())
            )
            return [PurchaseView.from_row(row) for row in rows]

    def list_case_openings(self, user_id: int) -> list[CaseOpeningView]:
        with self.db.session() as session:
            self._require_user(session, user_id)
            rows = session.scalars(
                select(CaseOpening)
                .where(CaseOpening.user_id == user_id)
                .order_by(CaseOpening.created_at.desc(), CaseOpening.id.desc())
            )
            return [CaseOpeningView.from_row(row) for row in rows]

    def _require_user(self, session: Session, user_id: int) -> None:
        if session.scalar(select(User.id).where(User.id == user_id)) is None:
            raise UserNotFoundError(f"User {user_id} not found")
