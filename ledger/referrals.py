from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import ConstraintViolationError, NotFoundOrAlreadyProcessedError, UserNotFoundError
from .models import (
    LedgerEntry,
    ReferralBonusResponse,
    ReferralCheckResponse,
    ReferralEvent,
    ReferralView,
    ReferredListResponse,
    ReferredUser,
    TransactionRefs,
    TransactionType,
)
from .money import Amount, from_minor, percentage_of, to_minor
from .notifications import LogNotifier, Notifier, notify
from .service import LedgerService
from .tables import BalanceTransaction, Purchase, Referral, User

logger = structlog.get_logger(__name__)


class ReferralService:
    """Referral links recorded at sign-up and the bonuses paid to referrers.

    A bonus is paid at most once per (referral, event). The unique constraint
    on the ledger's referral reference columns enforces this even when the
    same trigger fires twice concurrently.
    """

    def __init__(self, ledger: LedgerService, notifier: Optional[Notifier] = None):
        self.ledger = ledger
        self.db = ledger.db
        self.notifier = notifier or LogNotifier()

    def check_code(self, code: str) -> ReferralCheckResponse:
        with self.db.session() as session:
            referrer = session.scalars(select(User).where(User.referral_code == code)).first()
            if referrer is None:
                return ReferralCheckResponse(is_valid=False)
            return ReferralCheckResponse(is_valid=True, referrer_id=referrer.id, referrer_name=referrer.username)

    def record_referral(self, referrer_code: Optional[str], new_user_id: int) -> Optional[ReferralView]:
        if not referrer_code:
            return None
        with self.db.session() as session:
            return self.record_referral_in(session, referrer_code, new_user_id)

    def record_referral_in(self, session: Session, referrer_code: str, new_user_id: int) -> Optional[ReferralView]:
        """Link ``new_user_id`` to the owner of ``referrer_code``.

        Returns None, recording nothing, when the code is unknown, belongs to
        the new user, or the user already has a referrer.
        """
        referrer_id = session.scalar(select(User.id).where(User.referral_code == referrer_code))
        if referrer_id is None:
            logger.info("referral_code_unknown", referral_code=referrer_code, user_id=new_user_id)
            return None
        if referrer_id == new_user_id:
            return None

        result = session.execute(
            update(User)
            .where(User.id == new_user_id, User.referred_by_user_id.is_(None))
            .values(referred_by_user_id=referrer_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        referral = Referral(referrer_user_id=referrer_id, referred_user_id=new_user_id)
        session.add(referral)
        session.flush()
        logger.info("referral_recorded", referral_id=referral.id, referrer_user_id=referrer_id, referred_user_id=new_user_id)
        return ReferralView.model_validate(referral)

    def grant_referral_bonus(
        self,
        referral_id: int,
        amount: Amount,
        event: ReferralEvent,
        description: Optional[str] = None,
    ) -> ReferralBonusResponse:
        minor = to_minor(amount)

        existing = self._existing_bonus(referral_id, event)
        if existing is not None:
            return existing

        try:
            with self.db.session() as session:
                referral = session.get(Referral, referral_id)
                if referral is None:
                    raise NotFoundOrAlreadyProcessedError(f"Referral {referral_id} not found")
                referred_name = session.scalar(select(User.username).where(User.id == referral.referred_user_id))
                tx = self.ledger.credit_in(
                    session,
                    referral.referrer_user_id,
                    minor,
                    TransactionType.REFERRAL_BONUS,
                    description or f"Referral bonus for {referred_name} ({event.value})",
                    TransactionRefs(referral_id=referral_id, referral_event=event),
                )
                view = ReferralView.model_validate(referral)
        except ConstraintViolationError:
            # Lost the race against an identical trigger
            existing = self._existing_bonus(referral_id, event)
            if existing is None:
                raise
            return existing

        entry = LedgerEntry.from_row(tx)
        logger.info("referral_bonus_granted", referral_id=referral_id, referral_event=event.value, amount=str(entry.amount))
        notify(self.notifier, "referral_bonus_granted", view, entry)
        return ReferralBonusResponse(
            referral=view,
            ledger_entry=entry,
            created=True,
            message=f"Referral bonus of {entry.amount} {self.ledger.currency} credited",
        )

    def on_purchase_completed(
        self, buyer_id: int, purchase_id: int, price_minor: int, product_name: str
    ) -> Optional[ReferralBonusResponse]:
        """Pay the buyer's referrer their percentage of the buyer's first purchase.

        Later purchases never pay, even when the first one earned nothing
        because its share rounded to zero.
        """
        with self.db.session() as session:
            earlier = session.scalar(
                select(Purchase.id).where(Purchase.user_id == buyer_id, Purchase.id < purchase_id).limit(1)
            )
            if earlier is not None:
                return None
            row = session.execute(
                select(Referral, User.referral_percentage)
                .join(User, User.id == Referral.referrer_user_id)
                .where(Referral.referred_user_id == buyer_id)
            ).first()
            if row is None:
                return None
            referral, percentage = row
            buyer_name = session.scalar(select(User.username).where(User.id == buyer_id))

        bonus_minor = percentage_of(price_minor, percentage)
        if bonus_minor <= 0:
            return None
        return self.grant_referral_bonus(
            referral.id,
            from_minor(bonus_minor),
            ReferralEvent.FIRST_PURCHASE,
            description=f"Referral bonus for purchase by {buyer_name} ({product_name})",
        )

    def list_referred(self, referrer_id: int) -> ReferredListResponse:
        with self.db.session() as session:
            if session.get(User, referrer_id) is None:
                raise UserNotFoundError(f"User {referrer_id} not found")
            rows = session.execute(
                select(Referral, User.username)
                .join(User, User.id == Referral.referred_user_id)
                .where(Referral.referrer_user_id == referrer_id)
                .order_by(Referral.created_at.desc(), Referral.id.desc())
            ).all()
            rewarded = set(session.scalars(
                select(BalanceTransaction.related_referral_id)
                .where(
                    BalanceTransaction.user_id == referrer_id,
                    BalanceTransaction.transaction_type == TransactionType.REFERRAL_BONUS.value,
                )
            ))
            referred = [
                ReferredUser(
                    referral=ReferralView.model_validate(referral),
                    username=username,
                    bonus_granted=referral.id in rewarded,
                )
                for referral, username in rows
            ]
        return ReferredListResponse(referrer_user_id=referrer_id, count=len(referred), referred=referred)

    def _existing_bonus(self, referral_id: int, event: ReferralEvent) -> Optional[ReferralBonusResponse]:
        with self.db.session() as session:
            tx = session.scalars(
                select(BalanceTransaction).where(
                    BalanceTransaction.related_referral_id == referral_id,
                    BalanceTransaction.referral_event == event.value,
                )
            ).first()
            if tx is None:
                return None
            referral = session.get(Referral, referral_id)
            return ReferralBonusResponse(
                referral=ReferralView.model_validate(referral),
                ledger_entry=LedgerEntry.from_row(tx),
                created=False,
                message="Referral bonus already granted",
            )
