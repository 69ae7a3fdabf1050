"""Post-commit notification hooks.

Notifiers run after the ledger change has committed. A failing notifier is
logged and never undoes the change it reports.
"""

import structlog

from .models import (
    CaseOpeningView,
    LedgerEntry,
    PaymentRequestView,
    PromoCodeApplyResponse,
    PurchaseView,
    ReferralView,
)

logger = structlog.get_logger(__name__)


class Notifier:
    def payment_approved(self, request: PaymentRequestView, entry: LedgerEntry) -> None:
        pass

    def payment_rejected(self, request: PaymentRequestView) -> None:
        pass

    def referral_bonus_granted(self, referral: ReferralView, entry: LedgerEntry) -> None:
        pass

    def purchase_completed(self, purchase: PurchaseView, entry: LedgerEntry) -> None:
        pass

    def case_opened(self, case_opening: CaseOpeningView, entry: LedgerEntry) -> None:
        pass

    def promo_code_applied(self, user_id: int, result: PromoCodeApplyResponse) -> None:
        pass


class LogNotifier(Notifier):
    """Default notifier: writes each event to the structured log."""

    def payment_approved(self, request: PaymentRequestView, entry: LedgerEntry) -> None:
        logger.info("notify_payment_approved", request_id=request.id, user_id=request.user_id,
                    amount=str(request.amount), balance_after=str(entry.balance_after))

    def payment_rejected(self, request: PaymentRequestView) -> None:
        logger.info("notify_payment_rejected", request_id=request.id, user_id=request.user_id,
                    admin_notes=request.admin_notes)

    def referral_bonus_granted(self, referral: ReferralView, entry: LedgerEntry) -> None:
        logger.info("notify_referral_bonus", referral_id=referral.id,
                    referrer_user_id=referral.referrer_user_id, amount=str(entry.amount))

    def purchase_completed(self, purchase: PurchaseView, entry: LedgerEntry) -> None:
        logger.info("notify_purchase", purchase_id=purchase.id, user_id=purchase.user_id,
                    product_name=purchase.product_name, amount=str(purchase.amount_paid))

    def case_opened(self, case_opening: CaseOpeningView, entry: LedgerEntry) -> None:
        logger.info("notify_case_opened", case_opening_id=case_opening.id,
                    user_id=case_opening.user_id, prize=case_opening.won_prize_name)

    def promo_code_applied(self, user_id: int, result: PromoCodeApplyResponse) -> None:
        logger.info("notify_promo_code_applied", user_id=user_id, code=result.promo_code,
                    amount=str(result.ledger_entry.amount) if result.ledger_entry else None)


def notify(notifier: Notifier, event: str, *args) -> None:
    try:
        getattr(notifier, event)(*args)
    except Exception as e:
        logger.error("notification_failed", notification=event, error=str(e), exc_info=e)
