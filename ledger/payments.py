from typing import Optional

import structlog
from sqlalchemy import select, update

from .errors import NotFoundOrAlreadyProcessedError, UserNotFoundError
from .models import (
    PaymentRequestResponse,
    PaymentRequestView,
    PaymentStatus,
    TransactionRefs,
    TransactionType,
    LedgerEntry,
)
from .money import Amount, from_minor, to_minor
from .notifications import LogNotifier, Notifier, notify
from .service import LedgerService
from .tables import PaymentRequest, User, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_PAYMENT_METHOD = "Card"
DEFAULT_REJECTION_NOTE = "Rejected by administrator"


class PaymentRequestService:
    """Deposit requests: pending -> approved | rejected, each transition at most once."""

    def __init__(self, ledger: LedgerService, notifier: Optional[Notifier] = None):
        self.ledger = ledger
        self.db = ledger.db
        self.notifier = notifier or LogNotifier()

    def submit(
        self, user_id: int, amount: Amount, payment_method_details: Optional[str] = None
    ) -> PaymentRequestView:
        minor = to_minor(amount)
        with self.db.session() as session:
            if session.get(User, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            row = PaymentRequest(
                user_id=user_id,
                amount_minor=minor,
                status=PaymentStatus.PENDING.value,
                payment_method_details=payment_method_details or DEFAULT_PAYMENT_METHOD,
            )
            session.add(row)
            session.flush()
        logger.info("payment_request_submitted", request_id=row.id, user_id=user_id, amount=str(from_minor(minor)))
        return PaymentRequestView.from_row(row)

    def approve(self, request_id: int, admin_notes: Optional[str] = None) -> PaymentRequestResponse:
        with self.db.session() as session:
            # The status guard and the flip are one statement; a concurrent
            # approval or rejection of the same request matches zero rows.
            row = session.execute(
                update(PaymentRequest)
                .where(PaymentRequest.id == request_id, PaymentRequest.status == PaymentStatus.PENDING.value)
                .values(status=PaymentStatus.APPROVED.value, admin_notes=admin_notes, updated_at=utcnow())
                .returning(PaymentRequest)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundOrAlreadyProcessedError(f"Payment request {request_id} not found or already processed")

            tx = self.ledger.credit_in(
                session,
                row.user_id,
                row.amount_minor,
                TransactionType.DEPOSIT,
                f"Deposit via approved request #{request_id} ({row.payment_method_details or DEFAULT_PAYMENT_METHOD})",
                TransactionRefs(payment_request_id=request_id),
            )

        request = PaymentRequestView.from_row(row)
        entry = LedgerEntry.from_row(tx)
        logger.info("payment_request_approved", request_id=request_id, user_id=row.user_id, amount=str(request.amount))
        notify(self.notifier, "payment_approved", request, entry)
        return PaymentRequestResponse(
            payment_request=request,
            ledger_entry=entry,
            message=f"Request #{request_id} approved, balance credited with {request.amount} {self.ledger.currency}",
        )

    def reject(self, request_id: int, admin_notes: Optional[str] = None) -> PaymentRequestResponse:
        with self.db.session() as session:
            row = session.execute(
                update(PaymentRequest)
                .where(PaymentRequest.id == request_id, PaymentRequest.status == PaymentStatus.PENDING.value)
                .values(
                    status=PaymentStatus.REJECTED.value,
                    admin_notes=admin_notes or DEFAULT_REJECTION_NOTE,
                    updated_at=utcnow(),
                )
                .returning(PaymentRequest)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundOrAlreadyProcessedError(f"Payment request {request_id} not found or already processed")

        request = PaymentRequestView.from_row(row)
        logger.info("payment_request_rejected", request_id=request_id, user_id=row.user_id)
        notify(self.notifier, "payment_rejected", request)
        return PaymentRequestResponse(payment_request=request, message=f"Request #{request_id} rejected")

    def get(self, request_id: int) -> PaymentRequestView:
        with self.db.session() as session:
            row = session.get(PaymentRequest, request_id)
            if row is None:
                raise NotFoundOrAlreadyProcessedError(f"Payment request {request_id} not found")
            return PaymentRequestView.from_row(row)

    def list_requests(self, status: Optional[PaymentStatus] = None) -> list[PaymentRequestView]:
        query = select(PaymentRequest).order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
        if status is not None:
            query = query.where(PaymentRequest.status == status.value)
        with self.db.session() as session:
            return [PaymentRequestView.from_row(row) for row in session.scalars(query)]
