from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .database import Database
from .errors import InsufficientFundsError, InvalidAmountError, UserNotFoundError
from .models import (
    BalanceCheck,
    LedgerEntry,
    LedgerHistoryResponse,
    TransactionRefs,
    TransactionType,
    UserBalance,
)
from .money import Amount, from_minor, to_minor
from .tables import BalanceTransaction, User

logger = structlog.get_logger(__name__)


class LedgerService:
    """Single writer of balances and balance transactions.

    ``credit``/``debit`` open their own unit of work. Composite operations
    (payment approval, settlement) call ``credit_in``/``debit_in`` with their
    open session so every row they write commits or rolls back together.
    """

    def __init__(self, db: Database, currency: str = "GH"):
        self.db = db
        self.currency = currency

    def credit(
        self,
        user_id: int,
        amount: Amount,
        transaction_type: TransactionType,
        description: str,
        refs: Optional[TransactionRefs] = None,
    ) -> LedgerEntry:
        minor = to_minor(amount)
        with self.db.session() as session:
            row = self.credit_in(session, user_id, minor, transaction_type, description, refs)
        return LedgerEntry.from_row(row)

    def debit(
        self,
        user_id: int,
        amount: Amount,
        transaction_type: TransactionType,
        description: str,
        refs: Optional[TransactionRefs] = None,
    ) -> LedgerEntry:
        minor = to_minor(amount)
        with self.db.session() as session:
            row = self.debit_in(session, user_id, minor, transaction_type, description, refs)
        return LedgerEntry.from_row(row)

    def adjust(self, user_id: int, amount: Amount, description: str) -> LedgerEntry:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(f"Malformed amount: {amount!r}")
        if value.is_finite() and value < 0:
            return self.debit(user_id, -value, TransactionType.ADMIN_ADJUSTMENT, description)
        return self.credit(user_id, value, TransactionType.ADMIN_ADJUSTMENT, description)

    def credit_in(
        self,
        session: Session,
        user_id: int,
        minor: int,
        transaction_type: TransactionType,
        description: str,
        refs: Optional[TransactionRefs] = None,
    ) -> BalanceTransaction:
        if minor <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {from_minor(minor)}")

        balance_after = session.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance_minor=User.balance_minor + minor)
            .returning(User.balance_minor)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if balance_after is None:
            raise UserNotFoundError(f"User {user_id} not found")

        row = self._append(session, user_id, minor, balance_after, transaction_type, description, refs)
        logger.info(
            "credit_applied", user_id=user_id, transaction_id=row.id,
            transaction_type=row.transaction_type, amount=str(from_minor(minor)),
        )
        return row

    def debit_in(
        self,
        session: Session,
        user_id: int,
        minor: int,
        transaction_type: TransactionType,
        description: str,
        refs: Optional[TransactionRefs] = None,
    ) -> BalanceTransaction:
        if minor <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {from_minor(minor)}")

        # Check and decrement in one statement so concurrent debits cannot
        # both pass against a stale balance.
        balance_after = session.execute(
            update(User)
            .where(User.id == user_id, User.balance_minor >= minor)
            .values(balance_minor=User.balance_minor - minor)
            .returning(User.balance_minor)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

        if balance_after is None:
            current = session.execute(
                select(User.balance_minor).where(User.id == user_id)
            ).scalar_one_or_none()
            if current is None:
                raise UserNotFoundError(f"User {user_id} not found")
            logger.info(
                "debit_rejected", user_id=user_id, transaction_type=transaction_type.value,
                amount=str(from_minor(minor)), balance=str(from_minor(current)),
            )
            raise InsufficientFundsError(
                f"Insufficient funds: {from_minor(minor)} {self.currency} required, "
                f"balance is {from_minor(current)} {self.currency}"
            )

        row = self._append(session, user_id, -minor, balance_after, transaction_type, description, refs)
        logger.info(
            "debit_applied", user_id=user_id, transaction_id=row.id,
            transaction_type=row.transaction_type, amount=str(from_minor(minor)),
        )
        return row

    def get_balance(self, user_id: int) -> UserBalance:
        with self.db.session() as session:
            balance_minor = self._require_balance(session, user_id)
            total_entries, last_at = session.execute(
                select(func.count(BalanceTransaction.id), func.max(BalanceTransaction.created_at))
                .where(BalanceTransaction.user_id == user_id)
            ).one()
            return UserBalance(
                user_id=user_id,
                currency=self.currency,
                current_balance=from_minor(balance_minor),
                total_entries=total_entries,
                last_transaction_at=last_at,
            )

    def history(self, user_id: int, limit: Optional[int] = None, offset: int = 0) -> LedgerHistoryResponse:
        with self.db.session() as session:
            balance_minor = self._require_balance(session, user_id)
            total_count = session.scalar(
                select(func.count(BalanceTransaction.id)).where(BalanceTransaction.user_id == user_id)
            )
            query = (
                select(BalanceTransaction)
                .where(BalanceTransaction.user_id == user_id)
                .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)

            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[LedgerEntry.from_row(row) for row in session.scalars(query)],
                total_count=total_count,
                current_balance=from_minor(balance_minor),
            )

    def reconcile(self, user_id: int) -> BalanceCheck:
        """Compare the cached balance column with the signed sum of entries."""
        with self.db.session() as session:
            balance_minor = self._require_balance(session, user_id)
            ledger_minor = session.scalar(
                select(func.coalesce(func.sum(BalanceTransaction.amount_minor), 0))
                .where(BalanceTransaction.user_id == user_id)
            )
        check = BalanceCheck(
            user_id=user_id,
            cached_balance=from_minor(balance_minor),
            ledger_balance=from_minor(ledger_minor),
            consistent=balance_minor == ledger_minor,
        )
        if not check.consistent:
            logger.error("balance_mismatch", **check.model_dump(mode="json"))
        return check

    def _require_balance(self, session: Session, user_id: int) -> int:
        balance_minor = session.scalar(select(User.balance_minor).where(User.id == user_id))
        if balance_minor is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return balance_minor

    def _append(
        self,
        session: Session,
        user_id: int,
        amount_minor: int,
        balance_after_minor: int,
        transaction_type: TransactionType,
        description: str,
        refs: Optional[TransactionRefs],
    ) -> BalanceTransaction:
        refs = refs or TransactionRefs()
        row = BalanceTransaction(
            user_id=user_id,
            transaction_type=transaction_type.value,
            amount_minor=amount_minor,
            balance_after_minor=balance_after_minor,
            description=description,
            related_payment_request_id=refs.payment_request_id,
            related_purchase_id=refs.purchase_id,
            related_case_opening_id=refs.case_opening_id,
            related_referral_id=refs.referral_id,
            referral_event=refs.referral_event.value if refs.referral_event else None,
        )
        session.add(row)
        session.flush()
        return row
