"""
Storefront Balance Ledger

This package provides:
- Append-only balance transactions with a balance column kept in step
- Credit and debit as single conditional writes (no lost updates)
- Deposit requests approved or rejected by admins exactly once
- Referral links and bonuses paid at most once per referral and event
- Purchase and case-opening settlement with inventory records
"""

from .errors import (
    ConstraintViolationError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidCaseError,
    LedgerServiceError,
    NotFoundOrAlreadyProcessedError,
    StorageFailureError,
    UserNotFoundError,
)
from .models import (
    LedgerEntry,
    PaymentStatus,
    ReferralEvent,
    TransactionType,
    UserBalance,
)
from .service import LedgerService

__all__ = [
    "ConstraintViolationError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "InvalidCaseError",
    "LedgerServiceError",
    "NotFoundOrAlreadyProcessedError",
    "StorageFailureError",
    "UserNotFoundError",
    "LedgerEntry",
    "PaymentStatus",
    "ReferralEvent",
    "TransactionType",
    "UserBalance",
    "LedgerService",
]
