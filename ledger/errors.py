class LedgerServiceError(Exception):
    code = "ledger_error"


class InvalidAmountError(LedgerServiceError):
    code = "invalid_amount"


class InvalidCaseError(LedgerServiceError):
    code = "invalid_case"


class InvalidPromoCodeError(LedgerServiceError):
    code = "invalid_promo_code"


class PromoCodeAlreadyUsedError(InvalidPromoCodeError):
    code = "promo_code_already_used"


class InsufficientFundsError(LedgerServiceError):
    code = "insufficient_funds"


class NotFoundOrAlreadyProcessedError(LedgerServiceError):
    code = "not_found_or_already_processed"


class UserNotFoundError(NotFoundOrAlreadyProcessedError):
    code = "user_not_found"


class StorageFailureError(LedgerServiceError):
    code = "storage_failure"


class ConstraintViolationError(StorageFailureError):
    code = "constraint_violation"
