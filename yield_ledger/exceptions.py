class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class InvalidAmount(ValidationError):
    pass


class BelowMinimum(ValidationError):
    pass


class AboveMaximum(ValidationError):
    pass


class InvalidAddress(ValidationError):
    pass


class MissingRequiredFields(ValidationError):
    pass


class InvalidConfiguration(ValidationError):
    pass


class DuplicateReferralCode(ValidationError):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


class InsufficientAvailableBalance(InsufficientFundsError):
    pass


class InsufficientBalance(InsufficientFundsError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class NotPending(InvalidStateTransitionError):
    pass


class PlanInactive(InvalidStateTransitionError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class AccountNotFound(NotFoundError):
    pass


class TransactionNotFound(NotFoundError):
    pass


class PlanNotFound(NotFoundError):
    pass


class PermissionDeniedError(LedgerServiceError):
    pass
