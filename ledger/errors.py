from typing import Optional


class LedgerServiceError(Exception):
    """Base class for ledger and dispatch errors."""

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or "service_error"


class ValidationError(LedgerServiceError):
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, code="validation_error")


class InvalidAmountError(ValidationError):
    pass


class MissingGrantorError(ValidationError):
    pass


class NotFoundError(LedgerServiceError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="not_found")


class AccountNotFoundError(NotFoundError):
    pass


class RequestNotFoundError(NotFoundError):
    pass


class ChannelNotFoundError(NotFoundError):
    pass


class PostNotFoundError(NotFoundError):
    pass


class FireTimeNotFoundError(NotFoundError):
    pass


class ConflictError(LedgerServiceError):
    """State changed underneath the caller; re-fetch before retrying."""

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, code="conflict")


class NotPendingError(ConflictError):
    pass


class AlreadyDueError(ConflictError):
    pass


class StaleAuthorizationError(ConflictError):
    pass


class ForbiddenError(LedgerServiceError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="forbidden")


class InsufficientCreditError(LedgerServiceError):
    def __init__(
        self,
        required: int,
        global_available: int,
        grantor_available: Optional[int] = None,
    ):
        self.required = required
        self.global_available = global_available
        self.grantor_available = grantor_available
        message = f"Insufficient credits: need {required}, have {global_available}"
        if grantor_available is not None:
            message += f" ({grantor_available} available from grantor)"
        super().__init__(message, code="insufficient_credit")

    @property
    def global_shortfall(self) -> int:
        return max(0, self.required - self.global_available)

    @property
    def grantor_shortfall(self) -> Optional[int]:
        if self.grantor_available is None:
            return None
        return max(0, self.required - self.grantor_available)
