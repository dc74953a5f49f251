from typing import Optional


class FinanceError(ValueError):
    code = "ERROR"
    status_code = 400

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(FinanceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(FinanceError):
    """Raised for records that are missing or owned by someone else.

    Both cases produce the same error so callers cannot probe for other
    users' ids.
    """

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(FinanceError):
    code = "CONFLICT"
    status_code = 409


class AuthenticationError(FinanceError):
    code = "UNAUTHORIZED"
    status_code = 401


class ExternalServiceError(RuntimeError):
    """An aggregator call failed.

    Carries the aggregator's own error code and request id so support can
    trace the call on the vendor side.
    """

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        aggregator_code: Optional[str] = None,
        request_id: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.aggregator_code = aggregator_code
        self.request_id = request_id
        self.retryable = retryable


class ConsistencyWarning(UserWarning):
    """An aggregate update failed after the ledger write succeeded."""

    def __init__(self, message: str, *, user_id: int, scope: str) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.scope = scope
