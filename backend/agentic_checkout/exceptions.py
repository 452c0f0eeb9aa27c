"""
Checkout Exception Hierarchy

Error types and codes returned in the flat protocol error body:
{"type": ..., "code": ..., "message": ..., "param": ...}
"""
from typing import Optional, Dict, Any


class CheckoutError(Exception):
    """
    Base exception for all protocol errors.

    Every error carries the HTTP status it maps to so the exception
    handler in main.py can render it without a lookup table.
    """

    status_code: int = 400
    error_type: str = "invalid_request"

    def __init__(
        self,
        code: str,
        message: str,
        param: Optional[str] = None,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None
    ):
        self.code = code
        self.message = message
        self.param = param
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        body = {
            "type": self.error_type,
            "code": self.code,
            "message": self.message,
        }
        if self.param is not None:
            body["param"] = self.param
        return body


class InvalidRequestError(CheckoutError):
    """
    Malformed or missing request data.

    Raised before any state is touched.
    """

    def __init__(self, message: str, param: Optional[str] = None, code: str = "invalid_request"):
        super().__init__(code, message, param)


class UnauthorizedError(CheckoutError):
    """Missing or wrong Bearer credential when an API key is configured."""

    status_code = 401

    def __init__(self, message: str = "Invalid or missing Authorization header"):
        super().__init__("unauthorized", message)


class SessionNotFoundError(CheckoutError):
    """No checkout session with the requested id."""

    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("session_not_found", f"Checkout session {session_id} not found")


class SessionFinalizedError(CheckoutError):
    """
    Mutation attempted on a completed or canceled session.

    Examples:
    - Update after completion
    - Cancel after completion
    """

    status_code = 405

    def __init__(self, session_id: str, status: str):
        super().__init__(
            "session_already_finalized",
            f"Checkout session {session_id} is already {status}",
        )


class SessionExpiredError(CheckoutError):
    """The session passed its expires_at; it has been canceled."""

    def __init__(self, session_id: str):
        super().__init__("session_expired", f"Checkout session {session_id} has expired")


class SessionNotReadyError(CheckoutError):
    """Complete called before the session reached ready_for_payment."""

    def __init__(self, status: str):
        super().__init__(
            "session_not_ready",
            f"Session status is {status}, expected ready_for_payment",
        )


class TokenError(CheckoutError):
    """
    Delegated token rejected by the vault.

    Codes:
    - invalid_token (404)
    - token_already_used
    - token_expired
    - invalid_session
    - amount_exceeds_allowance
    - currency_mismatch
    """


class InvalidTokenError(TokenError):
    status_code = 404

    def __init__(self, token_id: str):
        super().__init__("invalid_token", f"Token {token_id} not found")


class TokenAlreadyUsedError(TokenError):
    def __init__(self):
        super().__init__("token_already_used", "Token has already been used")


class TokenExpiredError(TokenError):
    def __init__(self):
        super().__init__("token_expired", "Token has expired")


class TokenSessionMismatchError(TokenError):
    def __init__(self):
        super().__init__("invalid_session", "Token is not valid for this checkout session")


class AmountExceedsAllowanceError(TokenError):
    def __init__(self, amount: int, max_amount: int):
        super().__init__(
            "amount_exceeds_allowance",
            f"Amount {amount} exceeds maximum allowed {max_amount}",
        )


class CurrencyMismatchError(TokenError):
    def __init__(self, currency: str, token_currency: str):
        super().__init__(
            "currency_mismatch",
            f"Currency {currency} does not match token currency {token_currency}",
        )


class IdempotencyConflictError(CheckoutError):
    """Same Idempotency-Key reused with a different request."""

    status_code = 409

    def __init__(self):
        super().__init__(
            "idempotency_conflict",
            "Same Idempotency-Key used with different parameters",
        )


class IdempotencyInProgressError(CheckoutError):
    """A concurrent request holding the same key has not finished yet."""

    status_code = 409

    def __init__(self):
        super().__init__(
            "idempotency_in_progress",
            "A request with this Idempotency-Key is still being processed",
        )


class PaymentDeclinedError(CheckoutError):
    """
    Payment processor declined the charge.

    The session stays ready_for_payment so the client may retry.
    """

    error_type = "processing_error"

    def __init__(self, reason: str):
        super().__init__("payment_declined", f"Payment declined: {reason}")


class ProcessingError(CheckoutError):
    """Unexpected downstream failure."""

    status_code = 500
    error_type = "processing_error"

    def __init__(self, message: str, code: str = "internal_error"):
        super().__init__(code, message)
