"""
Exception taxonomy for ledger, card and gateway operations.

Every check fails fast with one of these before any row is mutated. Each
error carries a stable code and the HTTP status the gateway answers with.
"""
from typing import Any, Dict, Optional


class GiftLedgerError(Exception):
    """
    Base exception for all platform errors.

    Carries:
    - Error code (for client handling)
    - Message (safe to show to API callers)
    - HTTP status code (for API responses)
    """

    code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error body used in API responses."""
        return {"code": self.code, "message": self.message}


# ============================================================================
# IDENTITY AND SCOPE
# ============================================================================

class UnauthorizedError(GiftLedgerError):
    """Caller identity is missing or the API key is invalid, revoked or expired."""

    code = "UNAUTHORIZED"
    http_status = 401


class ForbiddenError(GiftLedgerError):
    """Caller is known but has no access to the requested merchant or partner."""

    code = "FORBIDDEN"
    http_status = 403


class PermissionDeniedError(GiftLedgerError):
    """API key lacks the capability string required by the route."""

    code = "PERMISSION_DENIED"
    http_status = 403


class RateLimitedError(GiftLedgerError):
    """Minute or day request window is exhausted."""

    code = "RATE_LIMITED"
    http_status = 429


# ============================================================================
# RESOURCES AND INPUT
# ============================================================================

class NotFoundError(GiftLedgerError):
    code = "NOT_FOUND"
    http_status = 404


class ValidationError(GiftLedgerError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidAmountError(GiftLedgerError):
    code = "INVALID_AMOUNT"
    http_status = 400


class ConflictError(GiftLedgerError):
    """Uniqueness violation, e.g. a duplicate customer email."""

    code = "CONFLICT"
    http_status = 409


# ============================================================================
# LEDGER
# ============================================================================

class ConcurrentModificationError(ConflictError):
    """Card balance changed between the read and the write; safe to retry."""

    code = "CONCURRENT_MODIFICATION"


class InsufficientBalanceError(GiftLedgerError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 422


class CardInactiveError(GiftLedgerError):
    code = "CARD_INACTIVE"
    http_status = 422


class CardExpiredError(GiftLedgerError):
    code = "CARD_EXPIRED"
    http_status = 422


class InternalError(GiftLedgerError):
    code = "INTERNAL_ERROR"
    http_status = 500
