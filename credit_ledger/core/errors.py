from __future__ import annotations

from typing import Optional


class CreditError(Exception):
    """Base class for every error raised by the credit ledger."""

    code = "CREDIT_ERROR"


class InvalidInputError(CreditError):
    """Raised for a malformed amount, duration or account identity."""

    code = "INVALID_INPUT"


class InsufficientCreditsError(CreditError):
    """Raised by the store when a conditional debit matches no row."""

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, message: str, *, balance: int, required: Optional[int] = None) -> None:
        super().__init__(message)
        self.balance = balance
        self.required = required


class ReservationNotFoundError(CreditError):
    """Raised when a reservation id / job id pairing is unknown."""

    code = "RESERVATION_NOT_FOUND"


class AlreadyFinalizedError(CreditError):
    """Raised when a terminal reservation would be moved to another state."""

    code = "ALREADY_FINALIZED"


class AlreadyRefundedError(CreditError):
    """Raised on a second refund of the same reservation."""

    code = "ALREADY_REFUNDED"


class InvalidRefundAmountError(CreditError):
    """Raised when a partial refund is not within 1..reserved amount."""

    code = "INVALID_REFUND_AMOUNT"


class StoreUnavailableError(CreditError):
    """Raised when a transaction could not be committed; safe to retry."""

    code = "STORE_UNAVAILABLE"


class PackageNotFoundError(CreditError):
    """Raised when a purchase names an unknown or retired package."""

    code = "PACKAGE_NOT_FOUND"
