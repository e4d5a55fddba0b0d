"""Domain errors surfaced by the API, each mapped to an HTTP status."""

from __future__ import annotations

from typing import Optional


class GenpireError(Exception):
    """Base class for errors rendered into the JSON error envelope."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GenpireError):
    """Missing or malformed input, rejected before any credit is reserved."""

    status_code = 400


class AuthenticationError(GenpireError):
    status_code = 401


class InsufficientCreditsError(GenpireError):
    """Reservation denied; the caller should prompt for a purchase."""

    status_code = 402

    def __init__(self, message: str, *, required: int = 0, available: Optional[int] = None):
        super().__init__(message)
        self.required = required
        self.available = available


class NotFoundError(GenpireError):
    status_code = 404


class ConflictError(GenpireError):
    """A concurrent request changed the same record first."""

    status_code = 409


class CreditReservationError(GenpireError):
    """The balance store failed while reserving; generation must not start."""

    status_code = 500


class GenerationFailure(GenpireError):
    """The image provider errored, timed out or returned an unusable result."""

    status_code = 500


class RefundFailure(GenpireError):
    """A compensating refund could not be applied. Logged, never sent to clients."""

    def __init__(
        self,
        message: str,
        *,
        reservation_id: Optional[str] = None,
        amount: int = 0,
        user_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.reservation_id = reservation_id
        self.amount = amount
        self.user_id = user_id
