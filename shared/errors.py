"""
shared/errors.py
Typed business-rule errors raised by the booking core.

Every error carries the HTTP status the API maps it to and a stable machine
code, so callers can tell a lost race (CONCURRENT_MODIFICATION) from a slot
that is simply taken (SLOT_CONFLICT) and retry slot selection safely.
"""

from fastapi import status


class BookingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BOOKING_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(BookingError):
    """Malformed date/time/amount. Recoverable by re-input."""
    code = "VALIDATION_ERROR"


class NoAvailabilityError(BookingError):
    """The specialist has no active availability rule for the day."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "NO_AVAILABILITY"


class SlotConflictError(BookingError):
    """The (specialist, date, start_time) tuple is already occupied."""
    status_code = status.HTTP_409_CONFLICT
    code = "SLOT_CONFLICT"


class RequestExpiredError(BookingError):
    """The payment deadline of a session request has passed."""
    code = "REQUEST_EXPIRED"


class InvalidStateError(BookingError):
    """A transition was attempted from a status that does not allow it."""
    code = "INVALID_STATE"


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"


class SessionRequestNotFoundError(NotFoundError):
    code = "SESSION_REQUEST_NOT_FOUND"


class ConcurrentModificationError(BookingError):
    """Another writer changed the row between our read and our write."""
    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENT_MODIFICATION"


class SchedulerNotRunningError(BookingError):
    """No reminder scheduler runs in this process; its ledger lives elsewhere."""
    status_code = status.HTTP_409_CONFLICT
    code = "SCHEDULER_NOT_RUNNING"
