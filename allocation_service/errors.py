from typing import Optional


class AllocationError(Exception):
    """
    Base class for every failure the allocation engine reports.

    Attributes
    ----------
    kind : str
        Stable error identifier returned to callers.
    status_code : int
        HTTP status used when the error crosses the API boundary.
    retryable : bool
        Whether the caller may resend the same request unchanged.
    """

    kind = "AllocationError"
    status_code = 400
    retryable = False
    default_message = "The allocation request could not be completed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidDateRange(AllocationError):
    kind = "InvalidDateRange"
    status_code = 400
    default_message = "end_date must be after start_date"


class InvalidSemester(InvalidDateRange):
    default_message = "Invalid semester format"


class BedNotFound(AllocationError):
    kind = "BedNotFound"
    status_code = 404
    default_message = "Bed not found"


class StudentNotFound(AllocationError):
    kind = "StudentNotFound"
    status_code = 404
    default_message = "Student not found"


class BookingNotFound(AllocationError):
    kind = "BookingNotFound"
    status_code = 404
    default_message = "Booking not found"


class BedUnavailable(AllocationError):
    kind = "BedUnavailable"
    status_code = 409
    default_message = "Bed is already booked for this date range"


class DuplicateActiveBooking(AllocationError):
    kind = "DuplicateActiveBooking"
    status_code = 409
    default_message = "Student already has an active or pending booking"


class InvalidTransition(AllocationError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Illegal booking transition: {from_status} -> {to_status}"
        )


class PaymentAlreadyRecorded(AllocationError):
    kind = "PaymentAlreadyRecorded"
    status_code = 409
    default_message = (
        "Payment already completed for this booking. "
        "You cannot pay twice for the same booking."
    )


class TransactionConflict(AllocationError):
    kind = "TransactionConflict"
    status_code = 503
    retryable = True
    default_message = "The operation conflicted with a concurrent request; please retry"
