"""Domain errors raised by booking components."""


class BookingCoreError(RuntimeError):
    """Base booking domain error."""


class ValidationError(BookingCoreError):
    """Raised when input is malformed; the caller must fix and resubmit."""


class ConflictError(BookingCoreError):
    """Raised when the request clashes with existing state."""


class SlotOverlapError(ValidationError, ConflictError):
    """Raised when a slot window overlaps another slot of the same shop."""


class AdmissionError(BookingCoreError):
    """Raised when a booking request is not admitted."""

    reason = "Rejected"


class ShopClosedError(AdmissionError):
    reason = "ShopClosed"


class SlotUnavailableError(AdmissionError):
    reason = "SlotUnavailable"


class InvalidTransitionError(BookingCoreError):
    """Raised when a status change is not allowed by the booking lifecycle."""

    def __init__(self, current: str, requested: str, role: str) -> None:
        super().__init__(f"Cannot move booking from {current} to {requested} as {role}.")
        self.current = current
        self.requested = requested
        self.role = role


class NotFoundError(BookingCoreError):
    """Raised when requested object doesn't exist."""


class ForbiddenError(BookingCoreError):
    """Raised when the caller cannot access operation."""
