"""Failure taxonomy shared by the allocation and cancellation flows."""

import enum


class FailureReason(str, enum.Enum):
    """Why a booking or cancellation request produced no change."""
    INVALID_REQUEST = 'invalid_request'
    UNKNOWN_CATEGORY = 'unknown_category'
    UNKNOWN_SEAT = 'unknown_seat'
    DUPLICATE_SEAT = 'duplicate_seat'
    INSUFFICIENT_SEATS = 'insufficient_seats'
    NO_ADJOINING_BLOCK = 'no_adjoining_block'
    SEAT_UNAVAILABLE = 'seat_unavailable'
    CONTENTION = 'contention'
    BOOKING_MISMATCH = 'booking_mismatch'

    @property
    def is_validation(self) -> bool:
        return self in (
            FailureReason.INVALID_REQUEST,
            FailureReason.UNKNOWN_CATEGORY,
            FailureReason.UNKNOWN_SEAT,
            FailureReason.DUPLICATE_SEAT,
        )


class BookingRejected(Exception):
    """Expected negative outcome; raising it inside a session rolls the transaction back."""

    def __init__(self, reason: FailureReason, message: str = ''):
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message or reason.value


class StoreUnavailableError(Exception):
    """The store could not complete the transaction (connection lost, deadlock, ...)."""
