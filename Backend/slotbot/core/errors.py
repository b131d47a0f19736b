"""
Error taxonomy for the booking bot.

Every failure the bot reports to a user is a BotError subclass carrying a
stable error code and a short user-facing message.

FAMILIES:
    - ValidationError: bad user input (date/time, service name, identity).
      Reported to the user; an active conversation flow stays on its step.
    - NotFoundError: slot, booking, specialist, user or feedback is absent.
      Reported; the active flow step is aborted.
    - ConflictError: state conflict (slot already booked, duplicate record,
      closed feedback). Reported with a retry affordance.
    - OwnershipError: the requester does not own the target record.
    - PersistenceError: a database transaction failed and was rolled back.
      Users get a generic apology, admins get the detail.
"""

from typing import Optional


class ErrorCodes:
    """Standard error codes used by bot replies and HTTP responses."""

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_DATE_TIME = "INVALID_DATE_TIME"
    INVALID_SERVICE_NAME = "INVALID_SERVICE_NAME"
    INVALID_IDENTITY = "INVALID_IDENTITY"

    # Not found errors
    NOT_FOUND = "NOT_FOUND"
    SLOT_NOT_FOUND = "SLOT_NOT_FOUND"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    SPECIALIST_NOT_FOUND = "SPECIALIST_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    FEEDBACK_NOT_FOUND = "FEEDBACK_NOT_FOUND"

    # Conflict errors
    CONFLICT = "CONFLICT"
    SLOT_ALREADY_BOOKED = "SLOT_ALREADY_BOOKED"
    SLOT_EXISTS = "SLOT_EXISTS"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    FEEDBACK_CLOSED = "FEEDBACK_CLOSED"

    # Ownership errors
    NOT_OWNER = "NOT_OWNER"

    # Server errors
    DATABASE_ERROR = "DATABASE_ERROR"


class BotError(Exception):
    """Base class for every reportable failure."""

    code = ErrorCodes.VALIDATION_ERROR
    default_message = "Something went wrong."
    # Whether an active conversation flow stays on its current step
    keeps_step = False

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details or {}
        # Set once the failure has been broadcast to admins
        self.alerted = False
        super().__init__(self.message)


class ValidationError(BotError):
    code = ErrorCodes.VALIDATION_ERROR
    default_message = "The value you entered is not valid."
    keeps_step = True


class InvalidDateTime(ValidationError):
    code = ErrorCodes.INVALID_DATE_TIME
    default_message = "Invalid date or time. Use the format YYYY-MM-DD HH:MM."


class InvalidServiceName(ValidationError):
    code = ErrorCodes.INVALID_SERVICE_NAME
    default_message = "A service name may only contain letters, spaces and hyphens."


class InvalidIdentity(ValidationError):
    code = ErrorCodes.INVALID_IDENTITY
    default_message = "Invalid Telegram ID. Enter digits only."


class NotFoundError(BotError):
    code = ErrorCodes.NOT_FOUND
    default_message = "Nothing was found."


class SlotNotFound(NotFoundError):
    code = ErrorCodes.SLOT_NOT_FOUND
    default_message = "Slot not found."


class BookingNotFound(NotFoundError):
    code = ErrorCodes.BOOKING_NOT_FOUND
    default_message = "Booking not found."


class SpecialistNotFound(NotFoundError):
    code = ErrorCodes.SPECIALIST_NOT_FOUND
    default_message = "Specialist not found."


class UserNotFound(NotFoundError):
    code = ErrorCodes.USER_NOT_FOUND
    default_message = "User not found. Please use /start."


class FeedbackNotFound(NotFoundError):
    code = ErrorCodes.FEEDBACK_NOT_FOUND
    default_message = "Feedback request not found."


class ConflictError(BotError):
    code = ErrorCodes.CONFLICT
    default_message = "This action conflicts with the current state."
    keeps_step = True


class SlotAlreadyBooked(ConflictError):
    code = ErrorCodes.SLOT_ALREADY_BOOKED
    default_message = "This slot is already taken. Please choose another one."


class SlotConflict(ConflictError):
    code = ErrorCodes.SLOT_EXISTS
    default_message = "This specialist already has a slot at that date and time."


class AlreadyRegistered(ConflictError):
    code = ErrorCodes.ALREADY_REGISTERED
    default_message = "This Telegram ID is already registered as a specialist."


class FeedbackClosed(ConflictError):
    code = ErrorCodes.FEEDBACK_CLOSED
    default_message = "This feedback request is already closed."
    keeps_step = False


class OwnershipError(BotError):
    code = ErrorCodes.NOT_OWNER
    default_message = "You are not allowed to change this record."


class NotOwner(OwnershipError):
    default_message = "You can only cancel your own bookings."


class PersistenceError(BotError):
    code = ErrorCodes.DATABASE_ERROR
    default_message = "Sorry, something went wrong on our side. Please try again with /reset."
