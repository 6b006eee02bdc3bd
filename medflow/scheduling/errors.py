class SchedulingError(Exception):
    """Base error for scheduling failures; carries the HTTP status it maps to."""

    status_code = 500
    default_message = 'Scheduling request failed.'

    def __init__(self, message: str | None = None, *, cause: Exception | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.cause = cause


class AppointmentValidationError(SchedulingError):
    status_code = 400
    default_message = 'Missing required fields.'


class ConflictError(SchedulingError):
    status_code = 409
    default_message = 'Doctor has an overlapping appointment at this time.'


class NotFoundError(SchedulingError):
    status_code = 404
    default_message = 'Appointment not found.'


class ForbiddenError(SchedulingError):
    status_code = 403
    default_message = 'Insufficient permissions.'


class NotOwnerError(ForbiddenError):
    default_message = 'You can only modify your own appointments.'


class InvalidTransitionError(SchedulingError):
    status_code = 403
    default_message = 'This status change is not allowed.'


class TooLateToCancelError(SchedulingError):
    status_code = 400
    default_message = (
        'Cannot cancel appointment less than 24 hours before scheduled time. Please contact the clinic.'
    )


class StoreError(SchedulingError):
    status_code = 500
    default_message = 'Failed to process appointment request.'
