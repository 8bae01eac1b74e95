class MissingFieldException(Exception):
    pass


class InvalidDoctorException(Exception):
    pass


class SlotTakenException(Exception):
    pass


class AppointmentNotFoundException(Exception):
    pass


class StoreException(Exception):
    """The appointment store failed in a way a retry will not fix."""


class TransientStoreException(StoreException):
    """Timeout, throttling or contention; safe to retry with backoff."""
