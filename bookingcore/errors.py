class BookingCoreError(Exception):
    """Base class for errors surfaced to callers of the booking core."""


class ValidationError(BookingCoreError, ValueError):
    """Malformed input: bad schedule, non-positive duration, unknown service."""


class InvalidTransition(BookingCoreError, ValueError):
    def __init__(self, current: str, target: str, entity: str = "appointment"):
        self.current = current
        self.target = target
        self.entity = entity
        super().__init__(f"Invalid {entity} status transition: {current} -> {target}")


class ConflictError(BookingCoreError):
    """The requested interval is no longer free."""


class NotFoundError(BookingCoreError):
    """Unknown id, or an id that belongs to a different account."""
