"""Domain exceptions."""


class ValidationError(ValueError):
    """Raised when a subject identifier or position sample is malformed."""

    pass


class PersistenceError(Exception):
    """Raised by storage collaborators when a read or write fails."""

    pass
