"""
Shared error types for request validation and lookups.

Collector and analyzer errors live next to the clients that raise them.
"""


class InvalidInputError(ValueError):
    """Malformed period, missing report-card data or an invalid status value."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class NotFoundError(LookupError):
    """A requested record does not exist."""
