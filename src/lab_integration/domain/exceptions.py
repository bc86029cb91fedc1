"""Exceptions raised by the integration engine."""

from typing import Optional


class IntegrationError(Exception):
    """Base class for integration engine errors."""
    pass


class AuthenticationError(IntegrationError):
    """Raised when an inbound API key does not resolve to an active integration."""
    pass


class MalformedMessageError(IntegrationError):
    """
    Raised when an inbound body cannot be decoded.

    control_id holds the MSH-10 value when the header could still be read,
    so the NACK can be correlated by the sender.
    """

    def __init__(self, message: str, control_id: Optional[str] = None):
        super().__init__(message)
        self.control_id = control_id


class UnsupportedTypeError(IntegrationError):
    """Raised for a well-formed message or resource type with no handler."""
    pass


class ProcessingError(IntegrationError):
    """Raised when a handler fails to apply an inbound message."""
    pass


class UnsupportedQueryError(ProcessingError):
    pass


class DeliveryError(IntegrationError):
    """Raised when a single outbound send fails."""
    pass


class PermissionDeniedError(IntegrationError):
    pass


class NotFoundError(IntegrationError):
    pass


class InvalidSyncWindowError(IntegrationError):
    pass
