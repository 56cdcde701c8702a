"""Exception hierarchy shared by the clients, services and reconcilers.

Clients raise these; reconcilers and services catch them at the operation
boundary and turn them into a message on the returned view state.
"""

from __future__ import annotations


class CampusFeedError(RuntimeError):
    """Base class for every failure raised by this package."""


class InputValidationError(CampusFeedError):
    """Raised when a required field is empty. No request is made."""


class NotAuthenticatedError(CampusFeedError):
    """Raised when an action needs a signed-in identity and there is none."""


class GatewayError(CampusFeedError):
    """Raised when a read or write against the data gateway fails.

    Attributes:
        code: Backend error code when the server supplied one (e.g. ``"23505"``).
        status_code: HTTP status of the failed response, if any.
    """

    def __init__(
        self, message: str, *, code: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class UniqueViolationError(GatewayError):
    """Raised when an insert collides with a unique constraint."""


class AuthError(CampusFeedError):
    """Raised when the identity service rejects a request."""


class UploadFailedError(CampusFeedError):
    """Raised when an object storage upload fails."""
