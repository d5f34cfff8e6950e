"""Exception types raised by the dashboard services."""


class OEEAppError(Exception):
    """Base class for errors that map onto a user-facing response."""

    status_code = 500
    public_message: str | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict[str, str]:
        return {"error": self.public_message or self.message}


class NotFoundError(OEEAppError):
    status_code = 404


class ConflictError(OEEAppError):
    status_code = 409


class ValidationError(OEEAppError):
    status_code = 400


class UnauthorizedError(OEEAppError):
    status_code = 403


class TransientStoreError(OEEAppError):
    """Raised when Supabase could not complete a request.

    The detailed message is logged; clients only see the generic text.
    """

    status_code = 503
    public_message = "The data service is unavailable. Please try again."


__all__ = [
    "OEEAppError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "UnauthorizedError",
    "TransientStoreError",
]
