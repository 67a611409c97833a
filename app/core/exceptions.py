class LibraryError(Exception):
    """Base exception for booking and fine errors."""
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidState(LibraryError):
    """Operation is not allowed in the booking's current state."""
    status_code = 409


class NotFound(LibraryError):
    """Referenced booking, book or user does not exist."""
    status_code = 404


class Forbidden(LibraryError):
    """Actor may not perform the operation."""
    status_code = 403


class PersistenceFailure(LibraryError):
    """The database rejected a read or write."""
    status_code = 503


class ConfigurationError(LibraryError):
    """A periodic task was given missing or invalid parameters."""
    status_code = 500
