"""Errors raised by the library core.

Each error carries the HTTP status the API answers with, so handlers can
convert them without a lookup table.
"""


class LibraryError(Exception):
    """Base class for library errors surfaced to API clients."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LibraryError):
    status_code = 404


class InvalidSortFieldError(LibraryError):
    status_code = 400


class InvalidStateError(LibraryError):
    status_code = 409


class NoCopiesAvailableError(LibraryError):
    status_code = 409


class ForbiddenError(LibraryError):
    status_code = 403


class NotAuthenticatedError(LibraryError):
    status_code = 401
