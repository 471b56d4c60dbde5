from fastapi import status


class LibraryError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Server error."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidArgument(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request."


class Conflict(LibraryError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Requested change is not allowed in the current state."


class NotFound(LibraryError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found."


class DependencyFailure(LibraryError):
    """A store or third-party call failed; nothing was persisted."""
