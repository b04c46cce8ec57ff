class MessagingError(Exception):
    """Base class for errors raised by the messaging services."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(MessagingError):
    status_code = 404


class Forbidden(MessagingError):
    status_code = 403


class InvalidArgument(MessagingError):
    status_code = 400


class UploadFailed(MessagingError):
    status_code = 502
