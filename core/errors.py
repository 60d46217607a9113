from typing import Optional


class APIClientError(Exception):
    """Base class for failures raised by the storage adapters."""


class AuthenticationRequiredError(APIClientError):
    """No authenticated user id is available. Raised before any remote call."""

    def __init__(self, message: str = "ログインしていません"):
        super().__init__(message)


class NotFoundError(APIClientError):
    """A lookup by id or by share code found nothing."""

    def __init__(self, message: str = "データが見つかりませんでした"):
        super().__init__(message)


class InvalidPayloadError(APIClientError):
    """Data could not be encoded (image compression, nested JSON) before sending."""


class RemoteOperationError(APIClientError):
    """The backend rejected an operation. Wraps the underlying cause."""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        server_error_code: Optional[str] = None,
        reason: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.cause = cause
        self.server_error_code = server_error_code
        self.reason = reason
        self.status_code = status_code

    def __str__(self):
        base = super().__str__()
        if self.server_error_code:
            return f"{base} ({self.server_error_code}: {self.reason})"
        if self.cause is not None:
            return f"{base}: {self.cause}"
        return base
