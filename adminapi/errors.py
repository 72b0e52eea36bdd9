from __future__ import annotations


class AdminApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthExpiredError(AdminApiError):
    def __init__(self, message: str = "Access token expired.", *, status_code: int | None = 401) -> None:
        super().__init__(message, status_code=status_code)


class AuthRefreshError(AdminApiError):
    """A single token refresh attempt failed; the session may still recover."""


class AuthRefreshExhaustedError(AuthRefreshError):
    """Refresh retries are used up and stored credentials were cleared."""

    def __init__(self, message: str = "Token refresh failed. Please log in again.") -> None:
        super().__init__(message, status_code=401)


class UploadValidationError(AdminApiError):
    pass


class TransferError(AdminApiError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        bytes_uploaded: int = 0,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.bytes_uploaded = bytes_uploaded


class UploadAbortedError(TransferError):
    pass


class FinalizationError(AdminApiError):
    """The bytes reached the server but the artifact could not be derived."""


class NetworkError(AdminApiError):
    pass


class ServerError(AdminApiError):
    pass


class ApiResponseError(AdminApiError):
    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.error_code = error_code
