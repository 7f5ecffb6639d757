from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class AuthError(AppError):
    pass


class ConnectTimeoutError(AppError, TimeoutError):
    pass


class ConnectionExhaustedError(AppError, ConnectionError):
    """Reconnection budget is spent; only a user-initiated connect recovers."""


class TransportError(AppError):
    pass


class ValidationError(AppError):
    pass


class SendError(AppError):
    pass


class ConversationClosedError(AppError):
    pass


class ApiError(AppError):
    def __init__(self, detail: str = "", status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(detail)
