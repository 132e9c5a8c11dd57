# errors.py — Domain error taxonomy for ProjectDesk
# Services raise these; main.py renders them as JSON with the matching status.

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for every expected, client-visible failure."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Resource state conflict"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Bad request"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Not authenticated"


class InvalidCredentialsError(UnauthorizedError):
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class AccountNotActiveError(UnauthorizedError):
    code = "ACCOUNT_NOT_ACTIVE"
    default_message = "User account is not active"


class InvalidRefreshTokenError(UnauthorizedError):
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class UserNotFoundError(UnauthorizedError):
    code = "USER_NOT_FOUND"
    default_message = "User not found"


class TooManyAttemptsError(AppError):
    status_code = 429
    code = "TOO_MANY_ATTEMPTS"
    default_message = "Too many login attempts"
