from __future__ import annotations

from typing import Optional


class AppError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationFailed(AppError):
    status_code = 400
    default_detail = "Invalid input"

    def __init__(self, detail: Optional[str] = None, field_errors: Optional[dict[str, list[str]]] = None):
        super().__init__(detail)
        self.field_errors = field_errors or {}


class Unauthorized(AppError):
    status_code = 401
    default_detail = "Invalid credentials"


class Forbidden(AppError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class Conflict(AppError):
    status_code = 409
    default_detail = "Conflict"


class InternalError(AppError):
    pass
