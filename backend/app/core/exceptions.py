"""
Unified base exception classes for all services.

Each service narrows these with its own errors (e.g. InsufficientBalanceError)
so callers can catch per-service. Every error carries a category from the
public taxonomy and a stable machine-readable code; the API layer renders
them through one exception handler.
"""
from typing import Optional


class ErrorCategory:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION_ERROR: 400,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.UNAUTHORIZED: 401,
    ErrorCategory.INTERNAL_ERROR: 500,
}


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    category = ErrorCategory.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        category: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        if category is not None:
            self.category = category
        self.code = code or self.category
        self.status_code = status_code or _STATUS_BY_CATEGORY.get(self.category, 400)
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.category,
            "code": self.code,
            "message": self.message,
        }


class ValidationError(ServiceError):
    category = ErrorCategory.VALIDATION_ERROR


class ConflictError(ServiceError):
    category = ErrorCategory.CONFLICT


class NotFoundError(ServiceError):
    category = ErrorCategory.NOT_FOUND

    def __init__(self, entity: str, entity_id, code: Optional[str] = None):
        super().__init__(f"{entity} {entity_id} not found", code=code or f"{entity.upper().replace(' ', '_')}_NOT_FOUND")


class UnauthorizedError(ServiceError):
    category = ErrorCategory.UNAUTHORIZED


class InternalError(ServiceError):
    category = ErrorCategory.INTERNAL_ERROR
