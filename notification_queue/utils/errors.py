from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError


class DatabaseError(Exception):
    """Custom exception for database-related errors."""

    def __init__(self, message: str, error_code: str = "DB_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class NotFoundError(Exception):
    """Custom exception for resource not found errors."""

    def __init__(
        self, message: str = "Resource not found", error_code: str = "NOT_FOUND"
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class RecipientNotFoundError(NotFoundError):
    """Raised when an enqueue call references users that do not exist."""

    def __init__(self, missing_ids: Iterable[str]):
        self.missing_ids = sorted(set(missing_ids))
        super().__init__(
            message=f"Unknown notification recipients: {', '.join(self.missing_ids)}",
            error_code="RECIPIENT_NOT_FOUND",
        )


class NotificationValidationError(Exception):
    """Raised when a notification is rejected before anything is written."""

    def __init__(
        self,
        message: str = "Notification validation failed",
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: str = "VALIDATION_ERROR",
    ):
        super().__init__(message)
        self.message = message
        self.errors = errors or []
        self.error_code = error_code

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "NotificationValidationError":
        formatted_errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"])
            formatted_errors.append(
                {
                    "field": field_path,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return cls(errors=formatted_errors)
