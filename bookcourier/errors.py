"""
Service errors

Every business-rule failure is raised as a ServiceError subclass. The HTTP
layer turns them into the standard response envelope using status_code.
"""
from typing import Any, Iterable, Optional


class ServiceError(Exception):
    status_code = 500
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Any] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class BookNotOrderable(ValidationError):
    default_message = "This book is not available for order. Only published books can be ordered."


class Unauthenticated(ServiceError):
    status_code = 401
    default_message = "Authentication required. Please login first."


class Forbidden(ServiceError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"


class Conflict(ServiceError):
    status_code = 409
    default_message = "Request conflicts with the current state"


class AlreadyExists(Conflict):
    default_message = "Resource already exists"


class AlreadyPaid(Conflict):
    default_message = "Payment has already been completed for this order"


class DuplicateKey(Conflict):
    default_message = "Duplicate key"


class InvalidTransition(Conflict):
    def __init__(self, current: str, requested: str, allowed: Iterable[str]):
        self.current = current
        self.requested = requested
        self.allowed = sorted(allowed)
        message = (
            f"Invalid status transition. Cannot change from '{current}' to '{requested}'. "
            f"Valid transitions: {', '.join(self.allowed) or 'none'}"
        )
        super().__init__(message, details={"current_status": current, "allowed": self.allowed})


class DependencyFailure(ServiceError):
    status_code = 500
    default_message = "A backing service failed"
