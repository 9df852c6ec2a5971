"""
Shared error handling for the groups engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class GroupsException(Exception):
    """Base exception for the groups engine.

    ``code`` is a stable message key that presentation layers can localize.
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(GroupsException):
    """Referenced group or subject does not exist."""

    GROUP_CODE = "GROUP_DOES_NOT_EXIST"
    USER_CODE = "USER_NOT_EXISTS"

    def __init__(self, code: str = GROUP_CODE, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)

    @classmethod
    def group(cls, name: str) -> "NotFoundError":
        return cls(cls.GROUP_CODE, f"Group '{name}' does not exist", {"group": name})

    @classmethod
    def user(cls, name: str) -> "NotFoundError":
        return cls(cls.USER_CODE, f"User '{name}' does not exist", {"subject": name})


class AlreadyExistsError(GroupsException):
    """Group creation for a name that is already registered."""

    def __init__(self, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("GROUP_EXIST", f"Group '{name}' already exists", {"group": name, **(details or {})})


class AlreadyHasGroupError(GroupsException):
    """Assignment of a group the subject already holds."""

    def __init__(self, subject: str, group: str):
        super().__init__(
            "USER_GROUP_ALREADY_HAS",
            f"User '{subject}' already has group '{group}'",
            {"subject": subject, "group": group}
        )


class InvalidGroupNameError(GroupsException):
    """Group name that is empty or contains a dot."""

    def __init__(self, name: str):
        super().__init__("INVALID_GROUP_NAME", f"Invalid group name '{name}'", {"group": name})


class InvalidPrefixError(GroupsException):
    """Prefix text outside the allowed length bounds."""

    def __init__(self, prefix: str, min_length: int, max_length: int):
        super().__init__(
            "INVALID_PREFIX",
            f"Prefix must be between {min_length} and {max_length} characters",
            {"prefix": prefix, "length": len(prefix)}
        )


class StorageError(GroupsException):
    """Opaque failure reported by the storage backend."""

    def __init__(self, operation: str, message: str = "Storage failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_FAILURE", f"{operation}: {message}", {"operation": operation, **(details or {})})
        self.operation = operation
