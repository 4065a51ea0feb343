"""
Custom exceptions for the scheduling service
"""
from typing import Any


class SchedulerError(Exception):
    """Base exception for scheduler-related errors"""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__.upper()
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(SchedulerError):
    """Exception raised when a request or business rule check fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any | None = None,
        validation_rules: list[str] | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, "VALIDATION_FAILED", details)
        self.field = field
        self.value = value
        self.validation_rules = validation_rules or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["validation_info"] = {
            "field": self.field,
            "value": self.value,
            "validation_rules": self.validation_rules
        }
        return result


class NotFoundError(SchedulerError):
    """Exception raised when a referenced entity does not exist"""

    def __init__(
        self,
        message: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, "NOT_FOUND", details)
        self.entity_type = entity_type
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["entity_info"] = {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id
        }
        return result


class ConflictError(SchedulerError):
    """Exception raised when a write would double-book a caregiver or client"""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        conflicting_session_ids: list[str] | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, "SCHEDULING_CONFLICT", details)
        self.session_id = session_id
        self.conflicting_session_ids = conflicting_session_ids or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["conflict_info"] = {
            "session_id": self.session_id,
            "conflicting_session_ids": self.conflicting_session_ids
        }
        return result


class InvalidStateTransitionError(SchedulerError):
    """Exception raised when a session status change is not allowed"""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        current_status: str | None = None,
        requested_status: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, "INVALID_STATE_TRANSITION", details)
        self.session_id = session_id
        self.current_status = current_status
        self.requested_status = requested_status

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["transition_info"] = {
            "session_id": self.session_id,
            "current_status": self.current_status,
            "requested_status": self.requested_status
        }
        return result


class TransactionError(SchedulerError):
    """Exception raised when a persistence transaction fails and is rolled back"""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        lock_keys: list[str] | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, "TRANSACTION_FAILED", details)
        self.operation = operation
        self.lock_keys = lock_keys or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["transaction_info"] = {
            "operation": self.operation,
            "lock_keys": self.lock_keys
        }
        return result


class ConfigurationError(SchedulerError):
    """Exception raised when configuration is invalid"""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        expected_type: str | None = None,
        actual_value: Any | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, "CONFIGURATION_ERROR", details)
        self.config_key = config_key
        self.expected_type = expected_type
        self.actual_value = actual_value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["config_info"] = {
            "key": self.config_key,
            "expected_type": self.expected_type,
            "actual_value": self.actual_value
        }
        return result


# Exception hierarchy for easy catching
VALIDATION_EXCEPTIONS = (
    ValidationError,
    InvalidStateTransitionError
)

PERSISTENCE_EXCEPTIONS = (
    ConflictError,
    TransactionError
)


def create_error_response(exception: SchedulerError) -> dict[str, Any]:
    """Create standardized error response from exception"""
    from datetime import datetime

    response = exception.to_dict()
    response["timestamp"] = datetime.now().isoformat()
    return response
