"""
Utility functions and classes for the ABA Session Scheduler

- Custom exceptions for error handling
- Helper functions for date arithmetic and metrics
"""

from .exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    SchedulerError,
    TransactionError,
    ValidationError,
)
from .helpers import (
    clamp,
    generate_id,
    get_monday_of_week,
    parse_iso_datetime,
    safe_division,
)

__all__ = [
    "ConfigurationError",
    "ConflictError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "SchedulerError",
    "TransactionError",
    "ValidationError",
    "clamp",
    "generate_id",
    "get_monday_of_week",
    "parse_iso_datetime",
    "safe_division",
]
