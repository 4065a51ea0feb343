"""
API module for the ABA Session Scheduler

- Route handlers for scheduling, reporting and health endpoints
- Dependency injection for the scheduling services
"""

from .dependencies import apply_outcome_status, get_services, get_settings

__all__ = [
    "apply_outcome_status",
    "get_services",
    "get_settings",
]
