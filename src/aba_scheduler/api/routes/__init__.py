"""
API routes for the ABA Session Scheduler

- Session scheduling, cancellation and recovery
- Disruption reports and audit trails
- Health checks and system status
"""

from .health import router as health_router
from .reports import router as reports_router
from .scheduling import router as scheduling_router

__all__ = [
    "health_router",
    "reports_router",
    "scheduling_router",
]
