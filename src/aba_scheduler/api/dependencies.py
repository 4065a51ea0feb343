"""
FastAPI dependency injection for the scheduler API
"""
import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import HTTPException, Request, Response

from ..config import Settings
from ..core.services import SchedulingServices
from ..models import SchedulingOutcome, Session
from ..utils.exceptions import (
    VALIDATION_EXCEPTIONS,
    ConflictError,
    NotFoundError,
    SchedulerError,
    TransactionError,
)

logger = logging.getLogger(__name__)

OUTCOME_STATUS_CODES = {
    SchedulingOutcome.CONFLICT: 409,
    SchedulingOutcome.VALIDATION_ERROR: 422,
    SchedulingOutcome.NOT_FOUND: 404,
    SchedulingOutcome.TRANSACTION_ERROR: 503,
}


def get_services(request: Request) -> SchedulingServices:
    """Services built for this application instance"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Scheduling services are not initialized")
    return services


def get_settings(request: Request) -> Settings:
    return get_services(request).settings


def apply_outcome_status(response: Response, outcome: SchedulingOutcome, success_status: int = 200):
    """Set the HTTP status for a tagged service result"""
    response.status_code = OUTCOME_STATUS_CODES.get(outcome, success_status)


def exception_status_code(exc: SchedulerError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, VALIDATION_EXCEPTIONS):
        return 422
    if isinstance(exc, TransactionError):
        return 503
    return 500


async def load_session(session_id: str, services: SchedulingServices) -> Session:
    session = await services.database.sessions.find_by_id(session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found", entity_type="session", entity_id=session_id)
    return session


def get_request_context(request: Request) -> Dict[str, Any]:
    """Extract request context for logging"""
    return {
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
        "request_id": request.headers.get("x-request-id"),
        "timestamp": datetime.now().isoformat()
    }
