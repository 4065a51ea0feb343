"""
FastAPI main application for the ABA Session Scheduling Service
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.dependencies import exception_status_code, get_request_context
from .api.routes import health_router, reports_router, scheduling_router
from .config import Settings, get_settings
from .core.clock import Clock
from .core.services import SchedulingServices
from .database import Database, create_database
from .logging_config import setup_logging
from .utils.exceptions import SchedulerError, create_error_response

logger = logging.getLogger(__name__)


def create_app(
    database: Optional[Database] = None,
    clock: Optional[Clock] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """Build an application around one database and clock"""
    settings = settings or get_settings()
    database = database or create_database(settings)
    services = SchedulingServices.build(database, clock=clock, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan events"""
        setup_logging(settings)
        logger.info(f"Starting {settings.app_name}")
        logger.info(f"Version: {settings.app_version}")
        logger.info(f"Environment: {'Development' if settings.debug else 'Production'}")

        await database.initialize()
        if await database.health_check():
            logger.info("Database operational")
        else:
            logger.warning("Database health check failed")

        yield

        logger.info(f"Shutting down {settings.app_name}")
        await services.cache_manager.clear()
        await database.close()

    app = FastAPI(
        title=settings.app_name,
        description="""
        Scheduling engine for ABA therapy sessions.

        Features:
        - Three-hour sessions within business hours and weekdays
        - Caregiver and client double-booking protection
        - Continuity-first caregiver selection from the client's team
        - Cancellation with alternative and reschedule opportunities
        - Caregiver unavailability with automatic reassignment
        - Disruption reports and audit trails
        """,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(scheduling_router, prefix="/api")
    app.include_router(reports_router, prefix="/api")
    app.include_router(health_router)

    @app.exception_handler(SchedulerError)
    async def scheduler_exception_handler(request: Request, exc: SchedulerError):
        """Map service errors to HTTP status codes"""
        status_code = exception_status_code(exc)
        context = get_request_context(request)
        logger.warning(f"{context['method']} {context['path']} failed with {status_code}: {exc.message}")
        return JSONResponse(status_code=status_code, content=create_error_response(exc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions"""
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status_code": exc.status_code},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500, content={"error": "Internal server error", "status_code": 500}
        )

    return app


app = create_app()


def run():
    """Console entry point"""
    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "aba_scheduler.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    run()
