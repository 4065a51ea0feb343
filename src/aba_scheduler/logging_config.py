"""
Logging configuration for the ABA Session Scheduling Service
"""
import logging
import logging.config
import sys
from datetime import datetime
from pathlib import Path

import structlog
from pythonjsonlogger import jsonlogger

from .config import Settings, get_settings


def setup_logging(settings: Settings | None = None):
    """Setup structured logging configuration"""
    settings = settings or get_settings()

    # Create logs directory if it doesn't exist
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    app_level = "DEBUG" if settings.debug else settings.log_level.upper()

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s(): %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": jsonlogger.JsonFormatter,
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d %(funcName)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": app_level,
                "formatter": "standard",
                "stream": sys.stdout
            },
            "file_info": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "detailed",
                "filename": log_dir / "aba_scheduler.log",
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            },
            "file_error": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": "detailed",
                "filename": log_dir / "aba_scheduler_errors.log",
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            },
            "json_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "json",
                "filename": log_dir / "aba_scheduler_structured.log",
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            }
        },
        "loggers": {
            # Root logger
            "": {
                "level": "INFO",
                "handlers": ["console", "file_info", "file_error"],
                "propagate": False
            },
            # Application loggers
            "aba_scheduler": {
                "level": app_level,
                "handlers": ["console", "file_info", "file_error"],
                "propagate": False
            },
            "scheduling_events": {
                "level": app_level,
                "handlers": ["json_file"],
                "propagate": False
            },
            # Third-party loggers
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console", "file_info"],
                "propagate": False
            },
            "uvicorn.error": {
                "level": "INFO",
                "handlers": ["console", "file_error"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["file_info"],
                "propagate": False
            },
            # Suppress noisy loggers
            "asyncpg": {
                "level": "WARNING",
                "handlers": ["file_info"],
                "propagate": False
            },
            "redis": {
                "level": "WARNING",
                "handlers": ["file_info"],
                "propagate": False
            }
        }
    }

    # Apply logging configuration
    logging.config.dictConfig(logging_config)

    # Configure structlog for structured logging
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger("aba_scheduler")
    logger.info(f"Logging configured - Debug: {settings.debug}")


class SchedulingEventLogger:
    """Structured logging for scheduling and disruption events"""

    def __init__(self, logger_name: str = "scheduling_events"):
        self.logger = logging.getLogger(logger_name)
        self.structured_logger = structlog.get_logger(logger_name)

    def log_session_scheduled(
        self,
        session_id: str,
        client_id: str,
        rbt_id: str,
        start_time: datetime,
        selection_reason: str | None = None,
        dry_run: bool = False
    ):
        """Log a scheduled (or dry-run validated) session"""
        self.structured_logger.info(
            "session_scheduled",
            session_id=session_id,
            client_id=client_id,
            rbt_id=rbt_id,
            start_time=start_time.isoformat(),
            selection_reason=selection_reason,
            dry_run=dry_run,
            timestamp=datetime.now().isoformat()
        )

    def log_scheduling_conflict(
        self,
        client_id: str,
        start_time: datetime,
        conflict_types: list[str],
        rbt_id: str | None = None
    ):
        """Log a rejected scheduling attempt"""
        self.structured_logger.warning(
            "scheduling_conflict",
            client_id=client_id,
            rbt_id=rbt_id,
            start_time=start_time.isoformat(),
            conflict_types=conflict_types,
            timestamp=datetime.now().isoformat()
        )

    def log_session_cancelled(self, session_id: str, reason: str, cancelled_by: str):
        """Log a cancellation"""
        self.structured_logger.info(
            "session_cancelled",
            session_id=session_id,
            reason=reason,
            cancelled_by=cancelled_by,
            timestamp=datetime.now().isoformat()
        )

    def log_opportunities_found(self, session_id: str, opportunity_count: int, kind: str = "alternative"):
        """Log the outcome of an opportunity search"""
        self.structured_logger.info(
            "opportunities_found",
            session_id=session_id,
            kind=kind,
            opportunity_count=opportunity_count,
            timestamp=datetime.now().isoformat()
        )

    def log_transaction_failed(self, operation: str, error: str, lock_keys: list[str] | None = None):
        """Log a rolled back transaction"""
        self.structured_logger.error(
            "transaction_failed",
            operation=operation,
            error=error,
            lock_keys=lock_keys or [],
            timestamp=datetime.now().isoformat()
        )

    def log_report_generated(self, report_type: str, start_date: datetime, end_date: datetime, duration: float):
        """Log an analytics report generation"""
        self.structured_logger.info(
            "report_generated",
            report_type=report_type,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
            duration_ms=duration * 1000,
            timestamp=datetime.now().isoformat()
        )


# Export logger instance
event_logger = SchedulingEventLogger()
