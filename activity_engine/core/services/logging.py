"""
Logging service for the activity engine
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import structlog

from .settings_config_service import get_settings_service


class LoggingService:
    """Structured logging service"""

    def __init__(self, log_dir: Optional[str] = None):
        settings = get_settings_service()
        self.log_dir = Path(
            log_dir
            or os.getenv("ACTIVITY_ENGINE_LOG_DIR")
            or settings.get("logging", "dir", "logs")
        )
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.level = settings.get("logging", "level", "INFO").upper()
        self._handlers = []

        # Configure structlog
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
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        self._setup_handlers()

    def _setup_handlers(self):
        """Set up logging handlers"""
        # Main engine log
        main_handler = logging.FileHandler(self.log_dir / "engine.log")
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(logging.Formatter("%(message)s"))

        # Error log
        error_handler = logging.FileHandler(self.log_dir / "errors.log")
        error_handler.setLevel(logging.WARNING)
        error_handler.setFormatter(logging.Formatter("%(message)s"))

        # Console handler for development
        console_handler = logging.StreamHandler()
        console_level = (
            logging.DEBUG
            if os.getenv("ACTIVITY_ENGINE_DEV_MODE")
            else getattr(logging, self.level, logging.INFO)
        )
        console_handler.setLevel(console_level)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in (main_handler, error_handler, console_handler):
            root_logger.addHandler(handler)
            self._handlers.append(handler)

    def close(self):
        """Detach and close the handlers this service installed"""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def get_logger(self, name: str) -> structlog.BoundLogger:
        """Get a structured logger"""
        return structlog.get_logger(name)

    def log_event(
        self,
        logger_name: str,
        level: str,
        event_type: str,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log a structured event"""
        logger = self.get_logger(logger_name)

        log_data = {
            "event_type": event_type,
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **kwargs,
        }

        level_method = getattr(logger, level.lower(), logger.info)
        level_method(event_type, **log_data)

    def log_grading_event(
        self,
        event: str,
        student_id: int,
        activity_id: int,
        status: str,
        **kwargs,
    ):
        """Log a grading lifecycle event (graded, pending, duplicate, stale)"""
        level = "WARNING" if status in ("grading_pending", "stale") else "INFO"
        self.log_event(
            "grading",
            level,
            f"grading.{event}",
            user_id=student_id,
            activity_id=activity_id,
            status=status,
            **kwargs,
        )

    def log_ledger_event(
        self,
        event: str,
        student_id: int,
        attempt_id: int,
        xp_delta: int,
        **kwargs,
    ):
        """Log a progression ledger event"""
        self.log_event(
            "ledger",
            "INFO",
            f"ledger.{event}",
            user_id=student_id,
            attempt_id=attempt_id,
            xp_delta=xp_delta,
            **kwargs,
        )

    def log_enrollment_event(
        self,
        event: str,
        classroom_id: int,
        student_id: Optional[int] = None,
        **kwargs,
    ):
        """Log enrollment registry changes"""
        self.log_event(
            "enrollment",
            "INFO",
            f"enrollment.{event}",
            user_id=student_id,
            classroom_id=classroom_id,
            **kwargs,
        )

    def log_external_call(
        self,
        operation: str,
        provider: str,
        success: bool = True,
        duration_ms: Optional[int] = None,
        attempt: int = 1,
        **kwargs,
    ):
        """Log a call to the feedback generator"""
        level = "INFO" if success else "WARNING"
        self.log_event(
            "external",
            level,
            f"external.{operation}",
            provider=provider,
            success=success,
            duration_ms=duration_ms,
            attempt=attempt,
            **kwargs,
        )

    def log_error(
        self,
        error_type: str,
        error_message: str,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log error event"""
        self.log_event(
            "error",
            "ERROR",
            f"error.{error_type}",
            user_id=user_id,
            error_message=error_message,
            **kwargs,
        )


# Global logging service instance
_logging_service: Optional[LoggingService] = None


def get_logging_service() -> LoggingService:
    """Get the global logging service instance"""
    global _logging_service
    if _logging_service is None:
        _logging_service = LoggingService()
    return _logging_service


def reset_logging_service():
    """Drop the global instance and its handlers. Useful for testing."""
    global _logging_service
    if _logging_service is not None:
        _logging_service.close()
    _logging_service = None


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance"""
    return get_logging_service().get_logger(name)
