"""
Core services for the activity engine
"""

from .database import DatabaseService, get_db_service, init_db_service
from .auth import AuthSession, SessionProvider, get_session_provider
from .logging import LoggingService, get_logging_service, get_logger
from .settings_config_service import SettingsConfigService, get_settings_service
from .feedback_service import (
    FeedbackGenerator,
    FeedbackResult,
    HttpFeedbackGenerator,
    StubFeedbackGenerator,
    build_feedback_generator,
)

# Engine services
from .spaced_repetition_service import (
    SpacedRepetitionService,
    get_spaced_repetition_service,
)
from .progression_service import ProgressionService, get_progression_service
from .grading_service import GradingService, RawAttempt, get_grading_service
from .analytics_service import AnalyticsService, get_analytics_service
from .enrollment_service import EnrollmentService, get_enrollment_service
from .assignment_service import AssignmentService, get_assignment_service

__all__ = [
    "DatabaseService",
    "get_db_service",
    "init_db_service",
    "AuthSession",
    "SessionProvider",
    "get_session_provider",
    "LoggingService",
    "get_logging_service",
    "get_logger",
    "SettingsConfigService",
    "get_settings_service",
    "FeedbackGenerator",
    "FeedbackResult",
    "HttpFeedbackGenerator",
    "StubFeedbackGenerator",
    "build_feedback_generator",
    # Engine services
    "SpacedRepetitionService",
    "get_spaced_repetition_service",
    "ProgressionService",
    "get_progression_service",
    "GradingService",
    "RawAttempt",
    "get_grading_service",
    "AnalyticsService",
    "get_analytics_service",
    "EnrollmentService",
    "get_enrollment_service",
    "AssignmentService",
    "get_assignment_service",
]
