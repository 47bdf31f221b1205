"""
Core module for the activity engine
"""

from .models import (
    Base,
    School,
    User,
    UserRole,
    Classroom,
    Enrollment,
    Activity,
    ActivityType,
    ReviewState,
    ReviewPhase,
    Attempt,
    AttemptStatus,
    Assignment,
    LedgerEntry,
    CefrLevel,
)
from .services import (
    DatabaseService,
    get_db_service,
    init_db_service,
    LoggingService,
    get_logging_service,
    get_logger,
)

__all__ = [
    # Models
    "Base",
    "School",
    "User",
    "UserRole",
    "Classroom",
    "Enrollment",
    "Activity",
    "ActivityType",
    "ReviewState",
    "ReviewPhase",
    "Attempt",
    "AttemptStatus",
    "Assignment",
    "LedgerEntry",
    "CefrLevel",
    # Services
    "DatabaseService",
    "get_db_service",
    "init_db_service",
    "LoggingService",
    "get_logging_service",
    "get_logger",
]
