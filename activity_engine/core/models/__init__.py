"""
Models package for the activity engine

This package contains all database models and enums for the engine.
"""

from .models import (
    Base,
    School,
    User,
    Classroom,
    Enrollment,
    Activity,
    ReviewState,
    Attempt,
    Assignment,
    AssignmentActivity,
    LedgerEntry,
    UserRole,
    ActivityType,
    ReviewPhase,
    AttemptStatus,
    CefrLevel,
)

__all__ = [
    "Base",
    "School",
    "User",
    "Classroom",
    "Enrollment",
    "Activity",
    "ReviewState",
    "Attempt",
    "Assignment",
    "AssignmentActivity",
    "LedgerEntry",
    "UserRole",
    "ActivityType",
    "ReviewPhase",
    "AttemptStatus",
    "CefrLevel",
]
