"""
Students API Routes

Per-student activity distribution, review queue, progression and analytics.
"""

from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from activity_engine.api.security import get_current_session
from activity_engine.core.exceptions import AuthorizationError
from activity_engine.core.services.analytics_service import (
    AnalyticsService,
    get_analytics_service,
)
from activity_engine.core.services.assignment_service import (
    AssignmentService,
    get_assignment_service,
)
from activity_engine.core.services.auth import AuthSession
from activity_engine.core.services.enrollment_service import (
    EnrollmentService,
    get_enrollment_service,
)
from activity_engine.core.services.progression_service import (
    ProgressionService,
    get_progression_service,
)
from activity_engine.core.services.spaced_repetition_service import (
    SpacedRepetitionService,
    get_spaced_repetition_service,
)

router = APIRouter(prefix="/api/students", tags=["students"])


class ActivityItem(BaseModel):
    id: int
    title: str
    activity_type: str
    difficulty: int
    source: str
    question: Optional[str] = None
    options: Optional[List[Any]] = None


class LedgerItem(BaseModel):
    attempt_id: int
    xp_delta: int
    xp_after: int
    level_after: int
    cefr_before: str
    cefr_after: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


def _ensure_can_view(
    actor: AuthSession, student_id: int, enrollment: EnrollmentService
) -> None:
    if not enrollment.can_view_student(actor, student_id):
        raise AuthorizationError(f"Not allowed to view student {student_id}")


@router.get("/velocity")
async def get_velocity(
    student_id: int = Query(...),
    actor: AuthSession = Depends(get_current_session),
    analytics: AnalyticsService = Depends(get_analytics_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    """Smoothed graded attempts per day; ``velocity`` is null when there is no data"""
    _ensure_can_view(actor, student_id, enrollment)
    return analytics.velocity(student_id).to_dict()


@router.get("/{student_id}/assignments")
async def get_student_assignments(
    student_id: int,
    limit: int = Query(10, ge=1, le=100),
    actor: AuthSession = Depends(get_current_session),
    assignments: AssignmentService = Depends(get_assignment_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    """Next activities for the student plus progress on each assignment"""
    _ensure_can_view(actor, student_id, enrollment)
    as_of = assignments.clock()
    plan = assignments.plan_next(student_id, limit, as_of)
    return {
        "student_id": student_id,
        "next_activities": [
            ActivityItem(
                id=activity.id,
                title=activity.title,
                activity_type=activity.activity_type.value,
                difficulty=activity.difficulty,
                source=source,
                question=(activity.payload or {}).get("question"),
                options=(activity.payload or {}).get("options"),
            )
            for activity, source in plan
        ],
        "assignments": assignments.student_assignments(student_id, as_of),
    }


@router.get("/{student_id}/srs-health")
async def get_srs_health(
    student_id: int,
    actor: AuthSession = Depends(get_current_session),
    analytics: AnalyticsService = Depends(get_analytics_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    """SRS health; ``health`` is null and ``status`` is ``no_data`` without review states"""
    _ensure_can_view(actor, student_id, enrollment)
    return analytics.srs_health(student_id).to_dict()


@router.get("/{student_id}/due-reviews")
async def get_due_reviews(
    student_id: int,
    limit: Optional[int] = Query(None, ge=1, le=500),
    actor: AuthSession = Depends(get_current_session),
    scheduler: SpacedRepetitionService = Depends(get_spaced_repetition_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    _ensure_can_view(actor, student_id, enrollment)
    as_of = scheduler.clock()
    return {
        "student_id": student_id,
        "activity_ids": scheduler.due_reviews(student_id, as_of, limit=limit),
        "overview": scheduler.review_overview(student_id, as_of),
    }


@router.get("/{student_id}/ledger", response_model=List[LedgerItem])
async def get_ledger(
    student_id: int,
    actor: AuthSession = Depends(get_current_session),
    progression: ProgressionService = Depends(get_progression_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    _ensure_can_view(actor, student_id, enrollment)
    return [
        LedgerItem(
            attempt_id=entry.attempt_id,
            xp_delta=entry.xp_delta,
            xp_after=entry.xp_after,
            level_after=entry.level_after,
            cefr_before=entry.cefr_before.value,
            cefr_after=entry.cefr_after.value,
            created_at=entry.created_at,
        )
        for entry in progression.ledger_for_student(student_id)
    ]
