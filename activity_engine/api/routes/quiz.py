"""
Quiz API Routes

Submission and grading of activity attempts, plus reconciliation of attempts
whose feedback could not be obtained in time.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict

from activity_engine.api.security import get_current_session, require_staff
from activity_engine.core.exceptions import AuthorizationError, ValidationError
from activity_engine.core.models import UserRole
from activity_engine.core.roles import has_role, is_student
from activity_engine.core.services.auth import AuthSession
from activity_engine.core.services.enrollment_service import (
    EnrollmentService,
    get_enrollment_service,
)
from activity_engine.core.services.grading_service import (
    GradingOutcome,
    GradingService,
    RawAttempt,
    get_grading_service,
)

router = APIRouter(prefix="/api/quiz", tags=["quiz"])


# --- Pydantic Models ---


class AttemptSubmit(BaseModel):
    answer: Any
    submitted_at: Optional[datetime] = None
    # Only system callers may submit on behalf of a student
    student_id: Optional[int] = None


class AttemptResponse(BaseModel):
    id: int
    student_id: int
    activity_id: int
    submitted_at: datetime
    status: str
    score: Optional[float] = None
    feedback: Optional[Dict[str, Any]] = None
    graded_at: Optional[datetime] = None
    review_applied: bool = False
    grading_tries: int = 0

    model_config = ConfigDict(from_attributes=True)


class GradingResponse(BaseModel):
    outcome: str
    attempt: AttemptResponse
    progression: Optional[Dict[str, Any]] = None


def _attempt_response(attempt) -> AttemptResponse:
    return AttemptResponse(
        id=attempt.id,
        student_id=attempt.student_id,
        activity_id=attempt.activity_id,
        submitted_at=attempt.submitted_at,
        status=attempt.status.value,
        score=attempt.score,
        feedback=attempt.feedback,
        graded_at=attempt.graded_at,
        review_applied=attempt.review_applied,
        grading_tries=attempt.grading_tries,
    )


def _grading_response(outcome: GradingOutcome, response: Response) -> GradingResponse:
    if outcome.is_pending:
        response.status_code = status.HTTP_202_ACCEPTED
    return GradingResponse(
        outcome=outcome.status.value,
        attempt=_attempt_response(outcome.attempt),
        progression=outcome.progression.to_dict() if outcome.progression else None,
    )


# --- Routes ---


@router.post("/reconcile")
def reconcile_pending(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    actor: AuthSession = Depends(require_staff),
    grading: GradingService = Depends(get_grading_service),
):
    """Retry grading for pending attempts, oldest first"""
    return grading.reconcile_pending(limit).to_dict()


@router.post("/attempts/{attempt_id}/reconcile", response_model=GradingResponse)
def reconcile_attempt(
    attempt_id: int,
    response: Response,
    actor: AuthSession = Depends(require_staff),
    grading: GradingService = Depends(get_grading_service),
):
    """Retry grading for one pending attempt"""
    return _grading_response(grading.reconcile_attempt(attempt_id), response)


@router.get("/attempts/{attempt_id}", response_model=AttemptResponse)
def get_attempt(
    attempt_id: int,
    actor: AuthSession = Depends(get_current_session),
    grading: GradingService = Depends(get_grading_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    attempt = grading.get_attempt(attempt_id)
    if not enrollment.can_view_student(actor, attempt.student_id):
        raise AuthorizationError(f"Not allowed to view attempt {attempt_id}")
    return _attempt_response(attempt)


@router.post("/{activity_id}/submit", response_model=GradingResponse)
def submit_attempt(
    activity_id: int,
    submission: AttemptSubmit,
    response: Response,
    timeout: Optional[float] = Query(None, gt=0, le=120),
    actor: AuthSession = Depends(get_current_session),
    grading: GradingService = Depends(get_grading_service),
):
    """
    Submit an answer. Returns 200 when graded (or already recorded) and 202
    when grading is pending.
    """
    if is_student(actor):
        if submission.student_id not in (None, actor.user_id):
            raise AuthorizationError("Students may only submit their own attempts")
        student_id = actor.user_id
    elif has_role(actor, UserRole.SYSTEM):
        if submission.student_id is None:
            raise ValidationError("student_id is required")
        student_id = submission.student_id
    else:
        raise AuthorizationError("Only students submit attempts")

    outcome = grading.grade(
        RawAttempt(
            student_id=student_id,
            activity_id=activity_id,
            answer=submission.answer,
            submitted_at=submission.submitted_at,
        ),
        timeout=timeout,
    )
    return _grading_response(outcome, response)
