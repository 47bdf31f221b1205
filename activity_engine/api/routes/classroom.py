"""
Classroom API Routes

Enrollment codes, membership and classroom analytics.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from activity_engine.api.security import get_current_session, require_classroom_manager
from activity_engine.core.exceptions import ValidationError
from activity_engine.core.roles import is_student
from activity_engine.core.services.analytics_service import (
    AnalyticsService,
    get_analytics_service,
)
from activity_engine.core.services.auth import AuthSession
from activity_engine.core.services.enrollment_service import (
    EnrollmentService,
    get_enrollment_service,
)

router = APIRouter(prefix="/api/classroom", tags=["classroom"])


# --- Pydantic Models ---


class EnrollRequest(BaseModel):
    # Students enroll themselves with a code; teachers name the student
    code: Optional[str] = None
    student_id: Optional[int] = None


class EnrollmentResponse(BaseModel):
    classroom_id: int
    student_id: int
    active: bool
    enrolled_at: datetime
    unenrolled_at: Optional[datetime] = None


class CodeResponse(BaseModel):
    classroom_id: int
    code: str
    expires_at: Optional[datetime] = None


def _enrollment_response(enrollment) -> EnrollmentResponse:
    return EnrollmentResponse(
        classroom_id=enrollment.classroom_id,
        student_id=enrollment.student_id,
        active=enrollment.active,
        enrolled_at=enrollment.enrolled_at,
        unenrolled_at=enrollment.unenrolled_at,
    )


# --- Routes ---


@router.post("/{classroom_id}/enroll", response_model=EnrollmentResponse)
async def enroll(
    classroom_id: int,
    request: EnrollRequest,
    actor: AuthSession = Depends(get_current_session),
    service: EnrollmentService = Depends(get_enrollment_service),
):
    if is_student(actor):
        if not request.code:
            raise ValidationError("An enrollment code is required")
        enrollment = service.enroll(request.code, actor.user_id, classroom_id=classroom_id)
    else:
        if request.student_id is None:
            raise ValidationError("student_id is required")
        enrollment = service.enroll_student(classroom_id, request.student_id, actor)
    return _enrollment_response(enrollment)


@router.delete("/{classroom_id}/unenroll", response_model=EnrollmentResponse)
async def unenroll(
    classroom_id: int,
    student_id: Optional[int] = Query(None),
    actor: AuthSession = Depends(get_current_session),
    service: EnrollmentService = Depends(get_enrollment_service),
):
    """Students leave a classroom; managers remove a named student"""
    if student_id is None:
        if not is_student(actor):
            raise ValidationError("student_id is required")
        student_id = actor.user_id
    return _enrollment_response(service.unenroll(student_id, classroom_id, actor))


@router.post("/{classroom_id}/generate-code", response_model=CodeResponse)
async def generate_code(
    classroom_id: int,
    actor: AuthSession = Depends(require_classroom_manager),
    service: EnrollmentService = Depends(get_enrollment_service),
):
    """Issue a new enrollment code; the previous code stops working immediately"""
    classroom = service.generate_code(classroom_id, actor)
    return CodeResponse(
        classroom_id=classroom.id,
        code=classroom.enrollment_code,
        expires_at=classroom.code_expires_at,
    )


@router.get("/{classroom_id}/analytics")
async def classroom_analytics(
    classroom_id: int,
    actor: AuthSession = Depends(require_classroom_manager),
    service: EnrollmentService = Depends(get_enrollment_service),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    """Health and velocity rollup over the classroom's enrolled students"""
    service.ensure_can_manage(actor, service.get_classroom(classroom_id))
    return analytics.classroom_rollup(classroom_id).to_dict()
