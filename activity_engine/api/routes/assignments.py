"""
Assignments API Routes

Teacher-authored assignments for classrooms.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from activity_engine.api.security import get_current_session, require_classroom_manager
from activity_engine.core.exceptions import AuthorizationError
from activity_engine.core.roles import is_student, is_teacher
from activity_engine.core.services.assignment_service import (
    AssignmentService,
    get_assignment_service,
)
from activity_engine.core.services.auth import AuthSession
from activity_engine.core.services.enrollment_service import (
    EnrollmentService,
    get_enrollment_service,
)

router = APIRouter(prefix="/api/assignments", tags=["assignments"])


# --- Pydantic Models ---


class AssignmentCreate(BaseModel):
    classroom_id: int
    title: str = Field(..., min_length=1, max_length=200)
    activity_ids: List[int]
    due_at: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    id: int
    classroom_id: int
    title: str
    created_by: int
    created_at: datetime
    due_at: Optional[datetime] = None
    activity_ids: List[int]

    model_config = ConfigDict(from_attributes=True)


# --- Routes ---


@router.post("", response_model=AssignmentResponse)
async def create_assignment(
    payload: AssignmentCreate,
    actor: AuthSession = Depends(require_classroom_manager),
    service: AssignmentService = Depends(get_assignment_service),
):
    """Create an assignment for a classroom the caller manages"""
    assignment = service.create_assignment(
        actor,
        classroom_id=payload.classroom_id,
        activity_ids=payload.activity_ids,
        title=payload.title,
        due_at=payload.due_at,
    )
    return AssignmentResponse.model_validate(assignment)


@router.get("", response_model=List[AssignmentResponse])
async def list_assignments(
    classroom_id: Optional[int] = Query(None),
    teacher_id: Optional[int] = Query(None),
    actor: AuthSession = Depends(get_current_session),
    service: AssignmentService = Depends(get_assignment_service),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
):
    """
    List assignments. Students see their classrooms' assignments; teachers see
    their own classrooms unless another filter is allowed.
    """
    if is_student(actor):
        if classroom_id is None or not enrollment.is_enrolled(actor.user_id, classroom_id):
            raise AuthorizationError("Students may only list their own classrooms")
    elif classroom_id is not None:
        enrollment.ensure_can_manage(actor, enrollment.get_classroom(classroom_id))
    elif is_teacher(actor):
        if teacher_id not in (None, actor.user_id):
            raise AuthorizationError("Teachers may only list their own assignments")
        teacher_id = actor.user_id

    return [
        AssignmentResponse.model_validate(a)
        for a in service.list_assignments(classroom_id=classroom_id, teacher_id=teacher_id)
    ]
