"""
Assignment Distributor for the activity engine

Teachers create ordered assignments for a classroom. For a student the
distributor builds the next batch of activities from three sources, in order:

1. due reviews, capped at a fraction of the batch (a larger fraction when the
   student's review deck is overloaded),
2. outstanding assignment activities, oldest assignment first,
3. never-attempted activities close to the student's CEFR sublevel.

No activity appears twice in one batch.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import selectinload

from ..exceptions import (
    ActivityNotFoundError,
    ClassroomNotFoundError,
    ConfigurationError,
    StudentNotFoundError,
    ValidationError,
)
from ..models import (
    Activity,
    Assignment,
    AssignmentActivity,
    Attempt,
    AttemptStatus,
    Classroom,
    Enrollment,
    ReviewState,
    User,
    UserRole,
)
from ..time_utils import Clock, to_naive_utc, utcnow
from .analytics_service import AnalyticsService
from .database import DatabaseService
from .enrollment_service import EnrollmentService
from .settings_config_service import SettingsConfigService, get_settings_service
from .spaced_repetition_service import SpacedRepetitionService

STRAINED_STATUSES = ("overloaded", "critical")


@dataclass(frozen=True)
class DistributionPolicy:
    review_fraction: float = 0.7
    strained_review_fraction: float = 0.9
    difficulty_band: int = 1

    def __post_init__(self):
        for value in (self.review_fraction, self.strained_review_fraction):
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError("Review fractions must be within [0, 1]")
        if self.difficulty_band < 0:
            raise ConfigurationError("distribution.difficulty_band must not be negative")

    @classmethod
    def from_settings(cls, settings: SettingsConfigService) -> "DistributionPolicy":
        return cls(
            review_fraction=settings.getfloat(
                "distribution", "review_fraction", cls.review_fraction
            ),
            strained_review_fraction=settings.getfloat(
                "distribution", "strained_review_fraction", cls.strained_review_fraction
            ),
            difficulty_band=settings.getint(
                "distribution", "difficulty_band", cls.difficulty_band
            ),
        )


class AssignmentService:
    """Service for teacher assignments and per-student activity distribution"""

    def __init__(
        self,
        db_service: DatabaseService,
        scheduler: Optional[SpacedRepetitionService] = None,
        analytics: Optional[AnalyticsService] = None,
        enrollment: Optional[EnrollmentService] = None,
        policy: Optional[DistributionPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.db = db_service
        self.scheduler = scheduler or SpacedRepetitionService(db_service, clock=clock)
        self.analytics = analytics or AnalyticsService(db_service, clock=clock)
        self.enrollment = enrollment or EnrollmentService(db_service, clock=clock)
        self.policy = policy or DistributionPolicy.from_settings(get_settings_service())
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # -- assignments ---------------------------------------------------------

    def create_assignment(
        self,
        actor,
        classroom_id: int,
        activity_ids: Sequence[int],
        title: str,
        due_at: Optional[datetime] = None,
    ) -> Assignment:
        """
        Create an assignment for a classroom the actor manages.

        Raises:
            ClassroomNotFoundError: unknown classroom
            AuthorizationError: the actor does not manage the classroom
            ValidationError: empty title or activity list
            ActivityNotFoundError: an activity id does not exist
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Assignment title is required")

        ordered: List[int] = []
        for activity_id in activity_ids or []:
            if activity_id not in ordered:
                ordered.append(activity_id)
        if not ordered:
            raise ValidationError("An assignment needs at least one activity")

        with self.db.get_session() as session:
            classroom = session.get(Classroom, classroom_id)
            if classroom is None:
                raise ClassroomNotFoundError(f"Classroom {classroom_id} not found")
            self.enrollment.ensure_can_manage(actor, classroom)
            if classroom.archived:
                raise ValidationError(f"Classroom {classroom_id} is archived")

            found = set(
                session.execute(select(Activity.id).where(Activity.id.in_(ordered)))
                .scalars()
                .all()
            )
            missing = [a for a in ordered if a not in found]
            if missing:
                raise ActivityNotFoundError(f"Activities not found: {missing}")

            assignment = Assignment(
                classroom_id=classroom_id,
                title=title,
                created_by=actor.user_id,
                created_at=self.clock(),
                due_at=to_naive_utc(due_at),
                items=[
                    AssignmentActivity(activity_id=activity_id, position=position)
                    for position, activity_id in enumerate(ordered)
                ],
            )
            session.add(assignment)
            session.commit()
            self.logger.info(
                f"Created assignment {assignment.id} for classroom {classroom_id} "
                f"with {len(ordered)} activities"
            )
            return assignment

    def list_assignments(
        self,
        classroom_id: Optional[int] = None,
        teacher_id: Optional[int] = None,
    ) -> List[Assignment]:
        stmt = select(Assignment).options(selectinload(Assignment.items))
        if classroom_id is not None:
            stmt = stmt.where(Assignment.classroom_id == classroom_id)
        if teacher_id is not None:
            stmt = stmt.join(Classroom, Classroom.id == Assignment.classroom_id).where(
                Classroom.teacher_id == teacher_id
            )
        with self.db.get_session() as session:
            return list(
                session.execute(stmt.order_by(Assignment.created_at, Assignment.id))
                .scalars()
                .all()
            )

    def _assignments_for_student(
        self, session, student_id: int, as_of: datetime
    ) -> List[Assignment]:
        """Assignments of the student's active classrooms, oldest first"""
        return list(
            session.execute(
                select(Assignment)
                .options(selectinload(Assignment.items))
                .join(Classroom, Classroom.id == Assignment.classroom_id)
                .join(Enrollment, Enrollment.classroom_id == Classroom.id)
                .where(
                    Enrollment.student_id == student_id,
                    Enrollment.active.is_(True),
                    Classroom.archived.is_(False),
                    Assignment.created_at <= as_of,
                )
                .order_by(Assignment.created_at, Assignment.id)
            )
            .scalars()
            .all()
        )

    def _last_graded_submissions(self, session, student_id: int) -> Dict[int, datetime]:
        """activity id -> latest submission time of a graded attempt"""
        rows = session.execute(
            select(Attempt.activity_id, func.max(Attempt.submitted_at))
            .where(
                Attempt.student_id == student_id,
                Attempt.status == AttemptStatus.GRADED,
            )
            .group_by(Attempt.activity_id)
        ).all()
        return {activity_id: submitted_at for activity_id, submitted_at in rows}

    @staticmethod
    def _split_items(
        assignment: Assignment, last_graded: Dict[int, datetime]
    ) -> Tuple[List[int], List[int]]:
        """``(outstanding, completed)`` activity ids in assignment order.

        An activity counts as done once a graded attempt was submitted at or
        after the assignment's creation.
        """
        outstanding, completed = [], []
        for activity_id in assignment.activity_ids:
            submitted = last_graded.get(activity_id)
            if submitted is not None and submitted >= assignment.created_at:
                completed.append(activity_id)
            else:
                outstanding.append(activity_id)
        return outstanding, completed

    def _load_student(self, session, student_id: int) -> User:
        student = session.get(User, student_id)
        if student is None or student.role != UserRole.STUDENT:
            raise StudentNotFoundError(f"Student {student_id} not found")
        return student

    def student_assignments(
        self, student_id: int, as_of: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Per-assignment progress for a student"""
        as_of = as_of or self.clock()
        with self.db.get_session() as session:
            self._load_student(session, student_id)
            assignments = self._assignments_for_student(session, student_id, as_of)
            last_graded = self._last_graded_submissions(session, student_id)

        result = []
        for assignment in assignments:
            outstanding, completed = self._split_items(assignment, last_graded)
            if not outstanding:
                status = "completed"
            elif completed:
                status = "in_progress"
            else:
                status = "not_started"
            result.append(
                {
                    "assignment_id": assignment.id,
                    "classroom_id": assignment.classroom_id,
                    "title": assignment.title,
                    "created_at": assignment.created_at,
                    "due_at": assignment.due_at,
                    "status": status,
                    "overdue": bool(
                        outstanding and assignment.due_at and assignment.due_at < as_of
                    ),
                    "total": len(assignment.activity_ids),
                    "completed": len(completed),
                    "outstanding_activity_ids": outstanding,
                }
            )
        return result

    # -- distribution --------------------------------------------------------

    def review_quota(self, limit: int, health_status: str) -> int:
        fraction = (
            self.policy.strained_review_fraction
            if health_status in STRAINED_STATUSES
            else self.policy.review_fraction
        )
        quota = int(math.floor(limit * fraction))
        # A non-zero share always reserves at least one slot.
        if fraction > 0 and limit >= 1:
            quota = max(1, quota)
        return quota

    def plan_next(
        self, student_id: int, limit: int, as_of: Optional[datetime] = None
    ) -> List[Tuple[Activity, str]]:
        """Next batch as ``(activity, source)`` pairs; source is review, assignment or new"""
        if limit is None or limit <= 0:
            raise ValidationError("limit must be a positive integer")
        as_of = as_of or self.clock()

        with self.db.get_session() as session:
            student = self._load_student(session, student_id)
            cefr_index = student.cefr_level.index

        health = self.analytics.srs_health(student_id, as_of)
        quota = self.review_quota(limit, health.status)

        chosen: List[int] = []
        sources: Dict[int, str] = {}

        def take(activity_id: int, source: str) -> None:
            if activity_id not in sources and len(chosen) < limit:
                chosen.append(activity_id)
                sources[activity_id] = source

        if quota > 0:
            for activity_id in self.scheduler.due_reviews(student_id, as_of, limit=quota):
                take(activity_id, "review")

        with self.db.get_session() as session:
            if len(chosen) < limit:
                last_graded = self._last_graded_submissions(session, student_id)
                for assignment in self._assignments_for_student(
                    session, student_id, as_of
                ):
                    outstanding, _ = self._split_items(assignment, last_graded)
                    for activity_id in outstanding:
                        take(activity_id, "assignment")
                    if len(chosen) >= limit:
                        break

            if len(chosen) < limit:
                band = self.policy.difficulty_band
                attempted = select(Attempt.activity_id).where(
                    Attempt.student_id == student_id
                )
                reviewed = select(ReviewState.activity_id).where(
                    ReviewState.student_id == student_id
                )
                candidates = session.execute(
                    select(Activity.id, Activity.difficulty).where(
                        Activity.id.not_in(attempted),
                        Activity.id.not_in(reviewed),
                        Activity.difficulty >= cefr_index - band,
                        Activity.difficulty <= cefr_index + band,
                    )
                ).all()
                for activity_id, _ in sorted(
                    candidates, key=lambda row: (abs(row[1] - cefr_index), row[0])
                ):
                    take(activity_id, "new")
                    if len(chosen) >= limit:
                        break

            if len(chosen) < limit:
                # Nothing else to offer; remaining due reviews fill the batch.
                for activity_id in self.scheduler.due_reviews(student_id, as_of):
                    take(activity_id, "review")
                    if len(chosen) >= limit:
                        break

            activities = {
                a.id: a
                for a in session.execute(
                    select(Activity).where(Activity.id.in_(chosen))
                )
                .scalars()
                .all()
            }

        self.logger.debug(
            f"Distributed {len(chosen)}/{limit} activities to student {student_id}: "
            f"{sum(1 for s in sources.values() if s == 'review')} review, "
            f"{sum(1 for s in sources.values() if s == 'assignment')} assigned, "
            f"{sum(1 for s in sources.values() if s == 'new')} new"
        )
        return [(activities[a], sources[a]) for a in chosen if a in activities]

    def next_activities(
        self, student_id: int, limit: int, as_of: Optional[datetime] = None
    ) -> List[Activity]:
        """
        Next batch of activities for a student.

        Raises:
            ValidationError: if ``limit`` is not positive
            StudentNotFoundError: unknown student
        """
        return [
            activity for activity, _ in self.plan_next(student_id, limit, as_of)
        ]


# Singleton instance
_assignment_service = None


def get_assignment_service() -> AssignmentService:
    """Get or create singleton assignment service instance"""
    global _assignment_service
    from .database import get_db_service

    db_service = get_db_service()
    if _assignment_service is None or _assignment_service.db is not db_service:
        _assignment_service = AssignmentService(db_service)
    return _assignment_service
