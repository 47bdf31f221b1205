"""
Enrollment Registry for the activity engine

Maps students to classrooms and classrooms to teachers. Enrollment is by
classroom code (student self-service) or by the owning teacher. Unenrolling
is a soft delete; attempts and review states are never touched.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy import select

from ..exceptions import (
    AlreadyEnrolledError,
    AuthorizationError,
    ClassroomNotFoundError,
    ConflictError,
    InvalidCodeError,
    NotEnrolledError,
    StudentNotFoundError,
    ValidationError,
)
from ..models import Classroom, Enrollment, User, UserRole
from ..roles import has_role, is_teacher
from ..time_utils import Clock, utcnow
from .database import DatabaseService
from .logging import get_logging_service
from .settings_config_service import SettingsConfigService, get_settings_service

# No 0/O, 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class EnrollmentPolicy:
    code_length: int = 6
    code_ttl_hours: float = 24.0
    code_generation_attempts: int = 10

    @classmethod
    def from_settings(cls, settings: SettingsConfigService) -> "EnrollmentPolicy":
        return cls(
            code_length=settings.getint("enrollment", "code_length", cls.code_length),
            code_ttl_hours=settings.getfloat(
                "enrollment", "code_ttl_hours", cls.code_ttl_hours
            ),
            code_generation_attempts=settings.getint(
                "enrollment", "code_generation_attempts", cls.code_generation_attempts
            ),
        )


def generate_code_candidate(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class EnrollmentService:
    """Service for classroom membership"""

    def __init__(
        self,
        db_service: DatabaseService,
        policy: Optional[EnrollmentPolicy] = None,
        clock: Clock = utcnow,
        code_factory=generate_code_candidate,
    ):
        self.db = db_service
        self.policy = policy or EnrollmentPolicy.from_settings(get_settings_service())
        self.clock = clock
        self.code_factory = code_factory
        self.logger = logging.getLogger(__name__)
        self.events = get_logging_service()

    # -- authorization -------------------------------------------------------

    def ensure_can_manage(self, actor, classroom: Classroom) -> None:
        """
        Teachers manage their own classrooms; admins manage their school's;
        system callers manage all.

        Raises:
            AuthorizationError: otherwise
        """
        if has_role(actor, UserRole.SYSTEM):
            return
        if has_role(actor, UserRole.ADMIN) and actor.school_id == classroom.school_id:
            return
        if is_teacher(actor) and classroom.teacher_id == actor.user_id:
            return
        raise AuthorizationError(
            f"Not allowed to manage classroom {classroom.id}"
        )

    def get_classroom(self, classroom_id: int) -> Classroom:
        with self.db.get_session() as session:
            classroom = session.get(Classroom, classroom_id)
            if classroom is None:
                raise ClassroomNotFoundError(f"Classroom {classroom_id} not found")
            return classroom

    # -- resolution ----------------------------------------------------------

    def resolve_classrooms_for_student(self, student_id: int) -> Set[Classroom]:
        """Classrooms the student is actively enrolled in"""
        with self.db.get_session() as session:
            return set(
                session.execute(
                    select(Classroom)
                    .join(Enrollment, Enrollment.classroom_id == Classroom.id)
                    .where(
                        Enrollment.student_id == student_id,
                        Enrollment.active.is_(True),
                    )
                )
                .scalars()
                .all()
            )

    def resolve_students_for_teacher(self, teacher_id: int) -> Set[User]:
        """Students actively enrolled in the teacher's live classrooms"""
        with self.db.get_session() as session:
            return set(
                session.execute(
                    select(User)
                    .join(Enrollment, Enrollment.student_id == User.id)
                    .join(Classroom, Classroom.id == Enrollment.classroom_id)
                    .where(
                        Classroom.teacher_id == teacher_id,
                        Classroom.archived.is_(False),
                        Enrollment.active.is_(True),
                    )
                )
                .scalars()
                .unique()
                .all()
            )

    def students_in_classroom(self, classroom_id: int) -> List[User]:
        with self.db.get_session() as session:
            return list(
                session.execute(
                    select(User)
                    .join(Enrollment, Enrollment.student_id == User.id)
                    .where(
                        Enrollment.classroom_id == classroom_id,
                        Enrollment.active.is_(True),
                    )
                    .order_by(User.id)
                )
                .scalars()
                .all()
            )

    def is_enrolled(self, student_id: int, classroom_id: int) -> bool:
        with self.db.get_session() as session:
            return (
                session.execute(
                    select(Enrollment.id).where(
                        Enrollment.student_id == student_id,
                        Enrollment.classroom_id == classroom_id,
                        Enrollment.active.is_(True),
                    )
                ).first()
                is not None
            )

    def can_view_student(self, actor, student_id: int) -> bool:
        """Whether the actor may read a student's progress"""
        if has_role(actor, UserRole.SYSTEM):
            return True
        if actor.user_id == student_id:
            return True
        with self.db.get_session() as session:
            student = session.get(User, student_id)
            if student is None:
                raise StudentNotFoundError(f"Student {student_id} not found")
            if has_role(actor, UserRole.ADMIN):
                return student.school_id == actor.school_id
        if is_teacher(actor):
            return any(
                s.id == student_id
                for s in self.resolve_students_for_teacher(actor.user_id)
            )
        return False

    # -- mutations -----------------------------------------------------------

    def _enroll(self, session, classroom: Classroom, student: User) -> Enrollment:
        """Shared enrollment rules. Caller holds the student's key lock."""
        if classroom.archived:
            raise ValidationError(f"Classroom {classroom.id} is archived")

        existing = session.execute(
            select(Enrollment).where(
                Enrollment.student_id == student.id,
                Enrollment.classroom_id == classroom.id,
            )
        ).scalar_one_or_none()
        if existing is not None and existing.active:
            raise AlreadyEnrolledError(
                f"Student {student.id} is already enrolled in classroom {classroom.id}"
            )

        if classroom.term:
            clash = session.execute(
                select(Enrollment.classroom_id)
                .join(Classroom, Classroom.id == Enrollment.classroom_id)
                .where(
                    Enrollment.student_id == student.id,
                    Enrollment.active.is_(True),
                    Classroom.id != classroom.id,
                    Classroom.school_id == classroom.school_id,
                    Classroom.term == classroom.term,
                )
            ).first()
            if clash is not None:
                raise AlreadyEnrolledError(
                    f"Student {student.id} is already enrolled in classroom "
                    f"{clash[0]} for term {classroom.term}"
                )

        now = self.clock()
        if existing is not None:
            existing.active = True
            existing.enrolled_at = now
            existing.unenrolled_at = None
            enrollment = existing
            event = "reactivated"
        else:
            enrollment = Enrollment(
                student_id=student.id, classroom_id=classroom.id, enrolled_at=now
            )
            session.add(enrollment)
            event = "enrolled"

        session.commit()
        self.events.log_enrollment_event(
            event, classroom_id=classroom.id, student_id=student.id
        )
        return enrollment

    def _load_student(self, session, student_id: int) -> User:
        student = session.get(User, student_id)
        if student is None or student.role != UserRole.STUDENT:
            raise StudentNotFoundError(f"Student {student_id} not found")
        return student

    def enroll(
        self, code: str, student_id: int, classroom_id: Optional[int] = None
    ) -> Enrollment:
        """
        Enroll a student with a classroom code.

        Codes are unique among live codes of one school, so the lookup is
        scoped to the student's school. When ``classroom_id`` is given the
        code must belong to that classroom.

        Raises:
            InvalidCodeError: unknown, cleared or expired code, or a classroom
                of another school
            AlreadyEnrolledError: already active in that classroom or in
                another classroom of the same school and term
        """
        code = normalize_code(code)
        if not code:
            raise InvalidCodeError("Classroom code is required")

        with self.db.key_lock("enrollment", student_id):
            with self.db.get_session() as session:
                student = self._load_student(session, student_id)
                now = self.clock()
                matches = list(
                    session.execute(
                        select(Classroom).where(
                            Classroom.enrollment_code == code,
                            Classroom.school_id == student.school_id,
                            Classroom.archived.is_(False),
                        )
                    )
                    .scalars()
                    .all()
                )
                if classroom_id is not None:
                    matches = [c for c in matches if c.id == classroom_id]
                if not matches:
                    raise InvalidCodeError("Classroom code not recognised")

                live = [
                    c
                    for c in matches
                    if c.code_expires_at is None or now <= c.code_expires_at
                ]
                if not live:
                    raise InvalidCodeError("Classroom code has expired")
                return self._enroll(session, live[0], student)

    def enroll_student(self, classroom_id: int, student_id: int, actor) -> Enrollment:
        """Teacher action: enroll a student directly. Same rules as ``enroll``."""
        with self.db.key_lock("enrollment", student_id):
            with self.db.get_session() as session:
                classroom = session.get(Classroom, classroom_id)
                if classroom is None:
                    raise ClassroomNotFoundError(f"Classroom {classroom_id} not found")
                self.ensure_can_manage(actor, classroom)
                student = self._load_student(session, student_id)
                if student.school_id != classroom.school_id:
                    raise ValidationError(
                        f"Student {student_id} belongs to another school"
                    )
                return self._enroll(session, classroom, student)

    def unenroll(
        self, student_id: int, classroom_id: int, actor=None
    ) -> Enrollment:
        """
        Deactivate an enrollment.

        Raises:
            NotEnrolledError: if there is no active enrollment
        """
        with self.db.key_lock("enrollment", student_id):
            with self.db.get_session() as session:
                classroom = session.get(Classroom, classroom_id)
                if classroom is None:
                    raise ClassroomNotFoundError(f"Classroom {classroom_id} not found")
                if actor is not None and actor.user_id != student_id:
                    self.ensure_can_manage(actor, classroom)

                enrollment = session.execute(
                    select(Enrollment).where(
                        Enrollment.student_id == student_id,
                        Enrollment.classroom_id == classroom_id,
                        Enrollment.active.is_(True),
                    )
                ).scalar_one_or_none()
                if enrollment is None:
                    raise NotEnrolledError(
                        f"Student {student_id} is not enrolled in classroom {classroom_id}"
                    )
                enrollment.active = False
                enrollment.unenrolled_at = self.clock()
                session.commit()

        self.events.log_enrollment_event(
            "unenrolled", classroom_id=classroom_id, student_id=student_id
        )
        return enrollment

    def generate_code(self, classroom_id: int, actor) -> Classroom:
        """
        Issue a fresh enrollment code, replacing the current one immediately.

        Raises:
            ConflictError: if no unique code was found within the retry budget
        """
        with self.db.key_lock("classroom_code", classroom_id):
            with self.db.get_session() as session:
                classroom = session.get(Classroom, classroom_id)
                if classroom is None:
                    raise ClassroomNotFoundError(f"Classroom {classroom_id} not found")
                self.ensure_can_manage(actor, classroom)
                if classroom.archived:
                    raise ValidationError(f"Classroom {classroom_id} is archived")

                now = self.clock()
                for _ in range(self.policy.code_generation_attempts):
                    candidate = self.code_factory(self.policy.code_length)
                    taken = session.execute(
                        select(Classroom.id).where(
                            Classroom.school_id == classroom.school_id,
                            Classroom.enrollment_code == candidate,
                            Classroom.id != classroom.id,
                            (Classroom.code_expires_at.is_(None))
                            | (Classroom.code_expires_at >= now),
                        )
                    ).first()
                    if taken is None and candidate != classroom.enrollment_code:
                        break
                else:
                    raise ConflictError(
                        f"Could not generate a unique code for classroom {classroom_id}"
                    )

                classroom.enrollment_code = candidate
                classroom.code_expires_at = (
                    now + timedelta(hours=self.policy.code_ttl_hours)
                    if self.policy.code_ttl_hours > 0
                    else None
                )
                session.commit()

        self.events.log_enrollment_event(
            "code_generated",
            classroom_id=classroom_id,
            expires_at=(
                classroom.code_expires_at.isoformat()
                if classroom.code_expires_at
                else None
            ),
        )
        return classroom

    def create_classroom(
        self,
        name: str,
        teacher_id: int,
        term: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Classroom:
        """Create a classroom in the teacher's school"""
        with self.db.get_session() as session:
            teacher = session.get(User, teacher_id)
            if teacher is None or not is_teacher(teacher):
                raise ValidationError(f"User {teacher_id} is not a teacher")
            if teacher.school_id is None:
                raise ValidationError(f"Teacher {teacher_id} has no school")
            classroom = Classroom(
                name=name,
                teacher_id=teacher_id,
                school_id=teacher.school_id,
                term=term,
                created_at=created_at or self.clock(),
            )
            session.add(classroom)
            session.commit()
            return classroom


# Singleton instance
_enrollment_service = None


def get_enrollment_service() -> EnrollmentService:
    """Get or create singleton enrollment service instance"""
    global _enrollment_service
    from .database import get_db_service

    db_service = get_db_service()
    if _enrollment_service is None or _enrollment_service.db is not db_service:
        _enrollment_service = EnrollmentService(db_service)
    return _enrollment_service
