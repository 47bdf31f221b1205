"""
SQLAlchemy models for the activity engine

Students and teachers share the ``users`` table. Activities are read-only
content; attempts and ledger entries are append-only.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    Enum as SQLEnum,
    Index,
    Float,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.sqlite import JSON

Base = declarative_base()


class UserRole(enum.Enum):
    """User roles"""

    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"
    SYSTEM = "system"


class ActivityType(enum.Enum):
    """Activity types. Closed-form types are graded locally."""

    MCQ = "mcq"
    TRUE_FALSE = "true_false"
    SAQ = "saq"
    LAQ = "laq"

    @property
    def is_open_ended(self) -> bool:
        return self in (ActivityType.SAQ, ActivityType.LAQ)


class ReviewPhase(enum.Enum):
    """Spaced repetition phases"""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    LAPSED = "lapsed"


class AttemptStatus(enum.Enum):
    """Attempt grading statuses"""

    GRADED = "graded"
    GRADING_PENDING = "grading_pending"


class CefrLevel(enum.Enum):
    """CEFR proficiency sublevels, ordered from lowest to highest"""

    A1_MINUS = "A1-"
    A1 = "A1"
    A1_PLUS = "A1+"
    A2_MINUS = "A2-"
    A2 = "A2"
    A2_PLUS = "A2+"
    B1_MINUS = "B1-"
    B1 = "B1"
    B1_PLUS = "B1+"
    B2_MINUS = "B2-"
    B2 = "B2"
    B2_PLUS = "B2+"
    C1_MINUS = "C1-"
    C1 = "C1"
    C1_PLUS = "C1+"
    C2_MINUS = "C2-"
    C2 = "C2"
    C2_PLUS = "C2+"

    @property
    def index(self) -> int:
        return list(CefrLevel).index(self)

    @classmethod
    def from_index(cls, index: int) -> "CefrLevel":
        levels = list(cls)
        return levels[max(0, min(index, len(levels) - 1))]

    def step(self, delta: int) -> "CefrLevel":
        return CefrLevel.from_index(self.index + delta)


class School(Base):
    """School owning users and classrooms"""

    __tablename__ = "schools"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)


class User(Base):
    """Student, teacher or administrator"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(200), nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True, index=True)
    xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=0, nullable=False)
    cefr_level = Column(
        SQLEnum(CefrLevel), default=CefrLevel.A1_MINUS, nullable=False
    )
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    enrollments = relationship("Enrollment", back_populates="student")

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role={self.role})>"


class Classroom(Base):
    """Classroom owned by a teacher within a school"""

    __tablename__ = "classrooms"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    teacher_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    term = Column(String(50), nullable=True)
    enrollment_code = Column(String(32), nullable=True, index=True)
    code_expires_at = Column(DateTime, nullable=True)
    archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    enrollments = relationship("Enrollment", back_populates="classroom")


class Enrollment(Base):
    """Student membership in a classroom. Soft-deleted on unenroll."""

    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    classroom_id = Column(
        Integer, ForeignKey("classrooms.id"), nullable=False, index=True
    )
    enrolled_at = Column(DateTime, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    unenrolled_at = Column(DateTime, nullable=True)

    student = relationship("User", back_populates="enrollments")
    classroom = relationship("Classroom", back_populates="enrollments")

    __table_args__ = (
        UniqueConstraint("student_id", "classroom_id", name="uq_enrollment_pair"),
    )


class Activity(Base):
    """Immutable content unit.

    ``difficulty`` is a CEFR sublevel index (0 = A1-, 17 = C2+). ``payload``
    holds the question and grading material:

    - MCQ / true-false: ``{"question", "options", "correct", "weights"?}``
    - SAQ / LAQ: ``{"question", "rubric", "max_score"?, "reference_answer"?}``
    """

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    activity_type = Column(SQLEnum(ActivityType), nullable=False, index=True)
    difficulty = Column(Integer, default=0, nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=func.now(), nullable=False)


class ReviewState(Base):
    """Spaced repetition state per student and activity"""

    __tablename__ = "review_states"

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(
        Integer, ForeignKey("activities.id"), nullable=False, index=True
    )
    phase = Column(SQLEnum(ReviewPhase), default=ReviewPhase.NEW, nullable=False)
    ease_factor = Column(Float, default=2.5, nullable=False)
    interval_days = Column(Integer, default=0, nullable=False)
    due_at = Column(DateTime, nullable=False, index=True)
    streak = Column(Integer, default=0, nullable=False)
    lapses = Column(Integer, default=0, nullable=False)
    review_count = Column(Integer, default=0, nullable=False)
    last_reviewed_at = Column(DateTime, nullable=True)
    last_submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("student_id", "activity_id", name="uq_review_state_pair"),
        Index("idx_review_state_due", "student_id", "due_at"),
    )


class Attempt(Base):
    """Append-only record of a submitted answer"""

    __tablename__ = "attempts"

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(
        Integer, ForeignKey("activities.id"), nullable=False, index=True
    )
    submitted_at = Column(DateTime, nullable=False)
    raw_answer = Column(JSON, nullable=True)
    score = Column(Float, nullable=True)
    status = Column(
        SQLEnum(AttemptStatus),
        default=AttemptStatus.GRADING_PENDING,
        nullable=False,
        index=True,
    )
    feedback = Column(JSON, nullable=True)
    graded_at = Column(DateTime, nullable=True)
    due_at_submission = Column(DateTime, nullable=True)
    review_applied = Column(Boolean, default=False, nullable=False)
    grading_tries = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    activity = relationship("Activity")

    __table_args__ = (
        UniqueConstraint(
            "student_id", "activity_id", "submitted_at", name="uq_attempt_key"
        ),
        Index("idx_attempt_student_graded", "student_id", "graded_at"),
    )

    @property
    def idempotency_key(self):
        return (self.student_id, self.activity_id, self.submitted_at)


class Assignment(Base):
    """Teacher-authored ordered list of activities for a classroom"""

    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True)
    classroom_id = Column(
        Integer, ForeignKey("classrooms.id"), nullable=False, index=True
    )
    title = Column(String(200), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=True)

    items = relationship(
        "AssignmentActivity",
        order_by="AssignmentActivity.position",
        cascade="all, delete-orphan",
    )

    @property
    def activity_ids(self):
        return [item.activity_id for item in self.items]


class AssignmentActivity(Base):
    """Position of an activity within an assignment"""

    __tablename__ = "assignment_activities"

    assignment_id = Column(Integer, ForeignKey("assignments.id"), primary_key=True)
    activity_id = Column(Integer, ForeignKey("activities.id"), primary_key=True)
    position = Column(Integer, nullable=False)


class LedgerEntry(Base):
    """Progression applied for exactly one graded attempt"""

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True)
    attempt_id = Column(
        Integer, ForeignKey("attempts.id"), nullable=False, unique=True
    )
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    xp_delta = Column(Integer, nullable=False)
    xp_after = Column(Integer, nullable=False)
    level_after = Column(Integer, nullable=False)
    cefr_before = Column(SQLEnum(CefrLevel), nullable=False)
    cefr_after = Column(SQLEnum(CefrLevel), nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)
