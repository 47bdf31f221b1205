"""
Analytics Aggregator for the activity engine

Per-student SRS health and velocity, plus classroom rollups. Everything is
computed on read from review states and attempts; nothing is cached.

A student without review states has no health value and a student with
neither review states nor attempts has no velocity. Those cases are reported
as ``no_data`` rather than a number, and rollups leave them out of the means.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func

from ..exceptions import ClassroomNotFoundError, ConfigurationError, StudentNotFoundError
from ..models import Attempt, AttemptStatus, Classroom, Enrollment, ReviewState, User
from ..time_utils import Clock, days_between, utcnow
from .database import DatabaseService
from .progression_service import ProgressionService
from .settings_config_service import SettingsConfigService, get_settings_service

NO_DATA = "no_data"


@dataclass(frozen=True)
class AnalyticsPolicy:
    """Health weights, thresholds and velocity smoothing"""

    w_on_time: float = 0.4
    w_not_overdue: float = 0.4
    w_streak: float = 0.2
    streak_target: int = 5
    velocity_window_days: int = 14
    velocity_half_life_days: float = 3.5
    healthy_at: float = 0.8
    moderate_at: float = 0.6
    overloaded_at: float = 0.4

    def __post_init__(self):
        total = self.w_on_time + self.w_not_overdue + self.w_streak
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ConfigurationError(f"Health weights must sum to 1, got {total}")
        if min(self.w_on_time, self.w_not_overdue, self.w_streak) < 0:
            raise ConfigurationError("Health weights must not be negative")
        if self.streak_target <= 0:
            raise ConfigurationError("analytics.streak_target must be positive")
        if self.velocity_window_days <= 0 or self.velocity_half_life_days <= 0:
            raise ConfigurationError("Velocity window and half-life must be positive")

    @classmethod
    def from_settings(cls, settings: SettingsConfigService) -> "AnalyticsPolicy":
        return cls(
            w_on_time=settings.getfloat("analytics", "w_on_time", cls.w_on_time),
            w_not_overdue=settings.getfloat(
                "analytics", "w_not_overdue", cls.w_not_overdue
            ),
            w_streak=settings.getfloat("analytics", "w_streak", cls.w_streak),
            streak_target=settings.getint(
                "analytics", "streak_target", cls.streak_target
            ),
            velocity_window_days=settings.getint(
                "analytics", "velocity_window_days", cls.velocity_window_days
            ),
            velocity_half_life_days=settings.getfloat(
                "analytics", "velocity_half_life_days", cls.velocity_half_life_days
            ),
            healthy_at=settings.getfloat("analytics", "healthy_at", cls.healthy_at),
            moderate_at=settings.getfloat("analytics", "moderate_at", cls.moderate_at),
            overloaded_at=settings.getfloat(
                "analytics", "overloaded_at", cls.overloaded_at
            ),
        )

    def status_for(self, health: Optional[float]) -> str:
        if health is None:
            return NO_DATA
        if health >= self.healthy_at:
            return "healthy"
        if health >= self.moderate_at:
            return "moderate"
        if health >= self.overloaded_at:
            return "overloaded"
        return "critical"


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class HealthReport:
    student_id: int
    as_of: datetime
    health: Optional[float]
    status: str
    total_states: int = 0
    due: int = 0
    overdue: int = 0
    on_time_ratio: Optional[float] = None
    overdue_ratio: Optional[float] = None
    streak_factor: Optional[float] = None

    @property
    def no_data(self) -> bool:
        return self.health is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "as_of": self.as_of.isoformat(),
            "health": self.health,
            "status": self.status,
            "total_states": self.total_states,
            "due": self.due,
            "overdue": self.overdue,
            "on_time_ratio": self.on_time_ratio,
            "overdue_ratio": self.overdue_ratio,
            "streak_factor": self.streak_factor,
        }


@dataclass
class VelocityReport:
    student_id: int
    as_of: datetime
    velocity: Optional[float]
    window_days: int
    graded_in_window: int = 0
    attempts_per_day_7d: float = 0.0
    attempts_per_day_30d: float = 0.0
    xp_per_day_7d: float = 0.0
    xp_per_day_30d: float = 0.0

    @property
    def no_data(self) -> bool:
        return self.velocity is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "as_of": self.as_of.isoformat(),
            "velocity": self.velocity,
            "status": NO_DATA if self.no_data else "ok",
            "window_days": self.window_days,
            "graded_in_window": self.graded_in_window,
            "attempts_per_day_7d": self.attempts_per_day_7d,
            "attempts_per_day_30d": self.attempts_per_day_30d,
            "xp_per_day_7d": self.xp_per_day_7d,
            "xp_per_day_30d": self.xp_per_day_30d,
        }


@dataclass
class ClassroomRollup:
    classroom_id: int
    as_of: datetime
    student_count: int
    mean_health: Optional[float]
    health_excluded: int
    mean_velocity: Optional[float]
    velocity_excluded: int
    students: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classroom_id": self.classroom_id,
            "as_of": self.as_of.isoformat(),
            "student_count": self.student_count,
            "mean_health": self.mean_health,
            "health_excluded": self.health_excluded,
            "mean_velocity": self.mean_velocity,
            "velocity_excluded": self.velocity_excluded,
            "students": self.students,
        }


def ewma_daily_rate(daily_counts: List[int], half_life_days: float) -> float:
    """
    Exponentially weighted mean of per-day counts.

    ``daily_counts[0]`` is the most recent day; day ``k`` has weight
    ``0.5 ** (k / half_life_days)``.
    """
    if not daily_counts:
        return 0.0
    weights = [0.5 ** (k / half_life_days) for k in range(len(daily_counts))]
    return sum(w * c for w, c in zip(weights, daily_counts)) / sum(weights)


def _mean(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 4) if values else None


class AnalyticsService:
    """Service computing SRS health, velocity and classroom rollups"""

    def __init__(
        self,
        db_service: DatabaseService,
        policy: Optional[AnalyticsPolicy] = None,
        progression: Optional[ProgressionService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db_service
        self.policy = policy or AnalyticsPolicy.from_settings(get_settings_service())
        self.progression = progression or ProgressionService(db_service, clock=clock)
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _ensure_student(self, session, student_id: int) -> User:
        student = session.get(User, student_id)
        if student is None:
            raise StudentNotFoundError(f"Student {student_id} not found")
        return student

    def _graded_submissions(
        self, session, student_id: int, since: datetime, until: datetime
    ) -> List[Attempt]:
        return list(
            session.execute(
                select(Attempt).where(
                    Attempt.student_id == student_id,
                    Attempt.status == AttemptStatus.GRADED,
                    Attempt.submitted_at > since,
                    Attempt.submitted_at <= until,
                )
            )
            .scalars()
            .all()
        )

    def srs_health(
        self, student_id: int, as_of: Optional[datetime] = None
    ) -> HealthReport:
        """
        Weighted health score of a student's review deck.

        ``health = w1*onTime + w2*(1 - overdueRatio) + w3*streakFactor``.
        Returns a report with ``health=None`` when the student has no review
        states.
        """
        as_of = as_of or self.clock()
        policy = self.policy
        with self.db.get_session() as session:
            self._ensure_student(session, student_id)
            states = list(
                session.execute(
                    select(ReviewState).where(ReviewState.student_id == student_id)
                )
                .scalars()
                .all()
            )
            if not states:
                return HealthReport(
                    student_id=student_id, as_of=as_of, health=None, status=NO_DATA
                )

            window_start = as_of - timedelta(days=policy.velocity_window_days)
            reviews = [
                a
                for a in self._graded_submissions(session, student_id, window_start, as_of)
                if a.due_at_submission is not None
            ]

        total = len(states)
        due = sum(1 for s in states if s.due_at <= as_of)
        overdue = sum(1 for s in states if s.due_at < as_of)
        overdue_ratio = _clamp01(overdue / total)
        if reviews:
            on_time = sum(1 for a in reviews if a.submitted_at <= a.due_at_submission)
            on_time_ratio = _clamp01(on_time / len(reviews))
        else:
            on_time_ratio = 1.0 - overdue_ratio
        streak_factor = _clamp01(
            sum(min(s.streak / policy.streak_target, 1.0) for s in states) / total
        )

        health = _clamp01(
            policy.w_on_time * on_time_ratio
            + policy.w_not_overdue * (1.0 - overdue_ratio)
            + policy.w_streak * streak_factor
        )
        health = round(health, 4)
        return HealthReport(
            student_id=student_id,
            as_of=as_of,
            health=health,
            status=policy.status_for(health),
            total_states=total,
            due=due,
            overdue=overdue,
            on_time_ratio=round(on_time_ratio, 4),
            overdue_ratio=round(overdue_ratio, 4),
            streak_factor=round(streak_factor, 4),
        )

    def velocity(
        self, student_id: int, as_of: Optional[datetime] = None
    ) -> VelocityReport:
        """
        Smoothed graded attempts per day over the trailing window.

        ``0.0`` when the student has history but nothing recent; ``None``
        (no data) when the student has neither review states nor attempts.
        """
        as_of = as_of or self.clock()
        window = self.policy.velocity_window_days
        with self.db.get_session() as session:
            self._ensure_student(session, student_id)
            state_count = session.scalar(
                select(func.count())
                .select_from(ReviewState)
                .where(ReviewState.student_id == student_id)
            )
            attempt_count = session.scalar(
                select(func.count())
                .select_from(Attempt)
                .where(Attempt.student_id == student_id, Attempt.submitted_at <= as_of)
            )
            if not state_count and not attempt_count:
                return VelocityReport(
                    student_id=student_id, as_of=as_of, velocity=None, window_days=window
                )

            horizon = max(window, 30)
            recent = self._graded_submissions(
                session, student_id, as_of - timedelta(days=horizon), as_of
            )

        ages = [days_between(a.submitted_at, as_of) for a in recent]
        daily = [0] * window
        for age in ages:
            day = int(math.floor(age))
            if day < window:
                daily[day] += 1

        return VelocityReport(
            student_id=student_id,
            as_of=as_of,
            velocity=round(
                ewma_daily_rate(daily, self.policy.velocity_half_life_days), 4
            ),
            window_days=window,
            graded_in_window=sum(daily),
            attempts_per_day_7d=round(sum(1 for a in ages if a < 7) / 7, 2),
            attempts_per_day_30d=round(sum(1 for a in ages if a < 30) / 30, 2),
            xp_per_day_7d=self.progression.xp_per_day(student_id, 7, as_of),
            xp_per_day_30d=self.progression.xp_per_day(student_id, 30, as_of),
        )

    def classroom_rollup(
        self, classroom_id: int, as_of: Optional[datetime] = None
    ) -> ClassroomRollup:
        """Unweighted means over actively enrolled students, skipping no-data students"""
        as_of = as_of or self.clock()
        with self.db.get_session() as session:
            if session.get(Classroom, classroom_id) is None:
                raise ClassroomNotFoundError(f"Classroom {classroom_id} not found")
            students = list(
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

        rows = []
        healths: List[float] = []
        velocities: List[float] = []
        for student in students:
            health = self.srs_health(student.id, as_of)
            velocity = self.velocity(student.id, as_of)
            if not health.no_data:
                healths.append(health.health)
            if not velocity.no_data:
                velocities.append(velocity.velocity)
            rows.append(
                {
                    "student_id": student.id,
                    "display_name": student.display_name or student.username,
                    "xp": student.xp,
                    "level": student.level,
                    "cefr_level": student.cefr_level.value,
                    "health": health.health,
                    "health_status": health.status,
                    "velocity": velocity.velocity,
                }
            )

        return ClassroomRollup(
            classroom_id=classroom_id,
            as_of=as_of,
            student_count=len(students),
            mean_health=_mean(healths),
            health_excluded=len(students) - len(healths),
            mean_velocity=_mean(velocities),
            velocity_excluded=len(students) - len(velocities),
            students=rows,
        )


# Singleton instance
_analytics_service = None


def get_analytics_service() -> AnalyticsService:
    """Get or create singleton analytics service instance"""
    global _analytics_service
    from .database import get_db_service

    db_service = get_db_service()
    if _analytics_service is None or _analytics_service.db is not db_service:
        _analytics_service = AnalyticsService(db_service)
    return _analytics_service
