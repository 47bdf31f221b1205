"""
Spaced Repetition Service for the activity engine

Implements an SM-2 family scheduler over per-student, per-activity review
state. The transition itself is the pure function ``compute_transition``; the
service wraps it with persistence, ordering checks and due-review queries.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional

from sqlalchemy import select

from ..exceptions import StaleTransitionError, ValidationError
from ..models import Attempt, ReviewPhase, ReviewState
from ..time_utils import Clock, utcnow
from .database import DatabaseService
from .settings_config_service import SettingsConfigService, get_settings_service


@dataclass(frozen=True)
class SchedulerPolicy:
    """SM-2 constants. Defaults follow the classic algorithm."""

    min_ease: float = 1.3
    max_ease: float = 2.5
    initial_ease: float = 2.5
    lapse_threshold: float = 0.6
    lapse_penalty: float = 0.2
    review_streak: int = 2

    @classmethod
    def from_settings(cls, settings: SettingsConfigService) -> "SchedulerPolicy":
        return cls(
            min_ease=settings.getfloat("srs", "min_ease", cls.min_ease),
            max_ease=settings.getfloat("srs", "max_ease", cls.max_ease),
            initial_ease=settings.getfloat("srs", "initial_ease", cls.initial_ease),
            lapse_threshold=settings.getfloat(
                "srs", "lapse_threshold", cls.lapse_threshold
            ),
            lapse_penalty=settings.getfloat("srs", "lapse_penalty", cls.lapse_penalty),
            review_streak=settings.getint("srs", "review_streak", cls.review_streak),
        )


@dataclass(frozen=True)
class ReviewSnapshot:
    """Value copy of a ReviewState row"""

    phase: ReviewPhase
    ease_factor: float
    interval_days: int
    due_at: datetime
    streak: int = 0
    lapses: int = 0
    review_count: int = 0
    last_reviewed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, created_at: datetime, policy: SchedulerPolicy = SchedulerPolicy()
    ) -> "ReviewSnapshot":
        return cls(
            phase=ReviewPhase.NEW,
            ease_factor=policy.initial_ease,
            interval_days=0,
            due_at=created_at,
        )

    @classmethod
    def from_state(cls, state: ReviewState) -> "ReviewSnapshot":
        return cls(
            phase=state.phase,
            ease_factor=state.ease_factor,
            interval_days=state.interval_days,
            due_at=state.due_at,
            streak=state.streak,
            lapses=state.lapses,
            review_count=state.review_count,
            last_reviewed_at=state.last_reviewed_at,
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def compute_transition(
    snapshot: ReviewSnapshot,
    quality: float,
    graded_at: datetime,
    policy: SchedulerPolicy = SchedulerPolicy(),
) -> ReviewSnapshot:
    """
    Compute the review state that follows a graded attempt.

    Args:
        snapshot: State before the attempt
        quality: Normalised recall quality in [0, 1]
        graded_at: When the attempt was graded; the next due date counts from here
        policy: Scheduler constants

    Returns:
        The next snapshot. Identical inputs always give identical outputs.
    """
    if quality is None or not 0.0 <= quality <= 1.0 or math.isnan(quality):
        raise ValidationError(f"Review quality must be within [0, 1], got {quality!r}")

    if quality < policy.lapse_threshold:
        interval = 1
        return replace(
            snapshot,
            phase=ReviewPhase.LAPSED,
            ease_factor=max(policy.min_ease, snapshot.ease_factor - policy.lapse_penalty),
            interval_days=interval,
            due_at=graded_at + timedelta(days=interval),
            streak=0,
            lapses=snapshot.lapses + 1,
            review_count=snapshot.review_count + 1,
            last_reviewed_at=graded_at,
        )

    miss = 1.0 - quality
    ease = _clamp(
        snapshot.ease_factor + (0.1 - miss * (0.08 + miss * 0.02)),
        policy.min_ease,
        policy.max_ease,
    )
    streak = snapshot.streak + 1
    interval = _round_half_up(max(snapshot.interval_days, 1) * ease)
    return replace(
        snapshot,
        phase=ReviewPhase.REVIEW if streak >= policy.review_streak else ReviewPhase.LEARNING,
        ease_factor=ease,
        interval_days=interval,
        due_at=graded_at + timedelta(days=interval),
        streak=streak,
        review_count=snapshot.review_count + 1,
        last_reviewed_at=graded_at,
    )


class SpacedRepetitionService:
    """Service for managing spaced repetition and review scheduling"""

    def __init__(
        self,
        db_service: DatabaseService,
        policy: Optional[SchedulerPolicy] = None,
        clock: Clock = utcnow,
    ):
        """Initialize spaced repetition service"""
        self.db = db_service
        self.policy = policy or SchedulerPolicy.from_settings(get_settings_service())
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def get_review_state(
        self, student_id: int, activity_id: int
    ) -> Optional[ReviewState]:
        """Return the stored review state for a pair, if the student has seen it"""
        with self.db.get_session() as session:
            return session.execute(
                select(ReviewState).where(
                    ReviewState.student_id == student_id,
                    ReviewState.activity_id == activity_id,
                )
            ).scalar_one_or_none()

    def find_state(
        self, session, student_id: int, activity_id: int
    ) -> Optional[ReviewState]:
        return session.execute(
            select(ReviewState).where(
                ReviewState.student_id == student_id,
                ReviewState.activity_id == activity_id,
            )
        ).scalar_one_or_none()

    def ensure_in_order(
        self,
        state: Optional[ReviewState],
        submitted_at: datetime,
        graded_at: Optional[datetime] = None,
    ) -> None:
        """Raise StaleTransitionError if a newer transition was already applied"""
        if state is None:
            return
        if state.last_submitted_at is not None and submitted_at <= state.last_submitted_at:
            raise StaleTransitionError(
                f"Attempt submitted at {submitted_at.isoformat()} is not newer than "
                f"the last applied review ({state.last_submitted_at.isoformat()})"
            )
        if (
            graded_at is not None
            and state.last_reviewed_at is not None
            and graded_at < state.last_reviewed_at
        ):
            raise StaleTransitionError(
                f"Grading time {graded_at.isoformat()} precedes the last applied review"
            )

    def apply_attempt(self, session, attempt: Attempt) -> ReviewState:
        """
        Apply one graded attempt to the pair's review state.

        The caller holds the pair's key lock and commits the session.

        Raises:
            StaleTransitionError: if a newer attempt was already applied
            ValidationError: if the attempt has no score
        """
        if attempt.score is None or attempt.graded_at is None:
            raise ValidationError(f"Attempt {attempt.id} has not been graded")

        state = self.find_state(session, attempt.student_id, attempt.activity_id)
        self.ensure_in_order(state, attempt.submitted_at, attempt.graded_at)

        if state is None:
            snapshot = ReviewSnapshot.new(attempt.graded_at, self.policy)
            state = ReviewState(
                student_id=attempt.student_id,
                activity_id=attempt.activity_id,
                created_at=attempt.graded_at,
            )
            session.add(state)
        else:
            snapshot = ReviewSnapshot.from_state(state)

        nxt = compute_transition(snapshot, attempt.score, attempt.graded_at, self.policy)
        state.phase = nxt.phase
        state.ease_factor = nxt.ease_factor
        state.interval_days = nxt.interval_days
        state.due_at = nxt.due_at
        state.streak = nxt.streak
        state.lapses = nxt.lapses
        state.review_count = nxt.review_count
        state.last_reviewed_at = nxt.last_reviewed_at
        state.last_submitted_at = attempt.submitted_at
        attempt.review_applied = True

        self.logger.debug(
            f"Review transition student={attempt.student_id} activity={attempt.activity_id}: "
            f"{snapshot.phase.value}->{nxt.phase.value} interval={nxt.interval_days}d"
        )
        return state

    def due_reviews(
        self,
        student_id: int,
        as_of: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[int]:
        """
        Activity ids due for review, most urgent first.

        Sorted by due date ascending; ties put items with more lapses first.
        """
        as_of = as_of or self.clock()
        stmt = (
            select(ReviewState.activity_id)
            .where(ReviewState.student_id == student_id, ReviewState.due_at <= as_of)
            .order_by(
                ReviewState.due_at.asc(),
                ReviewState.lapses.desc(),
                ReviewState.activity_id.asc(),
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.get_session() as session:
            return list(session.execute(stmt).scalars().all())

    def get_states(self, student_id: int) -> List[ReviewState]:
        with self.db.get_session() as session:
            return list(
                session.execute(
                    select(ReviewState).where(ReviewState.student_id == student_id)
                )
                .scalars()
                .all()
            )

    def review_overview(
        self, student_id: int, as_of: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Summary of a student's review deck.

        Returns:
            Dictionary with total, per-phase, due and overdue counts
        """
        as_of = as_of or self.clock()
        states = self.get_states(student_id)
        overview: Dict[str, Any] = {
            "total": len(states),
            "due": sum(1 for s in states if s.due_at <= as_of),
            "overdue": sum(1 for s in states if s.due_at < as_of),
        }
        for phase in ReviewPhase:
            overview[phase.value] = sum(1 for s in states if s.phase == phase)
        return overview


# Singleton instance
_spaced_repetition_service = None


def get_spaced_repetition_service() -> SpacedRepetitionService:
    """Get or create singleton spaced repetition service instance"""
    global _spaced_repetition_service
    from .database import get_db_service

    db_service = get_db_service()
    if (
        _spaced_repetition_service is None
        or _spaced_repetition_service.db is not db_service
    ):
        _spaced_repetition_service = SpacedRepetitionService(db_service)
    return _spaced_repetition_service
