"""
Progression Ledger for the activity engine

Turns graded attempts into XP, level and CEFR sublevel changes. Every graded
attempt produces at most one ledger entry; re-applying returns the recorded
delta.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from ..exceptions import (
    AttemptNotFoundError,
    ConfigurationError,
    StudentNotFoundError,
    ValidationError,
)
from ..models import (
    Activity,
    ActivityType,
    Attempt,
    AttemptStatus,
    CefrLevel,
    LedgerEntry,
    User,
)
from ..time_utils import Clock, utcnow
from .database import DatabaseService
from .logging import get_logging_service
from .settings_config_service import SettingsConfigService, get_settings_service


def _default_base_xp() -> Dict[ActivityType, float]:
    return {
        ActivityType.MCQ: 2.0,
        ActivityType.TRUE_FALSE: 2.0,
        ActivityType.SAQ: 5.0,
        ActivityType.LAQ: 10.0,
    }


@dataclass(frozen=True)
class ProgressionPolicy:
    """XP curve and CEFR hysteresis constants"""

    base_xp: Dict[ActivityType, float] = field(default_factory=_default_base_xp)
    difficulty_bonus: float = 0.1
    level_xp_unit: float = 100.0
    cefr_window: int = 20
    cefr_alpha: float = 0.3
    cefr_promote_at: float = 0.8
    cefr_demote_at: float = 0.4
    cefr_band: float = 0.05
    cefr_min_samples: int = 5

    @classmethod
    def from_settings(cls, settings: SettingsConfigService) -> "ProgressionPolicy":
        defaults = cls()
        base_xp = {
            activity_type: settings.getfloat(
                "progression", f"base_xp.{activity_type.value}", fallback
            )
            for activity_type, fallback in defaults.base_xp.items()
        }
        policy = cls(
            base_xp=base_xp,
            difficulty_bonus=settings.getfloat(
                "progression", "difficulty_bonus", defaults.difficulty_bonus
            ),
            level_xp_unit=settings.getfloat(
                "progression", "level_xp_unit", defaults.level_xp_unit
            ),
            cefr_window=settings.getint("progression", "cefr_window", defaults.cefr_window),
            cefr_alpha=settings.getfloat("progression", "cefr_alpha", defaults.cefr_alpha),
            cefr_promote_at=settings.getfloat(
                "progression", "cefr_promote_at", defaults.cefr_promote_at
            ),
            cefr_demote_at=settings.getfloat(
                "progression", "cefr_demote_at", defaults.cefr_demote_at
            ),
            cefr_band=settings.getfloat("progression", "cefr_band", defaults.cefr_band),
            cefr_min_samples=settings.getint(
                "progression", "cefr_min_samples", defaults.cefr_min_samples
            ),
        )
        if policy.level_xp_unit <= 0:
            raise ConfigurationError("progression.level_xp_unit must be positive")
        if not 0 < policy.cefr_alpha <= 1:
            raise ConfigurationError("progression.cefr_alpha must be within (0, 1]")
        return policy


@dataclass
class ProgressionDelta:
    """Outcome of applying one attempt to the ledger"""

    attempt_id: int
    student_id: int
    xp_delta: int
    xp_total: int
    level_before: int
    level_after: int
    cefr_before: CefrLevel
    cefr_after: CefrLevel
    already_applied: bool = False

    @property
    def leveled_up(self) -> bool:
        return self.level_after > self.level_before

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "student_id": self.student_id,
            "xp_delta": self.xp_delta,
            "xp_total": self.xp_total,
            "level_before": self.level_before,
            "level_after": self.level_after,
            "cefr_before": self.cefr_before.value,
            "cefr_after": self.cefr_after.value,
            "already_applied": self.already_applied,
        }


def base_xp(
    activity_type: ActivityType, difficulty: int, policy: ProgressionPolicy
) -> float:
    return policy.base_xp.get(activity_type, 0.0) * (
        1.0 + policy.difficulty_bonus * max(difficulty or 0, 0)
    )


def score_multiplier(score: float) -> float:
    return max(0.0, min(1.0, score))


def xp_for_attempt(
    activity_type: ActivityType,
    difficulty: int,
    score: float,
    policy: ProgressionPolicy,
) -> int:
    """XP earned for a graded attempt. Never negative."""
    raw = base_xp(activity_type, difficulty, policy) * score_multiplier(score)
    return max(0, int(math.floor(raw + 0.5)))


def level_for_xp(xp: int, policy: ProgressionPolicy) -> int:
    """``floor(sqrt(xp / unit))``: level 1 at one unit, level 2 at four units, ..."""
    return int(math.floor(math.sqrt(max(xp, 0) / policy.level_xp_unit)))


def ewma(scores: Sequence[float], alpha: float) -> Optional[float]:
    """Exponentially weighted mean of scores ordered oldest to newest"""
    if not scores:
        return None
    value = scores[0]
    for score in scores[1:]:
        value = alpha * score + (1 - alpha) * value
    return value


def next_cefr_level(
    current: CefrLevel, recent_scores: Sequence[float], policy: ProgressionPolicy
) -> CefrLevel:
    """
    Move at most one sublevel based on the rolling window of scores.

    Promotion needs the smoothed score above ``promote_at + band``. Demotion
    needs it below ``demote_at - band`` both with and without the newest
    score, so one bad result never regresses the level on its own.
    """
    window = list(recent_scores)[-policy.cefr_window :]
    if len(window) < policy.cefr_min_samples:
        return current

    smoothed = ewma(window, policy.cefr_alpha)
    if smoothed >= policy.cefr_promote_at + policy.cefr_band:
        return current.step(1)

    demote_line = policy.cefr_demote_at - policy.cefr_band
    if smoothed <= demote_line:
        previous = ewma(window[:-1], policy.cefr_alpha)
        if previous is not None and previous <= demote_line:
            return current.step(-1)
    return current


class ProgressionService:
    """Service applying graded attempts to the progression ledger"""

    def __init__(
        self,
        db_service: DatabaseService,
        policy: Optional[ProgressionPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.db = db_service
        self.policy = policy or ProgressionPolicy.from_settings(get_settings_service())
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.events = get_logging_service()

    def delta_from_entry(self, entry: LedgerEntry) -> ProgressionDelta:
        return ProgressionDelta(
            attempt_id=entry.attempt_id,
            student_id=entry.student_id,
            xp_delta=entry.xp_delta,
            xp_total=entry.xp_after,
            level_before=level_for_xp(entry.xp_after - entry.xp_delta, self.policy),
            level_after=entry.level_after,
            cefr_before=entry.cefr_before,
            cefr_after=entry.cefr_after,
            already_applied=True,
        )

    def find_entry(self, session, attempt_id: int) -> Optional[LedgerEntry]:
        return session.execute(
            select(LedgerEntry).where(LedgerEntry.attempt_id == attempt_id)
        ).scalar_one_or_none()

    def recent_scores(self, session, student_id: int) -> List[float]:
        """Scores of the student's latest graded attempts, oldest first"""
        rows = (
            session.execute(
                select(Attempt.score)
                .where(
                    Attempt.student_id == student_id,
                    Attempt.status == AttemptStatus.GRADED,
                    Attempt.score.is_not(None),
                )
                .order_by(Attempt.graded_at.desc(), Attempt.id.desc())
                .limit(self.policy.cefr_window)
            )
            .scalars()
            .all()
        )
        return list(reversed(rows))

    def apply_outcome(self, session, attempt: Attempt) -> ProgressionDelta:
        """
        Apply a graded attempt to the student's progression within ``session``.

        The caller commits. Re-applying an attempt returns the recorded delta
        with ``already_applied`` set.

        Raises:
            ValidationError: if the attempt is not graded
            StudentNotFoundError: if the student row is missing
        """
        if attempt.status != AttemptStatus.GRADED or attempt.score is None:
            raise ValidationError(f"Attempt {attempt.id} is not graded")

        existing = self.find_entry(session, attempt.id)
        if existing is not None:
            self.events.log_ledger_event(
                "already_applied",
                student_id=attempt.student_id,
                attempt_id=attempt.id,
                xp_delta=existing.xp_delta,
            )
            return self.delta_from_entry(existing)

        student = session.get(User, attempt.student_id, populate_existing=True)
        if student is None:
            raise StudentNotFoundError(f"Student {attempt.student_id} not found")
        activity = session.get(Activity, attempt.activity_id)

        xp_delta = xp_for_attempt(
            activity.activity_type, activity.difficulty, attempt.score, self.policy
        )
        level_before = student.level or 0
        cefr_before = student.cefr_level or CefrLevel.A1_MINUS

        student.xp = (student.xp or 0) + xp_delta
        # Levels are monotone in XP; never drop below a level already held.
        student.level = max(level_before, level_for_xp(student.xp, self.policy))

        session.flush()
        student.cefr_level = next_cefr_level(
            cefr_before, self.recent_scores(session, student.id), self.policy
        )

        entry = LedgerEntry(
            attempt_id=attempt.id,
            student_id=student.id,
            xp_delta=xp_delta,
            xp_after=student.xp,
            level_after=student.level,
            cefr_before=cefr_before,
            cefr_after=student.cefr_level,
            created_at=attempt.graded_at or self.clock(),
        )
        session.add(entry)
        session.flush()

        self.events.log_ledger_event(
            "applied",
            student_id=student.id,
            attempt_id=attempt.id,
            xp_delta=xp_delta,
            level_after=student.level,
            cefr_after=student.cefr_level.value,
        )
        return ProgressionDelta(
            attempt_id=attempt.id,
            student_id=student.id,
            xp_delta=xp_delta,
            xp_total=student.xp,
            level_before=level_before,
            level_after=student.level,
            cefr_before=cefr_before,
            cefr_after=student.cefr_level,
        )

    def apply(self, attempt_id: int) -> ProgressionDelta:
        """Apply a stored attempt in its own transaction"""
        with self.db.get_session() as session:
            attempt = session.get(Attempt, attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
            with self.db.key_lock("student", attempt.student_id):
                try:
                    delta = self.apply_outcome(session, attempt)
                    session.commit()
                    return delta
                except IntegrityError:
                    # Another process recorded the entry first.
                    session.rollback()
                    entry = self.find_entry(session, attempt_id)
                    if entry is None:
                        raise
                    return self.delta_from_entry(entry)

    def ledger_for_student(self, student_id: int) -> List[LedgerEntry]:
        with self.db.get_session() as session:
            return list(
                session.execute(
                    select(LedgerEntry)
                    .where(LedgerEntry.student_id == student_id)
                    .order_by(LedgerEntry.created_at, LedgerEntry.id)
                )
                .scalars()
                .all()
            )

    def xp_per_day(
        self, student_id: int, days: int, as_of: Optional[datetime] = None
    ) -> float:
        """XP earned per calendar day over the trailing ``days``"""
        as_of = as_of or self.clock()
        with self.db.get_session() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(LedgerEntry.xp_delta), 0)).where(
                    LedgerEntry.student_id == student_id,
                    LedgerEntry.created_at > as_of - timedelta(days=days),
                    LedgerEntry.created_at <= as_of,
                )
            )
        return round((total or 0) / days, 2) if days > 0 else 0.0


# Singleton instance
_progression_service = None


def get_progression_service() -> ProgressionService:
    """Get or create singleton progression service instance"""
    global _progression_service
    from .database import get_db_service

    db_service = get_db_service()
    if _progression_service is None or _progression_service.db is not db_service:
        _progression_service = ProgressionService(db_service)
    return _progression_service
