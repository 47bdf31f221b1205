"""
Grading Engine for the activity engine

Scores submitted attempts. Closed-form types (MCQ, true/false) are scored
locally; open-ended answers go through the feedback generator with bounded
retries. An attempt that cannot be graded in time is stored as
``grading_pending`` and finished later by ``reconcile_pending``.

Each ``(student, activity, submitted_at)`` key is graded at most once: the
pair's key lock serialises concurrent submissions in-process and the
``uq_attempt_key`` constraint catches races across processes.
"""

import enum
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..exceptions import (
    ActivityNotFoundError,
    AlreadyGradedError,
    AttemptNotFoundError,
    StaleTransitionError,
    StudentNotFoundError,
    TerminalExternalError,
    TransientExternalError,
    ValidationError,
)
from ..models import Activity, ActivityType, Attempt, AttemptStatus, User, UserRole
from ..time_utils import Clock, to_naive_utc, utcnow
from .database import DatabaseService
from .feedback_service import FeedbackGenerator, FeedbackResult
from .logging import get_logging_service
from .progression_service import ProgressionDelta, ProgressionService
from .settings_config_service import SettingsConfigService, get_settings_service
from .spaced_repetition_service import SpacedRepetitionService


@dataclass(frozen=True)
class GradingPolicy:
    """Retry and scoring constants for the grading engine"""

    max_attempts: int = 3
    backoff_base_ms: float = 500.0
    backoff_factor: float = 2.0
    backoff_jitter_ms: float = 250.0
    default_max_score: float = 5.0
    reconcile_batch_size: int = 50

    @classmethod
    def from_settings(cls, settings: SettingsConfigService) -> "GradingPolicy":
        return cls(
            max_attempts=max(1, settings.getint("grading", "max_attempts", cls.max_attempts)),
            backoff_base_ms=settings.getfloat(
                "grading", "backoff_base_ms", cls.backoff_base_ms
            ),
            backoff_factor=settings.getfloat(
                "grading", "backoff_factor", cls.backoff_factor
            ),
            backoff_jitter_ms=settings.getfloat(
                "grading", "backoff_jitter_ms", cls.backoff_jitter_ms
            ),
            default_max_score=settings.getfloat(
                "grading", "default_max_score", cls.default_max_score
            ),
            reconcile_batch_size=settings.getint(
                "grading", "reconcile_batch_size", cls.reconcile_batch_size
            ),
        )

    def backoff_seconds(self, failed_calls: int, rng: random.Random) -> float:
        """Delay before the next call after ``failed_calls`` transient failures"""
        delay_ms = self.backoff_base_ms * self.backoff_factor ** (failed_calls - 1)
        if self.backoff_jitter_ms > 0:
            delay_ms += rng.uniform(0, self.backoff_jitter_ms)
        return delay_ms / 1000.0


class GradingStatus(enum.Enum):
    """How a grading call ended"""

    GRADED = "graded"
    PENDING = "pending"
    DUPLICATE = "duplicate"


@dataclass
class RawAttempt:
    """A submission as received from the caller"""

    student_id: int
    activity_id: int
    answer: Any
    submitted_at: Optional[datetime] = None


@dataclass
class GradingOutcome:
    status: GradingStatus
    attempt: Attempt
    progression: Optional[ProgressionDelta] = None
    review_applied: bool = False

    @property
    def is_pending(self) -> bool:
        return self.attempt.status == AttemptStatus.GRADING_PENDING


@dataclass
class ReconcileReport:
    """Counts from one reconciliation sweep"""

    attempted: int = 0
    graded: int = 0
    still_pending: int = 0
    failed: int = 0
    stale: int = 0
    skipped: int = 0
    attempt_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "graded": self.graded,
            "still_pending": self.still_pending,
            "failed": self.failed,
            "stale": self.stale,
            "skipped": self.skipped,
            "attempt_ids": list(self.attempt_ids),
        }


def _normalize_choice(value: Any) -> str:
    return str(value).strip().lower()


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "t", "yes", "1"):
            return True
        if lowered in ("false", "f", "no", "0"):
            return False
    return None


def _selected_options(activity: Activity, answer: Any) -> List[str]:
    """Resolve an MCQ answer (text, option index, or list of either) to option texts"""
    options = activity.payload.get("options") or []
    values = answer if isinstance(answer, list) else [answer]
    if not values:
        raise ValidationError("Answer must select at least one option")

    selected = []
    for value in values:
        if isinstance(value, bool) or value is None:
            raise ValidationError(f"Invalid option {value!r}")
        if isinstance(value, int):
            if not 0 <= value < len(options):
                raise ValidationError(f"Option index {value} out of range")
            value = options[value]
        choice = _normalize_choice(value)
        if not choice:
            raise ValidationError("Answer must not be empty")
        if options and choice not in {_normalize_choice(o) for o in options}:
            raise ValidationError(f"'{value}' is not one of the activity's options")
        if choice not in selected:
            selected.append(choice)
    return selected


def score_closed_form(activity: Activity, answer: Any) -> Tuple[float, Dict[str, Any]]:
    """
    Score an MCQ or true/false answer.

    MCQ payloads may carry ``weights`` (option -> credit) for partial credit;
    otherwise the score is 1 when the selection matches ``correct`` exactly
    and 0 otherwise.

    Returns:
        ``(score, feedback)`` with score in [0, 1]

    Raises:
        ValidationError: if the answer is malformed or the payload has no key
    """
    payload = activity.payload or {}
    if "correct" not in payload:
        raise ValidationError(f"Activity {activity.id} has no answer key")
    correct = payload["correct"]

    if activity.activity_type == ActivityType.TRUE_FALSE:
        given = _as_bool(answer)
        expected = _as_bool(correct)
        if given is None:
            raise ValidationError("True/false answer must be a boolean")
        is_correct = given == expected
        return (1.0 if is_correct else 0.0), {
            "correct": is_correct,
            "expected": expected,
            "explanation": payload.get("explanation"),
        }

    selected = _selected_options(activity, answer)
    weights = payload.get("weights")
    if weights:
        normalized = {_normalize_choice(k): float(v) for k, v in weights.items()}
        score = max(0.0, min(1.0, sum(normalized.get(s, 0.0) for s in selected)))
        is_correct = score >= 1.0
    else:
        expected = correct if isinstance(correct, list) else [correct]
        is_correct = set(selected) == {_normalize_choice(c) for c in expected}
        score = 1.0 if is_correct else 0.0

    return score, {
        "correct": is_correct,
        "expected": correct,
        "selected": selected,
        "explanation": payload.get("explanation"),
    }


def build_rubric(activity: Activity, default_max_score: float = 5.0) -> Dict[str, Any]:
    """Grading material passed to the feedback generator"""
    payload = activity.payload or {}
    return {
        "question": payload.get("question", activity.title),
        "activity_type": activity.activity_type.value,
        "criteria": payload.get("rubric"),
        "keywords": payload.get("keywords"),
        "reference_answer": payload.get("reference_answer"),
        "max_score": float(payload.get("max_score") or default_max_score),
    }


def validate_answer(activity: Activity, answer: Any) -> None:
    """Reject answers that can never be graded, before anything is stored"""
    if activity.activity_type.is_open_ended:
        if not isinstance(answer, str) or not answer.strip():
            raise ValidationError("Open-ended answers must be non-empty text")
    else:
        score_closed_form(activity, answer)


class GradingService:
    """Service that grades attempts and reconciles pending ones"""

    def __init__(
        self,
        db_service: DatabaseService,
        feedback_generator: FeedbackGenerator,
        scheduler: Optional[SpacedRepetitionService] = None,
        progression: Optional[ProgressionService] = None,
        policy: Optional[GradingPolicy] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.db = db_service
        self.feedback_generator = feedback_generator
        self.scheduler = scheduler or SpacedRepetitionService(db_service, clock=clock)
        self.progression = progression or ProgressionService(db_service, clock=clock)
        self.policy = policy or GradingPolicy.from_settings(get_settings_service())
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.monotonic = monotonic
        self.logger = logging.getLogger(__name__)
        self.events = get_logging_service()

    # -- queries -------------------------------------------------------------

    def _find_attempt(
        self, session, student_id: int, activity_id: int, submitted_at: datetime
    ) -> Optional[Attempt]:
        return session.execute(
            select(Attempt).where(
                Attempt.student_id == student_id,
                Attempt.activity_id == activity_id,
                Attempt.submitted_at == submitted_at,
            )
        ).scalar_one_or_none()

    def get_attempt(self, attempt_id: int) -> Attempt:
        with self.db.get_session() as session:
            attempt = session.get(Attempt, attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
            return attempt

    def list_attempts(
        self, student_id: int, activity_id: Optional[int] = None
    ) -> List[Attempt]:
        stmt = select(Attempt).where(Attempt.student_id == student_id)
        if activity_id is not None:
            stmt = stmt.where(Attempt.activity_id == activity_id)
        with self.db.get_session() as session:
            return list(
                session.execute(stmt.order_by(Attempt.submitted_at, Attempt.id))
                .scalars()
                .all()
            )

    def pending_attempt_ids(self, limit: Optional[int] = None) -> List[int]:
        stmt = (
            select(Attempt.id)
            .where(Attempt.status == AttemptStatus.GRADING_PENDING)
            .order_by(Attempt.submitted_at, Attempt.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.get_session() as session:
            return list(session.execute(stmt).scalars().all())

    # -- grading -------------------------------------------------------------

    def grade(self, raw: RawAttempt, timeout: Optional[float] = None) -> GradingOutcome:
        """
        Grade one submission.

        Args:
            raw: The submission
            timeout: Seconds the caller is willing to wait for feedback
                retries; when exceeded the attempt is left pending

        Returns:
            GradingOutcome tagged ``graded``, ``pending`` or ``duplicate``

        Raises:
            ActivityNotFoundError, StudentNotFoundError: unknown ids
            ValidationError: malformed answer
            StaleTransitionError: a newer attempt for the pair was already applied
            TerminalExternalError: the feedback generator rejected the request
        """
        submitted_at = to_naive_utc(raw.submitted_at) or self.clock()
        deadline = None if timeout is None else self.monotonic() + timeout

        with self.db.get_session() as session:
            activity = session.get(Activity, raw.activity_id)
            if activity is None:
                raise ActivityNotFoundError(f"Activity {raw.activity_id} not found")
            student = session.get(User, raw.student_id)
            if student is None or student.role != UserRole.STUDENT:
                raise StudentNotFoundError(f"Student {raw.student_id} not found")
            validate_answer(activity, raw.answer)

        with self.db.key_lock("attempt", raw.student_id, raw.activity_id):
            with self.db.get_session() as session:
                existing = self._find_attempt(
                    session, raw.student_id, raw.activity_id, submitted_at
                )
                if existing is not None:
                    return self._duplicate(session, existing)

                state = self.scheduler.find_state(
                    session, raw.student_id, raw.activity_id
                )
                self.scheduler.ensure_in_order(state, submitted_at)

                attempt = Attempt(
                    student_id=raw.student_id,
                    activity_id=raw.activity_id,
                    submitted_at=submitted_at,
                    raw_answer=raw.answer,
                    status=AttemptStatus.GRADING_PENDING,
                    due_at_submission=state.due_at if state is not None else None,
                    created_at=self.clock(),
                )
                session.add(attempt)
                try:
                    session.commit()
                except IntegrityError:
                    # Same key recorded by another process.
                    session.rollback()
                    existing = self._find_attempt(
                        session, raw.student_id, raw.activity_id, submitted_at
                    )
                    if existing is None:
                        raise
                    return self._duplicate(session, existing)

                activity = session.get(Activity, raw.activity_id)
                return self._finish(session, attempt, activity, deadline)

    def _duplicate(self, session, attempt: Attempt) -> GradingOutcome:
        entry = self.progression.find_entry(session, attempt.id)
        self.events.log_grading_event(
            "duplicate",
            student_id=attempt.student_id,
            activity_id=attempt.activity_id,
            status=attempt.status.value,
            attempt_id=attempt.id,
        )
        return GradingOutcome(
            status=GradingStatus.DUPLICATE,
            attempt=attempt,
            progression=self.progression.delta_from_entry(entry) if entry else None,
            review_applied=attempt.review_applied,
        )

    def _score(
        self, activity: Activity, attempt: Attempt, deadline: Optional[float]
    ) -> Optional[Tuple[float, Dict[str, Any]]]:
        """Score an attempt. ``None`` means feedback could not be obtained in time."""
        if not activity.activity_type.is_open_ended:
            return score_closed_form(activity, attempt.raw_answer)

        result = self._generate_with_retry(activity, attempt, deadline)
        if result is None:
            return None
        return result.normalized, {
            "explanation": result.explanation,
            "raw_score": result.score,
            "max_score": result.max_score,
            **result.details,
        }

    def _generate_with_retry(
        self, activity: Activity, attempt: Attempt, deadline: Optional[float]
    ) -> Optional[FeedbackResult]:
        rubric = build_rubric(activity, self.policy.default_max_score)
        provider = getattr(self.feedback_generator, "name", "feedback")

        for call in range(1, self.policy.max_attempts + 1):
            started = self.monotonic()
            attempt.grading_tries = (attempt.grading_tries or 0) + 1
            try:
                result = self.feedback_generator.generate_feedback(
                    rubric, attempt.raw_answer
                )
            except TransientExternalError as e:
                attempt.last_error = str(e)
                self.events.log_external_call(
                    "generate_feedback",
                    provider,
                    success=False,
                    duration_ms=int((self.monotonic() - started) * 1000),
                    attempt=call,
                    attempt_id=attempt.id,
                    error=str(e),
                )
                if call >= self.policy.max_attempts:
                    break
                delay = self.policy.backoff_seconds(call, self.rng)
                if deadline is not None and self.monotonic() + delay > deadline:
                    self.logger.info(
                        f"Deadline reached for attempt {attempt.id} after {call} call(s)"
                    )
                    break
                self.sleep(delay)
                continue
            except TerminalExternalError as e:
                attempt.last_error = str(e)
                self.events.log_external_call(
                    "generate_feedback",
                    provider,
                    success=False,
                    duration_ms=int((self.monotonic() - started) * 1000),
                    attempt=call,
                    attempt_id=attempt.id,
                    error=str(e),
                    terminal=True,
                )
                raise

            self.events.log_external_call(
                "generate_feedback",
                provider,
                success=True,
                duration_ms=int((self.monotonic() - started) * 1000),
                attempt=call,
                attempt_id=attempt.id,
            )
            return result
        return None

    def _finish(
        self,
        session,
        attempt: Attempt,
        activity: Activity,
        deadline: Optional[float],
    ) -> GradingOutcome:
        """Score a stored pending attempt and commit the result. Caller holds the key lock."""
        try:
            scored = self._score(activity, attempt, deadline)
        except TerminalExternalError:
            session.commit()
            self.events.log_grading_event(
                "rejected",
                student_id=attempt.student_id,
                activity_id=attempt.activity_id,
                status=AttemptStatus.GRADING_PENDING.value,
                attempt_id=attempt.id,
                error=attempt.last_error,
            )
            raise

        if scored is None:
            session.commit()
            self.events.log_grading_event(
                "pending",
                student_id=attempt.student_id,
                activity_id=attempt.activity_id,
                status=AttemptStatus.GRADING_PENDING.value,
                attempt_id=attempt.id,
                tries=attempt.grading_tries,
                error=attempt.last_error,
            )
            return GradingOutcome(status=GradingStatus.PENDING, attempt=attempt)

        score, feedback = scored
        attempt.score = score
        attempt.feedback = feedback
        attempt.status = AttemptStatus.GRADED
        attempt.graded_at = self.clock()
        attempt.last_error = None

        # Attempts on other activities may finish concurrently; progression
        # updates for one student are serialised.
        with self.db.key_lock("student", attempt.student_id):
            try:
                self.scheduler.apply_attempt(session, attempt)
            except StaleTransitionError as e:
                # A newer attempt already moved the schedule; keep the grade and XP.
                attempt.review_applied = False
                self.events.log_grading_event(
                    "stale",
                    student_id=attempt.student_id,
                    activity_id=attempt.activity_id,
                    status="stale",
                    attempt_id=attempt.id,
                    detail=str(e),
                )

            delta = self.progression.apply_outcome(session, attempt)
            session.commit()

        self.events.log_grading_event(
            "graded",
            student_id=attempt.student_id,
            activity_id=attempt.activity_id,
            status=AttemptStatus.GRADED.value,
            attempt_id=attempt.id,
            score=score,
            xp_delta=delta.xp_delta,
        )
        return GradingOutcome(
            status=GradingStatus.GRADED,
            attempt=attempt,
            progression=delta,
            review_applied=attempt.review_applied,
        )

    # -- reconciliation ------------------------------------------------------

    def reconcile_attempt(
        self, attempt_id: int, timeout: Optional[float] = None
    ) -> GradingOutcome:
        """
        Retry grading for one pending attempt.

        Raises:
            AttemptNotFoundError: unknown id
            AlreadyGradedError: the attempt is already graded
            TerminalExternalError: the feedback generator rejected the request
        """
        deadline = None if timeout is None else self.monotonic() + timeout
        with self.db.get_session() as session:
            attempt = session.get(Attempt, attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
            key = ("attempt", attempt.student_id, attempt.activity_id)

        with self.db.key_lock(*key):
            with self.db.get_session() as session:
                attempt = session.get(Attempt, attempt_id)
                if attempt.status == AttemptStatus.GRADED:
                    raise AlreadyGradedError(f"Attempt {attempt_id} is already graded")
                activity = session.get(Activity, attempt.activity_id)
                return self._finish(session, attempt, activity, deadline)

    def reconcile_pending(self, limit: Optional[int] = None) -> ReconcileReport:
        """Sweep pending attempts, oldest submission first"""
        batch = limit if limit is not None else self.policy.reconcile_batch_size
        if batch <= 0:
            raise ValidationError("Reconcile limit must be positive")

        report = ReconcileReport()
        for attempt_id in self.pending_attempt_ids(batch):
            report.attempted += 1
            try:
                outcome = self.reconcile_attempt(attempt_id)
            except AlreadyGradedError:
                report.skipped += 1
                continue
            except TerminalExternalError:
                report.failed += 1
                continue

            if outcome.status == GradingStatus.GRADED:
                report.graded += 1
                report.attempt_ids.append(attempt_id)
                if not outcome.review_applied:
                    report.stale += 1
            else:
                report.still_pending += 1

        self.logger.info(
            f"Reconciled {report.graded}/{report.attempted} pending attempts "
            f"({report.still_pending} still pending, {report.failed} failed)"
        )
        return report


# Singleton instance
_grading_service = None


def get_grading_service() -> GradingService:
    """Get or create singleton grading service instance"""
    global _grading_service
    from .database import get_db_service
    from .feedback_service import build_feedback_generator

    db_service = get_db_service()
    if _grading_service is None or _grading_service.db is not db_service:
        _grading_service = GradingService(db_service, build_feedback_generator())
    return _grading_service
