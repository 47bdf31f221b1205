"""
Unit tests for the pure review transition
"""

from datetime import datetime, timedelta

import pytest

from activity_engine.core.exceptions import ValidationError
from activity_engine.core.models import ReviewPhase
from activity_engine.core.services.spaced_repetition_service import (
    ReviewSnapshot,
    SchedulerPolicy,
    compute_transition,
)

T = datetime(2025, 3, 3, 9, 0, 0)


def mature_snapshot(**overrides):
    values = dict(
        phase=ReviewPhase.REVIEW,
        ease_factor=2.5,
        interval_days=10,
        due_at=T,
        streak=3,
        lapses=0,
        review_count=5,
        last_reviewed_at=T - timedelta(days=10),
    )
    values.update(overrides)
    return ReviewSnapshot(**values)


class TestSuccessfulRecall:
    def test_good_recall_on_mature_item(self):
        """q=0.9 with ease 2.5, interval 10, streak 3 -> interval 25, Review"""
        nxt = compute_transition(mature_snapshot(), 0.9, T)

        assert nxt.interval_days == 25
        assert nxt.due_at == T + timedelta(days=25)
        assert nxt.streak == 4
        assert nxt.phase == ReviewPhase.REVIEW
        assert nxt.ease_factor == 2.5
        assert nxt.review_count == 6
        assert nxt.last_reviewed_at == T

    def test_first_exposure_enters_learning(self):
        snapshot = ReviewSnapshot.new(T)
        nxt = compute_transition(snapshot, 1.0, T)

        assert snapshot.phase == ReviewPhase.NEW
        assert nxt.phase == ReviewPhase.LEARNING
        assert nxt.streak == 1
        # max(0, 1) * 2.5 rounds half up
        assert nxt.interval_days == 3

    def test_second_success_reaches_review(self):
        first = compute_transition(ReviewSnapshot.new(T), 0.8, T)
        second = compute_transition(first, 0.8, T + timedelta(days=3))

        assert first.phase == ReviewPhase.LEARNING
        assert second.phase == ReviewPhase.REVIEW
        assert second.streak == 2

    def test_mediocre_recall_lowers_ease(self):
        nxt = compute_transition(mature_snapshot(ease_factor=2.0), 0.6, T)
        # 2.0 + 0.1 - 0.4 * (0.08 + 0.4 * 0.02)
        assert nxt.ease_factor == pytest.approx(2.0648)
        assert nxt.phase == ReviewPhase.REVIEW


class TestLapse:
    def test_poor_recall_lapses(self):
        """q=0.3 -> streak reset, one more lapse, 1 day interval, ease -0.2"""
        nxt = compute_transition(mature_snapshot(), 0.3, T)

        assert nxt.phase == ReviewPhase.LAPSED
        assert nxt.streak == 0
        assert nxt.lapses == 1
        assert nxt.interval_days == 1
        assert nxt.due_at == T + timedelta(days=1)
        assert nxt.ease_factor == pytest.approx(2.3)

    def test_ease_is_floored(self):
        nxt = compute_transition(mature_snapshot(ease_factor=1.35), 0.0, T)
        assert nxt.ease_factor == 1.3

    def test_lapsed_item_relearns(self):
        lapsed = compute_transition(mature_snapshot(), 0.2, T)
        relearn = compute_transition(lapsed, 0.9, T + timedelta(days=1))

        assert relearn.phase == ReviewPhase.LEARNING
        assert relearn.lapses == 1
        assert relearn.streak == 1


class TestInvariants:
    def test_transition_is_deterministic(self):
        snapshot = mature_snapshot(ease_factor=1.9, interval_days=4, streak=1)
        results = {compute_transition(snapshot, 0.72, T) for _ in range(5)}
        assert len(results) == 1

    @pytest.mark.parametrize("quality", [0.0, 0.1, 0.59, 0.6, 0.75, 0.95, 1.0])
    def test_bounds_hold_for_any_quality(self, quality):
        policy = SchedulerPolicy()
        state = ReviewSnapshot.new(T)
        graded_at = T
        for _ in range(6):
            state = compute_transition(state, quality, graded_at, policy)
            assert policy.min_ease <= state.ease_factor <= policy.max_ease
            assert state.interval_days >= 1
            assert state.due_at > graded_at
            graded_at = state.due_at

    @pytest.mark.parametrize("quality", [-0.1, 1.01, float("nan"), None])
    def test_quality_outside_unit_interval_is_rejected(self, quality):
        with pytest.raises(ValidationError):
            compute_transition(mature_snapshot(), quality, T)
