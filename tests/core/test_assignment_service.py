"""
Tests for teacher assignments and per-student activity distribution
"""

from datetime import timedelta

import pytest

from activity_engine.core.exceptions import (
    ActivityNotFoundError,
    AuthorizationError,
    ConfigurationError,
    StudentNotFoundError,
    ValidationError,
)
from activity_engine.core.models import ReviewPhase, ReviewState
from activity_engine.core.services.assignment_service import DistributionPolicy
from activity_engine.core.services.auth import AuthSession
from activity_engine.core.services.grading_service import RawAttempt


def session_for(user):
    return AuthSession(user_id=user.id, role=user.role, school_id=user.school_id)


def seed_due(db_service, student, activities, due_at, streak):
    with db_service.get_session() as session:
        for activity in activities:
            session.add(
                ReviewState(
                    student_id=student.id,
                    activity_id=activity.id,
                    phase=ReviewPhase.REVIEW,
                    ease_factor=2.5,
                    interval_days=6,
                    due_at=due_at,
                    streak=streak,
                    created_at=due_at - timedelta(days=20),
                )
            )
        session.commit()


class TestCreateAssignment:
    def test_create_keeps_order_and_drops_repeats(
        self, assignment_service, classroom, teacher, make_activity
    ):
        a, b, c = make_activity(), make_activity(), make_activity()

        assignment = assignment_service.create_assignment(
            session_for(teacher), classroom.id, [c.id, a.id, c.id, b.id], "Week 1"
        )

        assert assignment.activity_ids == [c.id, a.id, b.id]
        assert assignment.created_by == teacher.id
        listed = assignment_service.list_assignments(classroom_id=classroom.id)
        assert [x.id for x in listed] == [assignment.id]
        assert assignment_service.list_assignments(teacher_id=teacher.id)[0].id == assignment.id

    def test_rejects_bad_input(self, assignment_service, classroom, teacher, mcq):
        actor = session_for(teacher)
        with pytest.raises(ValidationError):
            assignment_service.create_assignment(actor, classroom.id, [], "Empty")
        with pytest.raises(ValidationError):
            assignment_service.create_assignment(actor, classroom.id, [mcq.id], "  ")
        with pytest.raises(ActivityNotFoundError):
            assignment_service.create_assignment(
                actor, classroom.id, [mcq.id, 999], "Missing"
            )

    def test_only_managers_create(self, assignment_service, classroom, other_teacher, mcq):
        with pytest.raises(AuthorizationError):
            assignment_service.create_assignment(
                session_for(other_teacher), classroom.id, [mcq.id], "Not mine"
            )


class TestDistribution:
    def test_limit_must_be_positive(self, assignment_service, student):
        with pytest.raises(ValidationError):
            assignment_service.plan_next(student.id, 0)
        with pytest.raises(StudentNotFoundError):
            assignment_service.plan_next(777, 5)

    def test_reviews_fill_seventy_percent_then_new(
        self, assignment_service, db_service, student, make_activity, clock
    ):
        reviews = [make_activity() for _ in range(9)]
        seed_due(db_service, student, reviews, clock(), streak=5)
        near = make_activity(difficulty=1)
        exact = [make_activity(difficulty=0) for _ in range(2)]
        make_activity(difficulty=4)

        plan = assignment_service.plan_next(student.id, 10)

        sources = [source for _, source in plan]
        assert sources == ["review"] * 7 + ["new"] * 3
        assert [a.id for a, _ in plan[:7]] == [r.id for r in reviews[:7]]
        assert [a.id for a, _ in plan[7:]] == [exact[0].id, exact[1].id, near.id]

    def test_strained_deck_gets_larger_review_share(
        self, assignment_service, analytics, db_service, student, make_activity, clock
    ):
        reviews = [make_activity() for _ in range(12)]
        seed_due(db_service, student, reviews, clock() - timedelta(days=3), streak=0)
        make_activity()

        assert analytics.srs_health(student.id).status == "critical"
        plan = assignment_service.plan_next(student.id, 10)

        assert [source for _, source in plan] == ["review"] * 9 + ["new"]

    def test_single_slot_goes_to_a_due_review(
        self, assignment_service, db_service, student, make_activity, clock
    ):
        overdue = make_activity()
        seed_due(db_service, student, [overdue], clock() - timedelta(days=30), streak=5)
        make_activity()

        plan = assignment_service.plan_next(student.id, 1)

        assert [(a.id, s) for a, s in plan] == [(overdue.id, "review")]

    def test_due_reviews_fill_slots_nothing_else_claims(
        self, assignment_service, db_service, student, make_activity, clock
    ):
        reviews = [make_activity() for _ in range(3)]
        seed_due(db_service, student, reviews, clock(), streak=5)

        plan = assignment_service.plan_next(student.id, 3)

        assert [a.id for a, _ in plan] == [r.id for r in reviews]
        assert [s for _, s in plan] == ["review"] * 3

    def test_assignments_are_served_oldest_first(
        self,
        assignment_service,
        grading,
        classroom,
        teacher,
        enrolled_student,
        make_activity,
        clock,
    ):
        actor = session_for(teacher)
        x, y, z = make_activity(), make_activity(), make_activity()
        first = assignment_service.create_assignment(actor, classroom.id, [x.id, y.id], "A")
        clock.advance(minutes=1)
        assignment_service.create_assignment(actor, classroom.id, [z.id], "B")
        clock.advance(minutes=1)

        grading.grade(RawAttempt(enrolled_student.id, x.id, "table"))
        plan = assignment_service.plan_next(enrolled_student.id, 2)

        assert [(a.id, s) for a, s in plan] == [(y.id, "assignment"), (z.id, "assignment")]

        progress = assignment_service.student_assignments(enrolled_student.id)
        assert [p["assignment_id"] for p in progress][0] == first.id
        assert progress[0]["status"] == "in_progress"
        assert progress[0]["outstanding_activity_ids"] == [y.id]
        assert progress[1]["status"] == "not_started"

    def test_no_activity_appears_twice(
        self,
        assignment_service,
        db_service,
        classroom,
        teacher,
        enrolled_student,
        make_activity,
        clock,
    ):
        shared = make_activity()
        seed_due(db_service, enrolled_student, [shared], clock(), streak=5)
        assignment_service.create_assignment(
            session_for(teacher), classroom.id, [shared.id], "Revision"
        )

        plan = assignment_service.plan_next(enrolled_student.id, 5)

        ids = [a.id for a, _ in plan]
        assert ids.count(shared.id) == 1
        assert plan[0][1] == "review"
        assert len(ids) == len(set(ids))

    def test_unenrolled_student_sees_no_assignments(
        self, assignment_service, enrollment, classroom, teacher, enrolled_student, mcq
    ):
        assignment_service.create_assignment(
            session_for(teacher), classroom.id, [mcq.id], "Gone"
        )
        enrollment.unenroll(enrolled_student.id, classroom.id)

        assert assignment_service.student_assignments(enrolled_student.id) == []

    def test_review_fractions_are_validated(self):
        with pytest.raises(ConfigurationError):
            DistributionPolicy(review_fraction=1.5)
