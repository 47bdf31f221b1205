#!/usr/bin/env python3
"""
Seed a demo school for a fresh database.

Creates one school with a teacher, two students, a classroom with a live
enrollment code and a handful of activities, then prints bearer tokens for
each user. Re-running is a no-op when the demo school already exists.
"""

import sys
import traceback

from sqlalchemy import select

from activity_engine.core.models import (
    Activity,
    ActivityType,
    School,
    User,
    UserRole,
)
from activity_engine.core.services.auth import AuthSession, get_session_provider
from activity_engine.core.services.database import get_db_service
from activity_engine.core.services.enrollment_service import get_enrollment_service

DEMO_SCHOOL = "Demo School"

DEMO_ACTIVITIES = [
    (
        "Nouns",
        ActivityType.MCQ,
        0,
        {
            "question": "Which word is a noun?",
            "options": ["run", "table", "quickly"],
            "correct": "table",
        },
    ),
    (
        "Stars",
        ActivityType.TRUE_FALSE,
        1,
        {"question": "The sun is a star.", "correct": True},
    ),
    (
        "The fox",
        ActivityType.SAQ,
        2,
        {
            "question": "Why did the fox leave the forest?",
            "rubric": "Mentions the fire and the search for food",
            "keywords": ["fire", "food"],
        },
    ),
    (
        "My weekend",
        ActivityType.LAQ,
        3,
        {
            "question": "Describe your last weekend in five sentences.",
            "rubric": "Past tense, five sentences, connected ideas",
            "max_score": 10,
        },
    ),
]


def seed_demo() -> int:
    print("Seeding database with demo data...")

    db_service = get_db_service()
    session = db_service.get_session()

    try:
        if session.execute(
            select(School).where(School.name == DEMO_SCHOOL)
        ).scalar_one_or_none():
            print("Demo school already exists, skipping.")
            return 0

        school = School(name=DEMO_SCHOOL)
        session.add(school)
        session.flush()

        users = [
            User(username="demo_teacher", display_name="Demo Teacher", role=UserRole.TEACHER),
            User(username="demo_student_1", display_name="Demo Student 1", role=UserRole.STUDENT),
            User(username="demo_student_2", display_name="Demo Student 2", role=UserRole.STUDENT),
        ]
        for user in users:
            user.school_id = school.id
            session.add(user)
        for title, activity_type, difficulty, payload in DEMO_ACTIVITIES:
            session.add(
                Activity(
                    title=title,
                    activity_type=activity_type,
                    difficulty=difficulty,
                    payload=payload,
                )
            )
        session.commit()
    except Exception as e:
        print(f"[FAIL] Error seeding demo data: {e}")
        traceback.print_exc()
        session.rollback()
        return 1
    finally:
        session.close()

    teacher = users[0]
    enrollment = get_enrollment_service()
    classroom = enrollment.create_classroom("Demo Classroom", teacher.id)
    classroom = enrollment.generate_code(
        classroom.id,
        AuthSession(user_id=teacher.id, role=UserRole.TEACHER, school_id=teacher.school_id),
    )

    provider = get_session_provider()
    print("[OK] Demo data created.")
    print(f"  Classroom {classroom.id} code: {classroom.enrollment_code}")
    for user in users:
        print(f"  {user.username} ({user.role.value}): {provider.issue_token(user)}")
    return 0


if __name__ == "__main__":
    sys.exit(seed_demo())
