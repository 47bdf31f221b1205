"""
Test configuration and setup for the activity engine
"""

import os
import random
from datetime import datetime, timedelta

import pytest

# Set test environment variables before any service is created
os.environ["ACTIVITY_ENGINE_TEST_MODE"] = "1"
os.environ["ACTIVITY_ENGINE_JWT_SECRET"] = "test-secret-for-activity-engine"

# Reset settings service to ensure it loads env-test.properties
from activity_engine.core.services.settings_config_service import (
    reset_settings_service,
)

reset_settings_service()

from activity_engine.core.models import (
    Activity,
    ActivityType,
    Classroom,
    Enrollment,
    School,
    User,
    UserRole,
)
from activity_engine.core.services.analytics_service import (
    AnalyticsPolicy,
    AnalyticsService,
)
from activity_engine.core.services.assignment_service import (
    AssignmentService,
    DistributionPolicy,
)
from activity_engine.core.services.auth import SessionProvider, reset_session_provider
from activity_engine.core.services.enrollment_service import (
    EnrollmentPolicy,
    EnrollmentService,
)
from activity_engine.core.services.feedback_service import StubFeedbackGenerator
from activity_engine.core.services.grading_service import GradingPolicy, GradingService
from activity_engine.core.services.logging import reset_logging_service
from activity_engine.core.services.progression_service import (
    ProgressionPolicy,
    ProgressionService,
)
from activity_engine.core.services.spaced_repetition_service import (
    SchedulerPolicy,
    SpacedRepetitionService,
)

BASE_TIME = datetime(2025, 3, 3, 9, 0, 0)


class FakeClock:
    """Deterministic clock; every service under test reads time from here"""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def test_db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture(autouse=True)
def setup_test_env(tmp_path, test_db_path):
    """Point logging and the database at a fresh temp directory"""
    log_dir = tmp_path / "logs"
    os.environ["ACTIVITY_ENGINE_DB_PATH"] = str(test_db_path)
    os.environ["ACTIVITY_ENGINE_LOG_DIR"] = str(log_dir)
    reset_logging_service()
    reset_session_provider()

    yield

    # Cleanup
    os.environ.pop("ACTIVITY_ENGINE_DB_PATH", None)
    os.environ.pop("ACTIVITY_ENGINE_LOG_DIR", None)
    reset_logging_service()
    reset_session_provider()


@pytest.fixture
def db_service(test_db_path):
    """Provide a database service for tests"""
    from activity_engine.core.services.database import get_db_service, init_db_service

    init_db_service(str(test_db_path))
    service = get_db_service()

    yield service

    service.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stub_feedback():
    return StubFeedbackGenerator()


@pytest.fixture
def sleeps():
    """Delays the grading engine asked to sleep for"""
    return []


# ============= Services =============


@pytest.fixture
def scheduler(db_service, clock):
    return SpacedRepetitionService(db_service, SchedulerPolicy(), clock=clock)


@pytest.fixture
def progression(db_service, clock):
    return ProgressionService(db_service, ProgressionPolicy(), clock=clock)


@pytest.fixture
def grading(db_service, stub_feedback, scheduler, progression, clock, sleeps):
    return GradingService(
        db_service,
        stub_feedback,
        scheduler=scheduler,
        progression=progression,
        policy=GradingPolicy(),
        clock=clock,
        sleep=sleeps.append,
        rng=random.Random(7),
    )


@pytest.fixture
def analytics(db_service, progression, clock):
    return AnalyticsService(db_service, AnalyticsPolicy(), progression, clock=clock)


@pytest.fixture
def enrollment(db_service, clock):
    return EnrollmentService(db_service, EnrollmentPolicy(), clock=clock)


@pytest.fixture
def assignment_service(db_service, scheduler, analytics, enrollment, clock):
    return AssignmentService(
        db_service,
        scheduler=scheduler,
        analytics=analytics,
        enrollment=enrollment,
        policy=DistributionPolicy(),
        clock=clock,
    )


@pytest.fixture
def session_provider(db_service):
    return SessionProvider(db_service, jwt_secret="test-secret-for-activity-engine")


# ============= Seed data =============


def add_entity(db_service, entity):
    with db_service.get_session() as session:
        session.add(entity)
        session.commit()
        return entity


@pytest.fixture
def school(db_service):
    return add_entity(db_service, School(name="Riverside Primary"))


@pytest.fixture
def other_school(db_service):
    return add_entity(db_service, School(name="Hilltop Secondary"))


@pytest.fixture
def make_user(db_service, school):
    counter = {"n": 0}

    def _make(role=UserRole.STUDENT, school_id=None, **kwargs):
        counter["n"] += 1
        username = kwargs.pop("username", f"{role.value}_{counter['n']}")
        return add_entity(
            db_service,
            User(
                username=username,
                display_name=username.replace("_", " ").title(),
                role=role,
                school_id=school.id if school_id is None else school_id,
                **kwargs,
            ),
        )

    return _make


@pytest.fixture
def teacher(make_user):
    return make_user(UserRole.TEACHER, username="ms_rivera")


@pytest.fixture
def other_teacher(make_user):
    return make_user(UserRole.TEACHER, username="mr_okafor")


@pytest.fixture
def student(make_user):
    return make_user(UserRole.STUDENT, username="ana")


@pytest.fixture
def other_student(make_user):
    return make_user(UserRole.STUDENT, username="ben")


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN, username="principal")


@pytest.fixture
def system_user(make_user):
    return make_user(UserRole.SYSTEM, username="scheduler_bot")


@pytest.fixture
def classroom(db_service, teacher, school, clock):
    return add_entity(
        db_service,
        Classroom(
            name="Year 5 Reading",
            teacher_id=teacher.id,
            school_id=school.id,
            term="2025-spring",
            created_at=clock(),
        ),
    )


@pytest.fixture
def enrolled_student(db_service, student, classroom, clock):
    add_entity(
        db_service,
        Enrollment(student_id=student.id, classroom_id=classroom.id, enrolled_at=clock()),
    )
    return student


@pytest.fixture
def make_activity(db_service):
    counter = {"n": 0}

    def _make(activity_type=ActivityType.MCQ, difficulty=0, payload=None, title=None):
        counter["n"] += 1
        if payload is None:
            if activity_type == ActivityType.MCQ:
                payload = {
                    "question": "Which word is a noun?",
                    "options": ["run", "table", "quickly"],
                    "correct": "table",
                }
            elif activity_type == ActivityType.TRUE_FALSE:
                payload = {"question": "The sun is a star.", "correct": True}
            else:
                payload = {
                    "question": "Why did the fox leave the forest?",
                    "rubric": "Mentions the fire and the search for food",
                    "keywords": ["fire", "food"],
                }
        return add_entity(
            db_service,
            Activity(
                title=title or f"Activity {counter['n']}",
                activity_type=activity_type,
                difficulty=difficulty,
                payload=payload,
            ),
        )

    return _make


@pytest.fixture
def mcq(make_activity):
    return make_activity(ActivityType.MCQ)


@pytest.fixture
def saq(make_activity):
    return make_activity(ActivityType.SAQ)


# ============= API =============


@pytest.fixture
def client(
    db_service,
    session_provider,
    grading,
    scheduler,
    progression,
    analytics,
    enrollment,
    assignment_service,
):
    """FastAPI TestClient wired to the test services."""
    from fastapi.testclient import TestClient

    from activity_engine.api.main import app
    from activity_engine.core.services import (
        analytics_service,
        assignment_service as assignment_module,
        auth,
        enrollment_service,
        grading_service,
        progression_service,
        spaced_repetition_service,
    )

    overrides = {
        auth.get_session_provider: lambda: session_provider,
        grading_service.get_grading_service: lambda: grading,
        spaced_repetition_service.get_spaced_repetition_service: lambda: scheduler,
        progression_service.get_progression_service: lambda: progression,
        analytics_service.get_analytics_service: lambda: analytics,
        enrollment_service.get_enrollment_service: lambda: enrollment,
        assignment_module.get_assignment_service: lambda: assignment_service,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield TestClient(app)
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture
def auth_headers(session_provider):
    """Build bearer headers for a user"""

    def _headers(user):
        return {"Authorization": f"Bearer {session_provider.issue_token(user)}"}

    return _headers
