from activity_engine.core.models import UserRole
from activity_engine.core.roles import (
    has_role,
    is_staff,
    is_student,
    normalize_role,
    parse_user_role,
)
from activity_engine.core.services.auth import AuthSession


def test_normalize_role_accepts_enum_value_object():
    assert normalize_role(UserRole.ADMIN) == "admin"
    assert parse_user_role(UserRole.ADMIN) == UserRole.ADMIN


def test_normalize_role_accepts_string_variants():
    assert normalize_role("admin") == "admin"
    assert normalize_role(" ADMIN ") == "admin"
    assert parse_user_role("admin") == UserRole.ADMIN


def test_normalize_role_accepts_enumish_strings():
    assert normalize_role("UserRole.SYSTEM") == "system"
    assert parse_user_role("UserRole.TEACHER") == UserRole.TEACHER


def test_unknown_roles_normalize_to_empty():
    assert normalize_role("janitor") == ""
    assert parse_user_role(None) is None


def test_session_role_checks():
    session = AuthSession(user_id=1, role=UserRole.SYSTEM, school_id=None)
    assert is_staff(session)
    assert not is_student(session)
    assert has_role(session, "teacher", UserRole.SYSTEM)
