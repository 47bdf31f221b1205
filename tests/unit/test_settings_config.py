"""
Tests for properties-file configuration and policy loading
"""

import pytest

from activity_engine.core.exceptions import ConfigurationError
from activity_engine.core.services.analytics_service import AnalyticsPolicy
from activity_engine.core.services.assignment_service import DistributionPolicy
from activity_engine.core.services.enrollment_service import EnrollmentPolicy
from activity_engine.core.services.grading_service import GradingPolicy
from activity_engine.core.services.settings_config_service import SettingsConfigService
from activity_engine.core.services.spaced_repetition_service import SchedulerPolicy


@pytest.fixture
def properties(tmp_path):
    def _write(text):
        path = tmp_path / "env.properties"
        path.write_text(text, encoding="utf-8")
        return SettingsConfigService(str(path))

    return _write


def test_missing_file_uses_defaults(tmp_path):
    settings = SettingsConfigService(str(tmp_path / "absent.properties"))

    assert settings.getint("grading", "max_attempts") == 3
    assert SchedulerPolicy.from_settings(settings) == SchedulerPolicy()
    assert DistributionPolicy.from_settings(settings) == DistributionPolicy()


def test_file_overrides_single_keys(properties):
    settings = properties("[grading]\nmax_attempts = 5\nbackoff_jitter_ms = 0\n")

    policy = GradingPolicy.from_settings(settings)

    assert policy.max_attempts == 5
    assert policy.backoff_jitter_ms == 0
    assert policy.backoff_base_ms == 500


def test_unparseable_value_falls_back(properties):
    settings = properties("[enrollment]\ncode_length = six\n")
    assert EnrollmentPolicy.from_settings(settings).code_length == 6


def test_bad_health_weights_fail_at_load(properties):
    settings = properties("[analytics]\nw_on_time = 0.9\n")
    with pytest.raises(ConfigurationError):
        AnalyticsPolicy.from_settings(settings)


def test_set_and_save_round_trip(properties):
    settings = properties("[srs]\nmin_ease = 1.5\n")
    settings.set("srs", "review_streak", 3)
    settings.save_config()

    reloaded = SettingsConfigService(settings.config_file)

    assert reloaded.getfloat("srs", "min_ease") == 1.5
    assert SchedulerPolicy.from_settings(reloaded).review_streak == 3
    assert reloaded.get_section("srs")["review_streak"] == "3"
