"""
Settings Configuration Service for the activity engine

This module provides centralized configuration management using properties files.
It handles loading, parsing, and providing access to engine settings, including
the policy constants (SRS, grading, progression, analytics, distribution).

Configuration files:
- env.properties: Production configuration (default)
- env-test.properties: Test configuration (used when ACTIVITY_ENGINE_TEST_MODE=1)
"""

import os
import configparser
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union

# Built-in defaults, used when no properties file is found and as fallbacks
# for keys a properties file leaves out.
DEFAULT_SETTINGS: Dict[str, Dict[str, str]] = {
    "srs": {
        "min_ease": "1.3",
        "max_ease": "2.5",
        "initial_ease": "2.5",
        "lapse_threshold": "0.6",
        "lapse_penalty": "0.2",
        "review_streak": "2",
    },
    "grading": {
        "max_attempts": "3",
        "backoff_base_ms": "500",
        "backoff_factor": "2",
        "backoff_jitter_ms": "250",
        "default_max_score": "5",
        "reconcile_batch_size": "50",
    },
    "feedback": {
        "provider": "http",
        "url": "http://localhost:1234/v1/chat/completions",
        "api_key": "",
        "model": "gpt-4o-mini",
        "timeout_seconds": "30",
    },
    "progression": {
        "base_xp.mcq": "2",
        "base_xp.true_false": "2",
        "base_xp.saq": "5",
        "base_xp.laq": "10",
        "difficulty_bonus": "0.1",
        "level_xp_unit": "100",
        "cefr_window": "20",
        "cefr_alpha": "0.3",
        "cefr_promote_at": "0.8",
        "cefr_demote_at": "0.4",
        "cefr_band": "0.05",
        "cefr_min_samples": "5",
    },
    "analytics": {
        "w_on_time": "0.4",
        "w_not_overdue": "0.4",
        "w_streak": "0.2",
        "streak_target": "5",
        "velocity_window_days": "14",
        "velocity_half_life_days": "3.5",
        "healthy_at": "0.8",
        "moderate_at": "0.6",
        "overloaded_at": "0.4",
    },
    "distribution": {
        "review_fraction": "0.7",
        "strained_review_fraction": "0.9",
        "difficulty_band": "1",
    },
    "enrollment": {
        "code_length": "6",
        "code_ttl_hours": "24",
        "code_generation_attempts": "10",
    },
    "security": {
        "jwt_secret": "",
        "token_expiry_minutes": "60",
    },
    "server": {
        "host": "127.0.0.1",
        "port": "8000",
    },
    "database": {
        "path": "activity_engine.db",
    },
    "logging": {
        "dir": "logs",
        "level": "INFO",
    },
}


def get_config_file_path() -> str:
    """
    Determine the appropriate configuration file based on environment.

    Priority:
    1. ACTIVITY_ENGINE_CONFIG_FILE environment variable (explicit override)
    2. env-test.properties (when ACTIVITY_ENGINE_TEST_MODE=1)
    3. env.properties (production default)
    """
    explicit_config = os.environ.get("ACTIVITY_ENGINE_CONFIG_FILE")
    if explicit_config and os.path.exists(explicit_config):
        return explicit_config

    search_paths = [
        Path.cwd(),
        Path(__file__).parent.parent.parent.parent,  # project root
    ]

    for base_path in search_paths:
        if os.environ.get("ACTIVITY_ENGINE_TEST_MODE") == "1":
            test_config = base_path / "env-test.properties"
            if test_config.exists():
                return str(test_config)

        prod_config = base_path / "env.properties"
        if prod_config.exists():
            return str(prod_config)

    return "env.properties"


class SettingsConfigService:
    """Service for managing engine settings from properties files."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize the settings configuration service.

        Args:
            config_file: Optional path to config file. If None, auto-detects based on environment.
        """
        self.config_file = config_file or get_config_file_path()
        self.config = configparser.ConfigParser()
        self.logger = logging.getLogger(__name__)
        self._load_defaults()
        self._load_config()

    def _load_defaults(self):
        """Seed the parser with built-in defaults."""
        self.config.read_dict(DEFAULT_SETTINGS)

    def _load_config(self):
        """Load configuration from properties file on top of the defaults."""
        if not os.path.exists(self.config_file):
            self.logger.info(
                f"Config file {self.config_file} not found, using defaults"
            )
            return

        try:
            self.config.read(self.config_file, encoding="utf-8")
            self.logger.info(f"Configuration loaded from {self.config_file}")
        except configparser.Error as e:
            self.logger.error(f"Failed to parse configuration: {e}")

    def save_config(self):
        """Save current configuration to file."""
        with open(self.config_file, "w", encoding="utf-8") as f:
            self.config.write(f)
        self.logger.info(f"Configuration saved to {self.config_file}")

    def get(self, section: str, key: str, fallback: Optional[str] = None) -> str:
        """Get a configuration value."""
        try:
            return self.config.get(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Configuration not found: {section}.{key}")
            return ""

    def getint(self, section: str, key: str, fallback: Optional[int] = None) -> int:
        """Get an integer configuration value."""
        try:
            return self.config.getint(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Integer configuration not found: {section}.{key}")
            return 0

    def getfloat(
        self, section: str, key: str, fallback: Optional[float] = None
    ) -> float:
        """Get a float configuration value."""
        try:
            return self.config.getfloat(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Float configuration not found: {section}.{key}")
            return 0.0

    def set(self, section: str, key: str, value: Union[str, int, float, bool]):
        """Set a configuration value."""
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, key, str(value))

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get all values of a section as strings."""
        if not self.config.has_section(section):
            return {}
        return dict(self.config.items(section))


# Global instance
_settings_service = None


def get_settings_service(config_file: Optional[str] = None) -> SettingsConfigService:
    """
    Get the global settings service instance.

    Args:
        config_file: Optional path to config file. If None, auto-detects:
                    - env-test.properties when ACTIVITY_ENGINE_TEST_MODE=1
                    - env.properties for production

    Returns:
        SettingsConfigService instance
    """
    global _settings_service
    if _settings_service is None:
        _settings_service = SettingsConfigService(config_file)
    return _settings_service


def reset_settings_service():
    """Reset the global settings service instance. Useful for testing."""
    global _settings_service
    _settings_service = None
