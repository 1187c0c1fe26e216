"""
Configuration management for the sync tool

Settings come from config/config.yaml. secrets.env and .env are loaded into the
environment first, and SHELFBRIDGE_* variables override the YAML globals.
"""

import copy
import logging
import os
from typing import Any, Dict, List

import pytz
import yaml
from croniter import croniter
from dotenv import load_dotenv

from .exceptions import ConfigError

DEFAULT_GLOBALS: Dict[str, Any] = {
    "min_progress_threshold": 5.0,
    "parallel": True,
    "workers": 3,
    "dry_run": False,
    "sync_schedule": "0 3 * * *",
    "timezone": "Etc/UTC",
    "force_sync": False,
    "auto_add_books": True,
    "title_author_search": False,
    "completion_threshold": 95.0,
    "cache_file": "data/.book_cache.db",
    "log_level": "INFO",
    "reread_detection": {
        "reread_threshold": 30,
        "high_progress_threshold": 85,
        "regression_warn_threshold": 10,
    },
    "rate_limits": {
        "hardcover": {"max_concurrency": 1, "requests_per_minute": 55},
        "audiobookshelf": {"max_concurrency": 5, "requests_per_minute": 600},
    },
}

REQUIRED_USER_KEYS = ["id", "abs_url", "abs_token", "hardcover_token"]

TRUE_VALUES = ("true", "1", "yes", "on")


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Configuration class that loads settings from config/config.yaml (YAML)"""

    def __init__(self, config_path: str = "config/config.yaml") -> None:
        self.logger = logging.getLogger(__name__)
        self.config_path = config_path
        self._load_env_files()
        self._load_config()
        self._apply_env_overrides()
        self._validate_config()

    def _load_env_files(self) -> None:
        if os.path.exists("secrets.env"):
            load_dotenv("secrets.env")
            self.logger.debug("Loaded secrets from secrets.env")

        if os.path.exists(".env"):
            load_dotenv(".env")
            self.logger.debug("Loaded additional configuration from .env")

    def _load_config(self) -> None:
        if not os.path.exists(self.config_path):
            raise ConfigError(f"Config file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            try:
                config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a mapping")

        self.global_config = _merge(DEFAULT_GLOBALS, config.get("global") or {})
        self.users: List[Dict[str, Any]] = config.get("users") or []
        self.logger.debug(f"Loaded configuration from {self.config_path}")

    def _apply_env_overrides(self) -> None:
        dry_run = os.getenv("SHELFBRIDGE_DRY_RUN")
        if dry_run is not None:
            self.global_config["dry_run"] = dry_run.strip().lower() in TRUE_VALUES

        workers = os.getenv("SHELFBRIDGE_WORKERS")
        if workers is not None:
            self.global_config["workers"] = workers.strip()

        cache_file = os.getenv("SHELFBRIDGE_CACHE_FILE")
        if cache_file:
            self.global_config["cache_file"] = cache_file

        log_level = os.getenv("SHELFBRIDGE_LOG_LEVEL")
        if log_level:
            self.global_config["log_level"] = log_level.strip().upper()

    def _validate_config(self) -> None:
        errors = []
        g = self.global_config

        try:
            g["workers"] = int(g["workers"])
            if g["workers"] < 1:
                errors.append("workers must be at least 1")
        except (TypeError, ValueError):
            errors.append(f"workers must be an integer, got {g['workers']!r}")

        for key in ("min_progress_threshold", "completion_threshold"):
            try:
                g[key] = float(g[key])
                if not 0 <= g[key] <= 100:
                    errors.append(f"{key} must be between 0 and 100")
            except (TypeError, ValueError):
                errors.append(f"{key} must be a number, got {g[key]!r}")

        if g["timezone"] not in pytz.all_timezones_set:
            errors.append(f"Unknown timezone: {g['timezone']}")

        if not croniter.is_valid(str(g["sync_schedule"])):
            errors.append(f"Invalid cron schedule: {g['sync_schedule']}")

        for service, limits in (g.get("rate_limits") or {}).items():
            for key in ("max_concurrency", "requests_per_minute"):
                value = (limits or {}).get(key)
                if not isinstance(value, int) or value < 1:
                    errors.append(f"rate_limits.{service}.{key} must be a positive integer")

        if not self.users:
            errors.append("No users defined in config")

        seen_ids = set()
        for user in self.users:
            if not isinstance(user, dict):
                errors.append(f"User entry must be a mapping, got {user!r}")
                continue
            for key in REQUIRED_USER_KEYS:
                if not user.get(key):
                    errors.append(
                        f"Missing user config: {key} for user {user.get('id', '[unknown]')}"
                    )
            if user.get("id") in seen_ids:
                errors.append(f"Duplicate user id: {user['id']}")
            seen_ids.add(user.get("id"))

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(
                f"- {error}" for error in errors
            )
            self.logger.error(error_msg)
            raise ConfigError(error_msg)

        self.logger.debug("Configuration validation passed")

    def get_global(self) -> dict:
        return self.global_config

    def get_users(self) -> list:
        return self.users

    def get_user(self, user_id: str) -> dict:
        for user in self.users:
            if str(user["id"]) == str(user_id):
                return user
        raise KeyError(f"User not found: {user_id}")

    def get_cron_config(self) -> dict:
        """Get cron configuration from global settings"""
        return {
            "schedule": self.global_config["sync_schedule"],
            "timezone": self.global_config["timezone"],
        }

    def __str__(self) -> str:
        users_str = ", ".join([str(user.get("id")) for user in self.users])
        return f"Config: users=[{users_str}], global={self.global_config}"
