"""
Hestia Application Configuration

Loaded the same way the add-on options always were:
1. /data/options.json (Home Assistant add-on, production)
2. config.yaml next to the project root, under the "options" key (development)
3. Environment variables (optionally from a .env file) override connection settings
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import time
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

from .coordinator import DEFAULT_LEASE_SECONDS, JobKind
from .exceptions import ConfigurationError
from .jobs import DEFAULT_INTERVALS
from .models import State
from .prices import DEFAULT_MAX_AGE_MINUTES, DEFAULT_PUBLISH_HOUR, DEFAULT_TIMEZONE
from .settings import DEFAULT_ZONE, UserScheduleSettings, _camel_to_snake, is_valid_zone, normalize_zone

logger = logging.getLogger(__name__)

OPTIONS_PATH = "/data/options.json"
CONFIG_YAML_PATH = os.path.join(os.path.dirname(__file__), "..", "..", "config.yaml")

LEASE_STORES = ("memory", "redis")


@dataclass
class AppConfig:
    """Everything the backend needs to wire the collaborators."""

    ha_url: str = "http://supervisor/core"
    ha_token: str = ""
    redis_url: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    default_zone: str = DEFAULT_ZONE
    schedule_defaults: UserScheduleSettings = field(default_factory=UserScheduleSettings)
    users: dict[str, UserScheduleSettings] = field(default_factory=dict)
    price_sensors: dict[str, str] = field(default_factory=dict)
    price_max_age_minutes: int = DEFAULT_MAX_AGE_MINUTES
    publish_hour: int = DEFAULT_PUBLISH_HOUR
    device_default_entity: str = "water_heater.dhw"
    device_entities: dict[str, str] = field(default_factory=dict)
    device_modes: dict[str, str] = field(default_factory=lambda: {
        State.COMFORT.value: "performance",
        State.TURN_OFF.value: "off",
    })
    job_intervals: dict[JobKind, int] = field(default_factory=lambda: dict(DEFAULT_INTERVALS))
    lease_seconds: dict[JobKind, int] = field(default_factory=lambda: dict(DEFAULT_LEASE_SECONDS))
    daily_window_start: time = time(14, 0)
    daily_window_minutes: int = 10
    history_retention_days: int = 30
    run_initial_batch: bool = True
    lease_store: str = "memory"
    legacy_import_dir: Optional[str] = None

    @classmethod
    def from_options(cls, options: dict[str, Any]) -> "AppConfig":
        """Build from an add-on options dict. Keys may be camelCase.

        Raises:
            ConfigurationError: If a value is invalid
        """
        top = _snake_keys(options or {})
        config = cls()

        if "timezone" in top:
            config.timezone = str(top["timezone"])
        try:
            ZoneInfo(config.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {config.timezone}") from e

        if "default_zone" in top:
            if not is_valid_zone(top["default_zone"]):
                raise ConfigurationError(f"Invalid default_zone: {top['default_zone']}")
            config.default_zone = normalize_zone(top["default_zone"])

        schedule = dict(top.get("schedule") or {})
        schedule.setdefault("zone", config.default_zone)
        config.schedule_defaults = UserScheduleSettings.from_dict(schedule)

        for user in top.get("users") or []:
            user = dict(user)
            user_id = user.pop("id", None)
            if not user_id:
                raise ConfigurationError(f"User entry without id: {user}")
            merged = {**config.schedule_defaults.to_dict(), **_snake_keys(user)}
            config.users[str(user_id)] = UserScheduleSettings.from_dict(merged)

        price = _snake_keys(top.get("price") or {})
        config.price_sensors = {normalize_zone(z): e for z, e in (price.get("sensors") or {}).items()}
        config.price_max_age_minutes = _int(price, "max_age_minutes", config.price_max_age_minutes)
        config.publish_hour = _int(price, "publish_hour", config.publish_hour)
        if not 0 <= config.publish_hour <= 23:
            raise ConfigurationError(f"publish_hour must be 0-23, got {config.publish_hour}")

        device = _snake_keys(top.get("device") or {})
        config.device_default_entity = device.get("default_entity", config.device_default_entity)
        config.device_entities = dict(device.get("entities") or {})
        if "comfort_mode" in device:
            config.device_modes[State.COMFORT.value] = str(device["comfort_mode"])
        if "turn_off_mode" in device:
            config.device_modes[State.TURN_OFF.value] = str(device["turn_off_mode"])

        jobs = _snake_keys(top.get("jobs") or {})
        config.job_intervals.update(_per_kind(jobs.get("intervals"), "intervals"))
        config.lease_seconds.update(_per_kind(jobs.get("lease_seconds"), "lease_seconds"))
        if "daily_window_start" in jobs:
            config.daily_window_start = _parse_time(jobs["daily_window_start"])
        config.daily_window_minutes = _int(jobs, "daily_window_minutes", config.daily_window_minutes)
        config.history_retention_days = _int(jobs, "history_retention_days", config.history_retention_days)
        if "run_initial_batch" in jobs:
            config.run_initial_batch = bool(jobs["run_initial_batch"])

        config.lease_store = str(top.get("lease_store", config.lease_store)).lower()
        if config.lease_store not in LEASE_STORES:
            raise ConfigurationError(f"lease_store must be one of {LEASE_STORES}, got {config.lease_store}")
        config.redis_url = top.get("redis_url") or None
        config.legacy_import_dir = top.get("legacy_import_dir") or None
        return config

    def apply_environment(self) -> "AppConfig":
        """Override connection settings from the environment."""
        self.ha_url = os.environ.get("HA_URL", self.ha_url)
        self.ha_token = os.environ.get("HA_TOKEN", self.ha_token)
        self.redis_url = os.environ.get("REDIS_URL", self.redis_url)
        self.timezone = os.environ.get("HESTIA_TIMEZONE", self.timezone)
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {self.timezone}") from e
        if self.lease_store == "redis" and not self.redis_url:
            raise ConfigurationError("lease_store is redis but no REDIS_URL/redis_url is set")
        return self


def load_options(options_path: str = OPTIONS_PATH, config_path: str = CONFIG_YAML_PATH) -> dict[str, Any]:
    """Read the raw options dict from options.json or config.yaml."""
    if os.path.exists(options_path):
        with open(options_path) as f:
            options = json.load(f)
        logger.info(f"Loaded options from {options_path}")
        return options

    if os.path.exists(config_path):
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded options from {config_path}")
        return config.get("options", {}) or {}

    logger.warning("No options.json or config.yaml found, using defaults")
    return {}


def load_config(options_path: str = OPTIONS_PATH, config_path: str = CONFIG_YAML_PATH) -> AppConfig:
    load_dotenv()
    return AppConfig.from_options(load_options(options_path, config_path)).apply_environment()


def _snake_keys(data: dict) -> dict:
    return {_camel_to_snake(k): v for k, v in data.items()}


def _int(section: dict, key: str, default: int) -> int:
    if key not in section:
        return default
    try:
        return int(section[key])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be an integer, got {section[key]!r}") from e


def _per_kind(values: Optional[dict], name: str) -> dict[JobKind, int]:
    result = {}
    for key, value in (values or {}).items():
        try:
            kind = JobKind(key.replace("_", "-"))
            result[kind] = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid {name} entry {key}={value!r}") from e
        if result[kind] <= 0:
            raise ConfigurationError(f"{name} for {key} must be positive")
    return result


def _parse_time(value) -> time:
    try:
        hour, minute = str(value).split(":")
        return time(int(hour), int(minute))
    except ValueError as e:
        raise ConfigurationError(f"Invalid time {value!r}, expected HH:MM") from e
