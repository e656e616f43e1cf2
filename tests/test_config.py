"""Tests for application configuration loading."""

from __future__ import annotations

import json
from datetime import time

import pytest
import yaml

from core.hestia.config import AppConfig, load_config, load_options
from core.hestia.coordinator import JobKind
from core.hestia.exceptions import ConfigurationError


def test_from_options_reads_sections() -> None:
    """Test every section is parsed, camelCase keys included."""
    config = AppConfig.from_options({
        "timezone": "Europe/Oslo",
        "defaultZone": "no1",
        "schedule": {"comfortHours": 4},
        "users": [{"id": "home", "autoApplySchedule": True, "zone": "NO2"}],
        "price": {"sensors": {"NO1": "sensor.nordpool_no1"}, "publishHour": 12},
        "device": {"defaultEntity": "water_heater.tank", "comfortMode": "high_demand", "turnOffMode": "eco"},
        "jobs": {
            "intervals": {"price-refresh": 600},
            "leaseSeconds": {"schedule_compute": 90},
            "dailyWindowStart": "14:30",
            "historyRetentionDays": 7,
        },
        "leaseStore": "memory",
    })

    assert config.timezone == "Europe/Oslo"
    assert config.default_zone == "NO1"
    assert config.schedule_defaults.comfort_hours == 4
    assert config.schedule_defaults.zone == "NO1"
    home = config.users["home"]
    assert (home.auto_apply, home.zone, home.comfort_hours) == (True, "NO2", 4)
    assert config.price_sensors == {"NO1": "sensor.nordpool_no1"}
    assert config.publish_hour == 12
    assert config.device_default_entity == "water_heater.tank"
    assert config.device_modes == {"comfort": "high_demand", "turn_off": "eco"}
    assert config.job_intervals[JobKind.PRICE_REFRESH] == 600
    assert config.lease_seconds[JobKind.SCHEDULE_COMPUTE] == 90
    assert config.lease_seconds[JobKind.DAILY_BATCH] == 600
    assert config.daily_window_start == time(14, 30)
    assert config.history_retention_days == 7


@pytest.mark.parametrize(
    "options",
    [
        {"leaseStore": "etcd"},
        {"defaultZone": "XX"},
        {"timezone": "Mars/Olympus"},
        {"price": {"publishHour": 25}},
        {"jobs": {"dailyWindowStart": "2pm"}},
        {"jobs": {"intervals": {"price-refresh": 0}}},
        {"jobs": {"intervals": {"unknown-job": 10}}},
        {"users": [{"zone": "SE3"}]},
    ],
)
def test_from_options_rejects_invalid_values(options) -> None:
    """Test invalid options raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        AppConfig.from_options(options)


def test_load_options_prefers_options_json(tmp_path) -> None:
    """Test options.json wins over config.yaml."""
    options_path = tmp_path / "options.json"
    config_path = tmp_path / "config.yaml"
    options_path.write_text(json.dumps({"default_zone": "SE1"}))
    config_path.write_text(yaml.safe_dump({"options": {"default_zone": "SE2"}}))

    assert load_options(str(options_path), str(config_path)) == {"default_zone": "SE1"}
    assert load_options(str(tmp_path / "missing.json"), str(config_path)) == {"default_zone": "SE2"}
    assert load_options(str(tmp_path / "missing.json"), str(tmp_path / "missing.yaml")) == {}


def test_environment_overrides(tmp_path, monkeypatch) -> None:
    """Test connection settings come from the environment."""
    monkeypatch.setenv("HA_URL", "http://ha.local:8123")
    monkeypatch.setenv("HA_TOKEN", "secret")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("HESTIA_TIMEZONE", "Europe/Helsinki")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({"options": {"lease_store": "redis"}}))

    config = load_config(str(tmp_path / "missing.json"), str(config_path))

    assert config.ha_url == "http://ha.local:8123"
    assert config.ha_token == "secret"
    assert config.redis_url == "redis://cache:6379/0"
    assert config.timezone == "Europe/Helsinki"
    assert config.lease_store == "redis"


def test_redis_lease_store_requires_url(monkeypatch) -> None:
    """Test selecting redis without a URL is a configuration error."""
    monkeypatch.delenv("REDIS_URL", raising=False)

    with pytest.raises(ConfigurationError):
        AppConfig.from_options({"lease_store": "redis"}).apply_environment()


def test_repository_config_yaml_is_valid() -> None:
    """Test the shipped config.yaml parses into a configuration."""
    from core.hestia.config import CONFIG_YAML_PATH

    config = AppConfig.from_options(load_options("/nonexistent/options.json", CONFIG_YAML_PATH))

    assert config.default_zone == "SE3"
    assert config.device_modes["turn_off"] == "off"
    assert "home" in config.users
