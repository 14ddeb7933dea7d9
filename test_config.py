"""
Tests for configuration resolution.
"""

import dataclasses
import json

import pytest

from script_timer.config import DEFAULT_PREFIX, TimerConfig
from script_timer.errors import ValidationError


def test_explicit_data_dir_wins_over_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SCRIPT_TIMER_HOME", str(tmp_path / "from_env"))

    config = TimerConfig.load(str(tmp_path / "explicit"))

    assert config.data_dir == (tmp_path / "explicit").resolve()
    assert config.ledger_path == config.data_dir / "scheduled_tasks.json"


def test_environment_data_dir_and_derived_paths(tmp_path, monkeypatch):
    monkeypatch.setenv("SCRIPT_TIMER_HOME", str(tmp_path))

    config = TimerConfig.load()

    assert config.data_dir == tmp_path.resolve()
    assert config.name_prefix == DEFAULT_PREFIX
    assert config.smoke_test_timeout == 10
    assert config.log_file == config.data_dir / "logs" / "script_timer.log"
    assert config.job_store_path.parent == config.data_dir
    assert config.principals == ("interactive", "service")


def test_config_file_is_overridden_by_environment(tmp_path, monkeypatch):
    (tmp_path / "config.json").write_text(json.dumps({
        "name_prefix": "Nightly",
        "smoke_test_timeout": 5,
        "principals": "service",
    }))
    monkeypatch.setenv("SCRIPT_TIMER_SMOKE_TIMEOUT", "20")
    monkeypatch.setenv("SCRIPT_TIMER_REQUIRE_ADMIN", "no")

    config = TimerConfig.load(str(tmp_path))

    assert config.name_prefix == "Nightly"
    assert config.smoke_test_timeout == 20
    assert config.require_admin is False
    assert config.principals == ("service",)


def test_unreadable_config_file_falls_back_to_defaults(tmp_path):
    (tmp_path / "config.json").write_text("{not json")

    config = TimerConfig.load(str(tmp_path))

    assert config.name_prefix == DEFAULT_PREFIX


def test_config_file_values_are_coerced(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({
        "smoke_test_timeout": "15",
        "require_admin": "false",
        "principals": ["service"],
        "intervals": [5, "15"],
    }))

    config = TimerConfig.load(str(tmp_path))

    assert config.smoke_test_timeout == 15
    assert config.require_admin is False
    assert config.principals == ("service",)
    assert config.intervals == (5, 15)


def test_malformed_config_file_values_are_ignored(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({
        "smoke_test_timeout": "ten",
        "intervals": 5,
        "principals": 7,
        "require_admin": None,
        "service_poll_seconds": [1],
        "mystery": True,
    }))

    config = TimerConfig.load(str(tmp_path))

    assert config.smoke_test_timeout == 10
    assert config.intervals == (1, 10, 30, 60, 180, 360, 720)
    assert config.principals == ("interactive", "service")
    assert config.require_admin is True
    assert config.service_poll_seconds == 30


def test_out_of_range_config_file_value_is_a_value_error(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({"smoke_test_timeout": "0"}))

    with pytest.raises(ValueError):
        TimerConfig.load(str(tmp_path))


def test_invalid_settings_are_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("SCRIPT_TIMER_BACKEND", "launchd")
    monkeypatch.setenv("SCRIPT_TIMER_PRINCIPALS", "interactive,nobody")

    with pytest.raises(ValueError) as excinfo:
        TimerConfig.load(str(tmp_path))

    assert "launchd" in str(excinfo.value)
    assert "nobody" in str(excinfo.value)


def test_config_is_immutable(config):
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.name_prefix = "Other"

    changed = config.with_overrides(name_prefix="Other")
    assert changed.name_prefix == "Other"
    assert config.name_prefix != "Other"


@pytest.mark.parametrize("choice,minutes", [("0", 1), ("1", 10), ("2", 30), ("3", 60), ("6", 720)])
def test_interval_choices(config, choice, minutes):
    assert config.interval_for_choice(choice) == minutes


@pytest.mark.parametrize("choice", ["7", "-1", "", "thirty"])
def test_invalid_interval_choice(config, choice):
    with pytest.raises(ValidationError):
        config.interval_for_choice(choice)
