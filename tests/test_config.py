from datetime import timedelta

import pytest
from pydantic import ValidationError

from task_scheduler.config import SchedulerConfig


def test_defaults():
    config = SchedulerConfig()
    assert config.polling_interval == timedelta(seconds=5)
    assert config.lease_duration == timedelta(seconds=60)
    assert config.renewal_interval == timedelta(seconds=20)
    assert config.default_max_retry_attempts == 3
    assert config.backoff_cap == timedelta(minutes=5)
    assert config.health_window == timedelta(minutes=15)
    assert config.degraded_threshold < config.critical_threshold


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TASK_SCHEDULER_POLLING_INTERVAL", "PT2S")
    monkeypatch.setenv("TASK_SCHEDULER_DEFAULT_MAX_RETRY_ATTEMPTS", "7")
    config = SchedulerConfig()
    assert config.polling_interval == timedelta(seconds=2)
    assert config.default_max_retry_attempts == 7


def test_explicit_renewal_interval():
    config = SchedulerConfig(lease_duration=timedelta(seconds=30), lease_renewal_interval=timedelta(seconds=5))
    assert config.renewal_interval == timedelta(seconds=5)


@pytest.mark.parametrize("overrides", [
    {"degraded_threshold": 0.6, "critical_threshold": 0.5},
    {"jitter_fraction": 1.5},
    {"polling_interval": timedelta(0)},
    {"backoff_base": timedelta(seconds=-1)},
    {"lease_duration": timedelta(seconds=10), "lease_renewal_interval": timedelta(seconds=10)},
    {"max_concurrency": 0},
])
def test_invalid_configuration(overrides):
    with pytest.raises(ValidationError):
        SchedulerConfig(**overrides)


def test_config_is_immutable():
    config = SchedulerConfig()
    with pytest.raises(ValidationError):
        config.polling_interval = timedelta(seconds=1)
