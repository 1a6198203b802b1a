from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from taskpool.config import (
    DEFAULT_WORKER_COMMAND,
    PoolSettings,
    RetrySettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in list(os.environ):
        if name.startswith("TASKPOOL_"):
            monkeypatch.delenv(name)
    return monkeypatch


def test_from_env_defaults(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".taskpool.db")
    assert settings.log_level == "WARNING"
    assert settings.pool.max_workers == 10
    assert settings.pool.initial_workers is None
    assert settings.retry.max_retries == 3
    assert settings.circuit_breaker.failure_threshold == 5
    assert settings.dead_letter.retention_days == 30
    assert settings.worker.command_template == DEFAULT_WORKER_COMMAND
    assert settings.worker.transient_exit_codes == (75, 137, 143)
    settings.validate()


def test_from_env_reads_overrides(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TASKPOOL_DB_PATH", "/tmp/pool.db")
    clean_env.setenv("TASKPOOL_LOG_LEVEL", "debug")
    clean_env.setenv("TASKPOOL_MAX_WORKERS", "4")
    clean_env.setenv("TASKPOOL_INITIAL_WORKERS", "2")
    clean_env.setenv("TASKPOOL_SCALING_ENABLED", "off")
    clean_env.setenv("TASKPOOL_MAX_RETRIES", "7")
    clean_env.setenv("TASKPOOL_RETRY_JITTER", "no")
    clean_env.setenv("TASKPOOL_BREAKER_RESET_TIMEOUT_SECONDS", "12.5")
    clean_env.setenv("TASKPOOL_RATE_LIMIT_BATCHING", "false")
    clean_env.setenv("TASKPOOL_DLQ_MAX_ENTRIES", "50")
    clean_env.setenv("TASKPOOL_TRANSIENT_EXIT_CODES", "75, 99")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/pool.db")
    assert settings.log_level == "DEBUG"
    assert settings.pool.max_workers == 4
    assert settings.pool.initial_workers == 2
    assert settings.pool.scaling_enabled is False
    assert settings.retry.max_retries == 7
    assert settings.retry.jitter is False
    assert settings.circuit_breaker.reset_timeout_seconds == 12.5
    assert settings.rate_limit.enable_batching is False
    assert settings.dead_letter.max_entries == 50
    assert settings.worker.transient_exit_codes == (75, 99)


def test_explicit_db_path_wins_over_env(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TASKPOOL_DB_PATH", "/tmp/ignored.db")

    assert Settings.from_env(db_path=Path("chosen.db")).db_path == Path("chosen.db")


def test_invalid_boolean_is_rejected(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TASKPOOL_RETRY_ENABLED", "maybe")

    with pytest.raises(ValueError, match="TASKPOOL_RETRY_ENABLED"):
        Settings.from_env()


def test_invalid_exit_code_list_is_rejected(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TASKPOOL_VALIDATION_EXIT_CODES", "64,abc")

    with pytest.raises(ValueError, match="TASKPOOL_VALIDATION_EXIT_CODES"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(log_level="LOUD"), "TASKPOOL_LOG_LEVEL"),
        (Settings(pool=PoolSettings(task_timeout_seconds=0)), "TASKPOOL_TASK_TIMEOUT_SECONDS"),
        (Settings(pool=PoolSettings(initial_workers=0)), "TASKPOOL_INITIAL_WORKERS"),
        (Settings(worker=WorkerSettings(command_template="  ")), "TASKPOOL_WORKER_COMMAND"),
        (Settings(pool=PoolSettings(min_workers=5, max_workers=2)), "max_workers"),
        (Settings(retry=RetrySettings(backoff_multiplier=0.5)), "backoff_multiplier"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_component_configs_mirror_settings() -> None:
    settings = Settings(
        pool=PoolSettings(min_workers=2, max_workers=6, scaling_enabled=False),
        retry=RetrySettings(max_retries=1, jitter=False),
    )

    pool_config = settings.pool_config()
    assert pool_config.scaling.min_workers == 2
    assert pool_config.scaling.max_workers == 6
    assert pool_config.scaling.enabled is False
    assert settings.retry_policy().max_retries == 1
    assert settings.retry_policy().jitter is False
    assert settings.breaker_config().failure_threshold == 5
    assert settings.rate_limiter_config().max_batch_size == 10
    assert settings.dead_letter_config().max_reprocess_attempts == 3
