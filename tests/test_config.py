from __future__ import annotations

from pathlib import Path

import allure
import pytest

from jobdock.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_are_usable(monkeypatch) -> None:
    monkeypatch.delenv("JOBDOCK_STATE_DIR")
    settings = Settings.from_env()

    assert settings.queue.state_dir == Path(".cache/jobdock/prompts")
    assert settings.queue.max_history == 200
    assert settings.worker.dispatch_timeout_seconds is None
    assert settings.environment.max_parallel_jobs == 4
    assert settings.tracker.base_url == ""
    settings.validate_for_worker()
    settings.validate_for_supervisor()


def test_explicit_state_dir_wins_over_env(tmp_path) -> None:
    settings = Settings.from_env(state_dir=tmp_path / "explicit")

    assert settings.queue.state_dir == tmp_path / "explicit"


def test_env_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("JOBDOCK_MAX_HISTORY", "5")
    monkeypatch.setenv("JOBDOCK_CPU_LIMIT", "0.5")
    monkeypatch.setenv("JOBDOCK_MEM_LIMIT", "512m")
    monkeypatch.setenv("JOBDOCK_RECOVER_ON_START", "no")
    monkeypatch.setenv("JOBDOCK_TRACKER_QUEUE", " crm ")
    monkeypatch.setenv(
        "JOBDOCK_CREDENTIALS_PATHS",
        f"{tmp_path / 'a'}:{tmp_path / 'b'}",
    )

    settings = Settings.from_env()

    assert settings.queue.state_dir == tmp_path / "prompts"
    assert settings.queue.max_history == 5
    assert settings.environment.cpu_limit == "0.5"
    assert settings.environment.mem_limit == "512m"
    assert settings.worker.recover_on_start is False
    assert settings.tracker.queue == "CRM"
    assert settings.environment.credentials_paths == (tmp_path / "a", tmp_path / "b")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("JOBDOCK_MAX_HISTORY", "0", "JOBDOCK_MAX_HISTORY"),
        ("JOBDOCK_DISPATCH_TIMEOUT_SECONDS", "0", "JOBDOCK_DISPATCH_TIMEOUT_SECONDS"),
        ("JOBDOCK_MAX_PARALLEL_JOBS", "0", "JOBDOCK_MAX_PARALLEL_JOBS"),
        ("JOBDOCK_CPU_LIMIT", "lots", "JOBDOCK_CPU_LIMIT"),
        ("JOBDOCK_JOB_COMMAND", "run-plan", "{job_id}"),
        ("JOBDOCK_PROBE_COMMAND_TEMPLATE", "true", "{branch}"),
    ],
)
def test_worker_validation_rejects_bad_values(monkeypatch, name, value, message) -> None:
    monkeypatch.setenv(name, value)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match=message):
        settings.validate_for_worker()


def test_tracker_validation(monkeypatch) -> None:
    monkeypatch.setenv("JOBDOCK_TRACKER_URL", "tracker.local")
    monkeypatch.setenv("JOBDOCK_TRACKER_TOKEN", "secret")
    with pytest.raises(ValueError, match="Invalid JOBDOCK_TRACKER_URL"):
        Settings.from_env().validate_for_tracker()

    monkeypatch.setenv("JOBDOCK_TRACKER_URL", "https://tracker.local")
    monkeypatch.delenv("JOBDOCK_TRACKER_TOKEN")
    with pytest.raises(ValueError, match="JOBDOCK_TRACKER_TOKEN"):
        Settings.from_env().validate_for_tracker()


def test_explicit_dispatch_timeout_must_exceed_job_timeout(monkeypatch) -> None:
    monkeypatch.setenv("JOBDOCK_JOB_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("JOBDOCK_DISPATCH_TIMEOUT_SECONDS", "600")

    with pytest.raises(ValueError, match="greater than JOBDOCK_JOB_TIMEOUT_SECONDS"):
        Settings.from_env().validate_for_worker()

    monkeypatch.setenv("JOBDOCK_DISPATCH_TIMEOUT_SECONDS", "900")
    settings = Settings.from_env()
    settings.validate_for_worker()
    assert settings.worker.dispatch_timeout_seconds == 900
