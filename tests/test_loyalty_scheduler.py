from pathlib import Path

import pytest

from pointledger_api.jobs.loyalty import expire_stale_claims, expire_stale_redemptions, warn_expiring_points
from pointledger_api.observability.scheduler import get_loyalty_scheduler_store
from pointledger_api.scheduling.config import JobDefinition, load_job_definitions
from pointledger_api.scheduling.runner import LoyaltyJobScheduler, resolve_task

REPO_ROOT = Path(__file__).resolve().parent.parent


def _job(job_id: str, *, max_attempts: int) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task="tests.noop",
        cron="* * * * *",
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
    )


def test_shipped_schedule_resolves_every_task() -> None:
    config = load_job_definitions(REPO_ROOT / "config" / "schedules.toml")

    assert config.timezone == "UTC"
    assert {job.id for job in config.jobs} == {
        "points_expiry",
        "points_expiry_reminders",
        "stale_redemptions",
        "stale_claims",
    }
    for job in config.jobs:
        assert callable(resolve_task(job.task))


def test_load_job_definitions_skips_disabled_and_malformed(tmp_path: Path) -> None:
    path = tmp_path / "schedules.toml"
    path.write_text(
        """
timezone = "Europe/London"

[jobs.sweep]
task = "pointledger_api.jobs.loyalty.expire_stale_claims"
cron = "*/5 * * * *"
max_attempts = 0
kwargs = { limit = 10 }

[jobs.paused]
task = "pointledger_api.jobs.loyalty.expire_stale_claims"
cron = "0 * * * *"
enabled = false

[jobs.broken]
cron = "0 * * * *"
"""
    )

    config = load_job_definitions(path)

    assert config.timezone == "Europe/London"
    assert [job.id for job in config.jobs] == ["sweep"]
    assert config.jobs[0].max_attempts == 1
    assert config.jobs[0].kwargs == {"limit": 10}

    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_backoff_grows_and_caps() -> None:
    job = JobDefinition(
        id="backoff",
        task="tests.noop",
        cron="* * * * *",
        base_backoff_seconds=5.0,
        backoff_multiplier=2.0,
        max_backoff_seconds=12.0,
    )
    assert [job.backoff_for(attempt) for attempt in (1, 2, 3)] == [5.0, 10.0, 12.0]


def test_resolve_task_rejects_bad_paths() -> None:
    with pytest.raises(ValueError):
        resolve_task("not_a_path")
    with pytest.raises(AttributeError):
        resolve_task("pointledger_api.jobs.loyalty.does_not_exist")
    with pytest.raises(TypeError):
        resolve_task("pointledger_api.services.loyalty.normalize_phone")


@pytest.mark.asyncio
async def test_runner_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_loyalty_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"expired": 3}

    summary = await scheduler.build_runner(_job("job-alpha", max_attempts=3), flaky_job)()

    assert summary == {"expired": 3}
    assert attempts == 2
    snapshot = store.snapshot()
    assert snapshot["totals"] == {
        "runs": 1,
        "success": 1,
        "run_failures": 0,
        "attempt_failures": 1,
        "retries": 1,
    }
    job_snapshot = snapshot["jobs"]["job-alpha"]
    assert job_snapshot["totals"]["consecutive_failures"] == 0
    assert job_snapshot["last_error"] is None
    assert job_snapshot["last_summary"] == {"expired": 3}


@pytest.mark.asyncio
async def test_runner_records_final_failure(tmp_path: Path) -> None:
    store = get_loyalty_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    assert await scheduler.build_runner(_job("job-failure", max_attempts=2), failing_job)() is None

    snapshot = store.snapshot()
    assert snapshot["totals"]["run_failures"] == 1
    job_snapshot = snapshot["jobs"]["job-failure"]
    assert job_snapshot["totals"]["consecutive_failures"] == 2
    assert job_snapshot["last_error"] == "boom"
    assert scheduler.health()["running"] is False


@pytest.mark.asyncio
async def test_scheduler_start_and_stop(tmp_path: Path, session_factory) -> None:
    path = tmp_path / "schedules.toml"
    path.write_text(
        """
[jobs.stale_claims]
task = "pointledger_api.jobs.loyalty.expire_stale_claims"
cron = "15 * * * *"
"""
    )
    scheduler = LoyaltyJobScheduler(session_factory=session_factory, config_path=path)

    scheduler.start()
    try:
        assert scheduler.is_running
        health = scheduler.health()
        assert health["configured_jobs"] == 1
        assert health["jobs"][0]["id"] == "stale_claims"
    finally:
        await scheduler.stop()
    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_job_entrypoints_open_their_own_sessions(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    await seed.customer(tenant_id)

    assert await expire_stale_claims(session_factory=session_factory) == {"expired": 0}
    assert await expire_stale_redemptions(session_factory=session_factory, limit=10) == {
        "scanned": 0,
        "expired": 0,
        "refundedPoints": 0,
    }
    assert await warn_expiring_points(session_factory=session_factory) == {"expiringSoon": 0, "notified": 0}
