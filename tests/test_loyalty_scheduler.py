from pathlib import Path

import pytest

from favilla_api.jobs.loyalty import expire_loyalty_vouchers
from favilla_api.observability.scheduler import get_scheduler_store
from favilla_api.scheduling.config import JobDefinition, load_job_definitions
from favilla_api.scheduling.runner import LoyaltyJobScheduler, resolve_task

REPO_SCHEDULE = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


def _job(job_id: str, *, max_attempts: int) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        kwargs={},
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict[str, int]:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"accounts_checked": 3}

    job = _job("job-alpha", max_attempts=3)
    summary = await scheduler.build_runner(flaky_job, job)()

    assert summary == {"accounts_checked": 3}
    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot["totals"]["attempt_failures"] == 1
    assert job_snapshot["totals"]["consecutive_failures"] == 0
    assert job_snapshot["last_summary"] == {"accounts_checked": 3}
    assert job_snapshot["last_error"] is None


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("job-failure", max_attempts=2)
    assert await scheduler.build_runner(failing_job, job)() is None

    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot["totals"]["attempt_failures"] == 2
    assert job_snapshot["totals"]["consecutive_failures"] == 1
    assert job_snapshot["last_error"] == "boom"


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "UTC"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.paused]
        task = "module.other"
        cron = "0 * * * *"
        enabled = false

        [jobs.broken]
        cron = "0 * * * *"
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "UTC"
    assert [job.id for job in config.jobs] == ["sample"]
    job = config.jobs[0]
    assert job.max_attempts == 5
    assert job.jitter_seconds == 1.5
    assert job.backoff_for(1) == 2
    assert job.backoff_for(2) == 6
    assert job.backoff_for(4) == 30


def test_load_job_definitions_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "absent.toml")


def test_repository_schedule_resolves_to_jobs() -> None:
    config = load_job_definitions(REPO_SCHEDULE)

    assert {job.id for job in config.jobs} == {"points_reconciliation", "voucher_expiry"}
    for job in config.jobs:
        assert callable(resolve_task(job.task))


def test_resolve_task_rejects_non_coroutines() -> None:
    with pytest.raises(TypeError):
        resolve_task("favilla_api.services.payments.order_rewards.order_earn_key")
    with pytest.raises(AttributeError):
        resolve_task("favilla_api.jobs.loyalty.missing_job")
    with pytest.raises(ValueError):
        resolve_task("no_module_path")


@pytest.mark.asyncio
async def test_voucher_expiry_job_runs_clean_database(session_factory) -> None:
    summary = await expire_loyalty_vouchers(session_factory=session_factory)
    assert summary["expired_vouchers"] == 0
    assert "cutoff" in summary
