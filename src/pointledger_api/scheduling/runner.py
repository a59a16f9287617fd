"""APScheduler runtime for loyalty maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from pointledger_api.observability.scheduler import get_loyalty_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(task: str) -> JobCallable:
    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


class LoyaltyJobScheduler:
    """Register the schedule file's jobs as cron triggers and run them with retries."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_loyalty_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        for job in config.jobs:
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(
                self.build_runner(job, resolve_task(job.task)),
                trigger=trigger,
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered loyalty job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Loyalty job scheduler started", jobs=len(config.jobs), timezone=config.timezone)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Loyalty job scheduler stopped")

    def build_runner(self, job: JobDefinition, func: JobCallable) -> Callable[[], Awaitable[dict[str, Any] | None]]:
        async def _run() -> dict[str, Any] | None:
            self._observability.record_dispatch(job.id, job.task)
            started = time.perf_counter()
            for attempt in range(1, job.max_attempts + 1):
                try:
                    summary = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=str(exc))
                    if attempt >= job.max_attempts:
                        self._observability.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started,
                            attempts=attempt,
                        )
                        logger.exception("Loyalty job failed", job_id=job.id, task=job.task, attempts=attempt)
                        return None
                    delay = job.backoff_for(attempt)
                    self._observability.record_retry(job.id, job.task, attempts=attempt + 1)
                    logger.warning("Loyalty job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime = time.perf_counter() - started
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime,
                    attempts=attempt,
                    summary=summary if isinstance(summary, dict) else None,
                )
                logger.info("Loyalty job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime)
                return summary
            return None

        return _run

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = [
            {
                "id": job.id,
                "task": job.task,
                "cron": job.cron,
                "max_attempts": job.max_attempts,
                "metrics": snapshot["jobs"].get(job.id),
            }
            for job in (self._config.jobs if self._config else [])
        ]
        return {"running": self.is_running, "configured_jobs": len(jobs), "totals": snapshot["totals"], "jobs": jobs}


__all__ = ["LoyaltyJobScheduler", "SessionFactory", "resolve_task"]
