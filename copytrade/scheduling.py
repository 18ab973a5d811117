"""Cancellable timers on top of APScheduler's AsyncIOScheduler."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class JobHandle:
    """Handle for one armed timer. ``cancel()`` may be called any number of times."""

    def __init__(self, job: Job) -> None:
        self._job = job
        self.cancelled = False

    @property
    def id(self) -> str:
        return self._job.id

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self._job.remove()
        except JobLookupError:
            # One-shot jobs are dropped by the scheduler after they fire.
            pass


class JobScheduler:
    """One scheduler per component; ``shutdown()`` invalidates every handle.

    The underlying AsyncIOScheduler is created on first use so it binds to
    the loop that is actually running.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._handles: dict[str, JobHandle] = {}

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(
            event_loop=asyncio.get_running_loop(),
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )
        self._scheduler.start()
        logger.debug("job_scheduler_started", extra={"scheduler": self.name})

    def every(
        self,
        seconds: float,
        fn: Callable[..., Any],
        job_id: str,
        *args: Any,
        run_now: bool = False,
    ) -> JobHandle:
        """Run ``fn(*args)`` every ``seconds``; replaces any job with the same id."""
        self.start()
        self.cancel(job_id)
        kwargs: dict[str, Any] = {}
        if run_now:
            kwargs["next_run_time"] = datetime.now(timezone.utc)
        job = self._scheduler.add_job(
            fn,
            "interval",
            seconds=seconds,
            args=list(args),
            id=job_id,
            name=f"{self.name}:{job_id}",
            replace_existing=True,
            **kwargs,
        )
        handle = JobHandle(job)
        self._handles[job_id] = handle
        return handle

    def after(self, seconds: float, fn: Callable[..., Any], job_id: str, *args: Any) -> JobHandle:
        """Run ``fn(*args)`` once, ``seconds`` from now."""
        self.start()
        self.cancel(job_id)
        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(seconds, 0.0))
        job = self._scheduler.add_job(
            fn,
            "date",
            run_date=run_date,
            args=list(args),
            id=job_id,
            name=f"{self.name}:{job_id}",
            replace_existing=True,
        )
        handle = JobHandle(job)
        self._handles[job_id] = handle
        return handle

    def cancel(self, job_id: str) -> bool:
        handle = self._handles.pop(job_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for job_id in list(self._handles):
            self.cancel(job_id)

    def shutdown(self) -> None:
        self.cancel_all()
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.debug("job_scheduler_stopped", extra={"scheduler": self.name})
        self._scheduler = None
