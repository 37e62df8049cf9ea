"""Process-wide background scheduler for token and lease renewals.

Pattern: Shared Timer
----------------------
One ``RenewalScheduler`` is created by the application and handed to every
session manager and lease container.  It wraps APScheduler's
``BackgroundScheduler``: each renewal is a one-shot ``date`` job whose id names
the entry it belongs to (``session:<id>``, ``lease:<path>:<mode>``).  Jobs are
added with ``replace_existing=True`` so rescheduling an entry atomically
replaces its pending job; there is never more than one live handle per entry.

Jobs execute on the scheduler's worker pool, so renewals for unrelated
entries run concurrently.  Starting and stopping the scheduler starts and
stops all background renewal work together.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from typing import Any, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from vault_lifecycle.errors import SchedulerUnavailableError

logger = logging.getLogger(__name__)


class TaskScheduler(Protocol):
    """The scheduling capability the session manager and lease container need."""

    @property
    def running(self) -> bool: ...

    def schedule(
        self,
        job_id: str,
        func: Callable[..., Any],
        run_at: datetime.datetime,
        **kwargs: Any,
    ) -> None: ...

    def cancel(self, job_id: str) -> None: ...


class RenewalScheduler:
    """APScheduler-backed implementation of ``TaskScheduler``."""

    def __init__(self, max_workers: int = 10) -> None:
        self._scheduler = BackgroundScheduler(
            timezone="UTC",
            executors={"default": {"type": "threadpool", "max_workers": max_workers}},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        )

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Renewal scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Renewal scheduler shutdown complete")

    def schedule(
        self,
        job_id: str,
        func: Callable[..., Any],
        run_at: datetime.datetime,
        **kwargs: Any,
    ) -> None:
        """Run *func(**kwargs)* once at *run_at*, replacing any job with the same id."""
        if not self._scheduler.running:
            raise SchedulerUnavailableError(f"Cannot schedule {job_id}: scheduler is not running")
        self._scheduler.add_job(
            func=func,
            trigger="date",
            run_date=run_at,
            id=job_id,
            kwargs=kwargs,
            replace_existing=True,
        )
        logger.debug("Scheduled %s at %s", job_id, run_at.isoformat())

    def cancel(self, job_id: str) -> None:
        """Remove the pending job *job_id*; a no-op if it already ran or never existed."""
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug("Job already removed (likely executed): %s", job_id)
        else:
            logger.debug("Cancelled %s", job_id)

    def __enter__(self) -> RenewalScheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
