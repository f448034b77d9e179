"""
scheduler.py — Delayed deadline checks.

Thin façade over APScheduler's AsyncIOScheduler. Each heartbeat (and each
start) enqueues a one-shot ``date`` job that, when it fires, asks the
state machine to re-check the activity against its *current* stored
deadline.

═══════════════════════════════════════════════════════════════════════════
FIRE-AND-VERIFY
═══════════════════════════════════════════════════════════════════════════

    T0      start        deadline T0+15   job A @ T0+15
    T0+12   heartbeat    deadline T0+27   job B @ T0+27
    T0+15   job A fires → reload → now <= T0+27 → no-op
    T0+27   job B fires → reload → now >  T0+27 → ALARM

Jobs are never cancelled. With SCHEDULER_COMPACT_TASKS the job id is the
activity id and a newer job replaces the pending one, so at most one
check per activity is queued; without it every job stays queued and the
stale ones become no-ops. Either way the fresh reload is the only guard.

Jobs run no earlier than their run date (plus a small slack so the firing
instant is strictly after the deadline) and are never dropped for being
late. The memory job store loses jobs on restart; the Redis job store
keeps them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from backend.app.activity.models import DeferredCheckTask
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

FireHandler = Callable[[DeferredCheckTask], Awaitable[Any]]

JOB_ID_PREFIX = "deadline-check"

# Single active scheduler per process; jobs resolve their handler here so
# they stay serializable for persistent job stores.
_fire_handler: Optional[FireHandler] = None
_active_scheduler: Optional["DeadlineScheduler"] = None


async def run_deferred_check(activity_id: str, deadline_snapshot: str, label: str = "") -> None:
    """Job entry point. Must stay importable by reference."""
    task = DeferredCheckTask(
        activity_id=activity_id,
        deadline_snapshot=datetime.fromisoformat(deadline_snapshot),
        label=label,
    )
    if _fire_handler is None:
        logger.warning(
            "Deadline check for %s fired with no handler registered", activity_id,
            extra={"activity_id": activity_id},
        )
        return

    try:
        await _fire_handler(task)
    except Exception:
        logger.exception(
            "Deadline check for %s failed", activity_id,
            extra={"activity_id": activity_id, "deadline": deadline_snapshot},
        )
        if _active_scheduler is not None:
            _active_scheduler.retry_later(task)


def _build_jobstore(kind: str):
    if kind == "redis":
        from apscheduler.jobstores.redis import RedisJobStore

        parsed = urlparse(settings.REDIS_URL)
        db = (parsed.path or "/0").lstrip("/") or "0"
        return RedisJobStore(
            jobs_key="saveme.deadline.jobs",
            run_times_key="saveme.deadline.run_times",
            host=parsed.hostname or "localhost",
            port=parsed.port or 6379,
            db=int(db),
            password=parsed.password,
        )
    if kind != "memory":
        logger.warning("Unknown SCHEDULER_JOBSTORE %r, using memory", kind)
    return MemoryJobStore()


class DeadlineScheduler:
    """
    Enqueue one-shot deadline checks.

    Parameters
    ----------
    jobstore : str
        ``memory`` or ``redis``.
    compact : bool
        Keep only the newest pending check per activity.
    fire_slack_seconds : float
        Added to every delay so the check runs strictly after the deadline.
    retry_seconds : float
        Delay before re-running a check whose handler raised (e.g. the
        store was unreachable).
    """

    def __init__(
        self,
        *,
        jobstore: Optional[str] = None,
        compact: Optional[bool] = None,
        fire_slack_seconds: Optional[float] = None,
        retry_seconds: float = 60.0,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.compact = settings.SCHEDULER_COMPACT_TASKS if compact is None else compact
        self.fire_slack = timedelta(
            seconds=settings.SCHEDULER_FIRE_SLACK_SECONDS
            if fire_slack_seconds is None else fire_slack_seconds
        )
        self.retry_delay = timedelta(seconds=retry_seconds)
        self._scheduler = scheduler or AsyncIOScheduler(
            jobstores={"default": _build_jobstore(jobstore or settings.SCHEDULER_JOBSTORE)},
            timezone=timezone.utc,
        )

    def on_fire(self, handler: FireHandler) -> None:
        """Register the coroutine invoked with each fired task."""
        global _fire_handler, _active_scheduler
        _fire_handler = handler
        _active_scheduler = self

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start executing jobs. Must be called with an event loop running."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(
                "Deadline scheduler started (%d pending check(s))", self.pending_count(),
            )

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Deadline scheduler stopped")

    def _job_id(self, activity_id: str) -> str:
        if self.compact:
            return f"{JOB_ID_PREFIX}:{activity_id}"
        return f"{JOB_ID_PREFIX}:{activity_id}:{uuid.uuid4().hex[:8]}"

    def schedule(self, delay: timedelta, task: DeferredCheckTask) -> str:
        """
        Run a deadline check for ``task.activity_id`` after ``delay``.

        Returns
        -------
        str
            The job id (the task handle).
        """
        return self._add(delay, task, self._job_id(task.activity_id))

    def retry_later(self, task: DeferredCheckTask) -> str:
        """
        Re-run a failed check after ``retry_seconds``.

        Retries never share the compacted per-activity id, so a retry and a
        newer check scheduled by a heartbeat both stay queued.
        """
        logger.info(
            "Retrying deadline check for %s in %ss",
            task.activity_id, self.retry_delay.total_seconds(),
            extra={"activity_id": task.activity_id},
        )
        job_id = f"{JOB_ID_PREFIX}:{task.activity_id}:retry:{uuid.uuid4().hex[:8]}"
        return self._add(self.retry_delay, task, job_id)

    def _add(self, delay: timedelta, task: DeferredCheckTask, job_id: str) -> str:
        delay = max(delay, timedelta(0))
        run_at = datetime.now(timezone.utc) + delay + self.fire_slack
        self._scheduler.add_job(
            run_deferred_check,
            trigger="date",
            run_date=run_at,
            args=[task.activity_id, task.deadline_snapshot.isoformat(), task.label],
            id=job_id,
            name=task.label or job_id,
            replace_existing=True,
            misfire_grace_time=None,
            max_instances=10,
        )
        logger.debug(
            "Scheduled deadline check %s at %s", job_id, run_at.isoformat(),
            extra={"activity_id": task.activity_id, "deadline": task.deadline_snapshot.isoformat()},
        )
        return job_id

    def pending_count(self) -> int:
        return len(self._scheduler.get_jobs())
