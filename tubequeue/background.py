"""
Recurring maintenance jobs stored in `tasks_persistent`.

A job is due when `now - last_exec >= interval_sec`. last_exec is written
before the body runs, so a slow or failing job still waits a full interval
before it fires again.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from . import repository as repo
from .config import RECURRING_TICK_SECONDS, TASK_RETENTION_SECONDS
from .errors import ToolError, RecordError
from .models import JOB_DB_CLEAN, JOB_CHANNEL_FETCH
from .tasks import WorkerContext, SUPPORTED_CHANNEL_DOMAINS, store_channel_videos
from .utils import from_iso, to_iso

logger = logging.getLogger(__name__)

# Only videos newer than this are listed by the channel refresh
REFRESH_DATE_AFTER = "today-2days"


def db_clean_tasks(ctx: WorkerContext):
    with ctx.db.connect() as conn:
        removed = repo.sweep_stale(conn, TASK_RETENTION_SECONDS)
    logger.info("Removed %d finished task(s)", removed)


def refresh_channels(ctx: WorkerContext):
    with ctx.db.connect() as conn:
        channels = repo.list_channels(conn)
    for channel in channels:
        if ctx.stop_requested():
            break
        if channel.domain not in SUPPORTED_CHANNEL_DOMAINS:
            continue
        try:
            stored = store_channel_videos(
                ctx, channel.domain, channel.channel_id,
                limit=None, date_after=REFRESH_DATE_AFTER,
            )
        except (ToolError, RecordError, sqlite3.Error) as e:
            logger.error("Refreshing channel %s failed: %s", channel.channel_name, e)
            continue
        logger.info("Channel %s: %d recent video(s)", channel.channel_name, stored)


JOBS: Dict[str, Callable[[WorkerContext], None]] = {
    JOB_DB_CLEAN: db_clean_tasks,
    JOB_CHANNEL_FETCH: refresh_channels,
}


def run_due_jobs(ctx: WorkerContext, now: Optional[datetime] = None,
                 jobs: Optional[Dict[str, Callable]] = None) -> List[str]:
    """Run every recurring job whose interval has elapsed. Returns the names run."""
    now = now or datetime.now(timezone.utc)
    jobs = jobs if jobs is not None else JOBS
    with ctx.db.connect() as conn:
        rows = repo.list_persistent_jobs(conn)

    fired = []
    for job in rows:
        elapsed = (now - from_iso(job.last_exec)).total_seconds()
        if elapsed < job.interval_sec:
            continue
        with ctx.db.connect() as conn:
            repo.touch_persistent_job(conn, job.id, to_iso(now))
        fired.append(job.name)

        body = jobs.get(job.name)
        if body is None:
            logger.warning("No handler for recurring job %s", job.name)
            continue
        logger.debug("Started recurring job %s", job.name)
        try:
            body(ctx)
        except Exception:
            logger.exception("Recurring job %s failed", job.name)
        else:
            logger.debug("Completed recurring job %s", job.name)
    return fired


class RecurringJobRunner(threading.Thread):
    """Checks the recurring jobs on its own, slower tick until `stop` is set."""

    def __init__(self, ctx: WorkerContext, stop: threading.Event,
                 tick: float = RECURRING_TICK_SECONDS):
        super().__init__(name="tq-recurring", daemon=True)
        self.ctx = ctx
        self.stop = stop
        self.tick = tick

    def run(self):
        while not self.stop.is_set():
            try:
                run_due_jobs(self.ctx)
            except sqlite3.Error as e:
                logger.warning("Recurring jobs skipped, store unavailable: %s", e)
            self.stop.wait(self.tick)
