import logging
import queue
import signal
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from . import repository as repo
from .config import DISPATCH_TICK_SECONDS
from .errors import TaskError, ERR_UNEXPECTED, ERR_UNKNOWN_KIND
from .models import Task, TaskResult, ERR
from .tasks import HANDLERS, WorkerContext

logger = logging.getLogger(__name__)


def setup_signal_handlers(stop: threading.Event):
    """Set `stop` on SIGINT/SIGTERM."""
    def _handler(signum, frame):
        logger.warning("Received signal %s, stopping", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # Only the main thread may install handlers
            logger.debug("Could not install handler for signal %s", sig)


class Dispatcher:
    """
    Claims WAIT tasks up to the concurrency budget, runs each in the worker
    pool and applies the outcomes. Only the dispatcher thread touches the
    in-flight count and task states.
    """

    def __init__(
        self,
        ctx: WorkerContext,
        stop: Optional[threading.Event] = None,
        handlers: Optional[Dict[str, Callable]] = None,
        tick: float = DISPATCH_TICK_SECONDS,
    ):
        self.ctx = ctx
        self.stop = stop or ctx.stop
        self.handlers = handlers if handlers is not None else HANDLERS
        self.tick_seconds = tick
        self.budget = ctx.config.concurrency
        self.inflight = 0
        self._results: "queue.Queue[TaskResult]" = queue.Queue()
        self._unapplied: List[TaskResult] = []
        self._executor = ThreadPoolExecutor(max_workers=self.budget, thread_name_prefix="tq-worker")

    # ---------- Worker side ----------
    def _execute(self, handler: Callable, task: Task):
        """Run one task and report exactly one outcome, whatever happens."""
        result = None
        try:
            logger.info("Task %s (%s) started", task.id, task.kind)
            handler(self.ctx, task.id, task.payload)
            result = TaskResult.success(task.id)
        except TaskError as e:
            logger.error("Task %s failed: %s", task.id, e)
            result = TaskResult.failure(task.id, e.code, e.message)
        except Exception as e:
            logger.exception("Task %s crashed", task.id)
            result = TaskResult.failure(task.id, ERR_UNEXPECTED, str(e))
        finally:
            if result is None:
                result = TaskResult.failure(task.id, ERR_UNEXPECTED, "worker interrupted")
            self._results.put(result)

    # ---------- Dispatcher side ----------
    def _claim(self) -> List[Task]:
        free = self.budget - self.inflight
        if free <= 0 or self.stop.is_set():
            return []
        with self.ctx.db.connect() as conn:
            return repo.claim_waiting(conn, free)

    def _spawn(self, task: Task):
        handler = self.handlers.get(task.kind)
        if handler is None:
            logger.error("Task %s has unknown kind %r", task.id, task.kind)
            with self.ctx.db.connect() as conn:
                repo.mark(conn, task.id, ERR, error_code=ERR_UNKNOWN_KIND)
            return
        self.inflight += 1
        self._executor.submit(self._execute, handler, task)

    def drain(self) -> int:
        """Apply every outcome available right now. Returns how many were applied."""
        while True:
            try:
                result = self._results.get_nowait()
            except queue.Empty:
                break
            self.inflight -= 1
            self._unapplied.append(result)

        applied = 0
        while self._unapplied:
            result = self._unapplied[0]
            with self.ctx.db.connect() as conn:
                state = repo.apply_outcome(
                    conn, result, self.ctx.config.retry_limit, self.ctx.config.backoff_base
                )
            self._unapplied.pop(0)
            applied += 1
            logger.info("Task %s -> %s%s", result.task_id, state,
                        "" if result.ok else f" (code {result.error_code})")
        return applied

    def tick(self):
        """One scheduler iteration: claim, dispatch, drain."""
        try:
            claimed = self._claim()
        except sqlite3.Error as e:
            logger.warning("Queue store unavailable, skipping claim: %s", e)
            claimed = []
        for task in claimed:
            try:
                self._spawn(task)
            except sqlite3.Error as e:
                logger.error("Could not mark task %s: %s", task.id, e)
        try:
            self.drain()
        except sqlite3.Error as e:
            logger.warning("Queue store unavailable, %d outcome(s) pending: %s",
                           len(self._unapplied), e)

    def run(self):
        logger.info("Dispatcher started (concurrency=%d)", self.budget)
        try:
            while not self.stop.is_set():
                self.tick()
                self.stop.wait(self.tick_seconds)
            # No new claims from here; record whatever has already finished
            self.tick()
        finally:
            self._executor.shutdown(wait=False)
        if self.inflight:
            logger.warning("Dispatcher stopped with %d task(s) still running", self.inflight)
        logger.info("Dispatcher stopped.")

    def wait_idle(self, timeout: float = 10.0, poll: float = 0.01) -> bool:
        """Drain until no task is in flight. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while True:
            self.drain()
            if not self.inflight and not self._unapplied:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(poll)

    def close(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
