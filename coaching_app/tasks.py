"""In-process task queue for best-effort side effects.

Push, email and SMS dispatch are handed to :data:`task_queue` instead of being
run on the request path. Each task gets ``TASK_MAX_ATTEMPTS`` tries with the
``TASK_RETRY_DELAYS`` backoff; a task that still fails is logged as a dead
letter and kept in :attr:`TaskQueue.dead_letters`.

With ``TASKS_EAGER`` enabled tasks run inline in the caller's app context,
which keeps tests deterministic.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from queue import Queue
from typing import Any, Callable

from . import db
from .models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Task:
    name: str
    func: Callable
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    attempts: int = 0
    last_error: str = ""
    enqueued_at: Any = field(default_factory=utc_now)


class TaskQueue:
    def __init__(self, app=None):
        self.app = None
        self.eager = False
        self.max_attempts = 3
        self.retry_delays = (1, 5)
        self.dead_letters = deque(maxlen=200)
        self._queue = Queue()
        self._worker = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.eager = bool(app.config.get("TASKS_EAGER"))
        self.max_attempts = max(1, int(app.config.get("TASK_MAX_ATTEMPTS", 3)))
        self.retry_delays = tuple(app.config.get("TASK_RETRY_DELAYS", (1, 5)))
        app.extensions["task_queue"] = self
        if not self.eager:
            self._start_worker()

    def _start_worker(self):
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._process_tasks, name="task-queue", daemon=True)
        self._worker.start()
        logger.info("Task queue worker started")

    def enqueue(self, name, func, *args, **kwargs):
        """Schedule ``func(*args, **kwargs)``; pass ids rather than ORM objects."""
        task = Task(name=name, func=func, args=args, kwargs=kwargs)
        if self.eager:
            self._run(task)
        else:
            self._queue.put(task)
        return task

    def _process_tasks(self):
        while True:
            task = self._queue.get()
            if task is None:  # Shutdown signal
                self._queue.task_done()
                break
            try:
                with self.app.app_context():
                    self._run(task)
                    db.session.remove()
            finally:
                self._queue.task_done()

    def _delay_for(self, attempt):
        if not self.retry_delays:
            return 0
        return self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]

    def _run(self, task):
        while task.attempts < self.max_attempts:
            task.attempts += 1
            try:
                task.func(*task.args, **task.kwargs)
                if task.attempts > 1:
                    logger.info("Task %s succeeded on attempt %d", task.name, task.attempts)
                return True
            except Exception as e:
                db.session.rollback()
                task.last_error = str(e)
                logger.warning("Task %s failed (attempt %d/%d): %s", task.name, task.attempts, self.max_attempts, e)
                if task.attempts < self.max_attempts:
                    delay = self._delay_for(task.attempts)
                    if delay:
                        time.sleep(delay)
        self.dead_letters.append(task)
        logger.error("Task %s moved to dead letters after %d attempts: %s", task.name, task.attempts, task.last_error)
        return False

    def join(self):
        """Block until queued tasks have been processed."""
        if not self.eager:
            self._queue.join()

    def shutdown(self, timeout=5):
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(None)
            self._worker.join(timeout=timeout)
            logger.info("Task queue worker stopped")


task_queue = TaskQueue()
