import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone


logger = logging.getLogger(__name__)


class SystemClock:
    def now(self):
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to; used to drive virtual time in tests."""

    def __init__(self, start=None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self):
        with self._lock:
            return self._now

    def advance(self, seconds):
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now


class ScheduledTask:
    def __init__(self, func, args, kwargs, name=None):
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.name = name or getattr(func, "__name__", "task")
        self.cancelled = False
        self.done = False
        self._timer = None

    def cancel(self):
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def run(self):
        if self.cancelled or self.done:
            return
        self.done = True
        try:
            self.func(*self.args, **self.kwargs)
        except Exception:
            logger.exception("Scheduled task %s failed", self.name)


class ThreadingScheduler:
    """Runs delayed callbacks on threading.Timer threads."""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self._tasks = []
        self._lock = threading.Lock()

    def schedule(self, delay_seconds, func, *args, **kwargs):
        task = ScheduledTask(func, args, kwargs)
        timer = threading.Timer(delay_seconds, task.run)
        timer.daemon = True
        task._timer = timer
        with self._lock:
            self._tasks = [t for t in self._tasks if not (t.done or t.cancelled)]
            self._tasks.append(task)
        timer.start()
        return task

    def cancel_all(self):
        with self._lock:
            tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()


class ManualScheduler:
    """
    Deterministic scheduler bound to a ManualClock.

    Nothing runs until advance() moves virtual time past a task's due time;
    due tasks then run in (due time, scheduling order).
    """

    def __init__(self, clock=None):
        self.clock = clock or ManualClock()
        self._queue = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, delay_seconds, func, *args, **kwargs):
        task = ScheduledTask(func, args, kwargs)
        due = self.clock.now() + timedelta(seconds=delay_seconds)
        with self._lock:
            heapq.heappush(self._queue, (due, next(self._counter), task))
        return task

    def pending(self):
        with self._lock:
            return [task for _, _, task in self._queue if not task.cancelled]

    def advance(self, seconds):
        target = self.clock.now() + timedelta(seconds=seconds)
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, task = heapq.heappop(self._queue)
            if due > self.clock.now():
                self.clock.advance((due - self.clock.now()).total_seconds())
            task.run()
        remaining = (target - self.clock.now()).total_seconds()
        if remaining > 0:
            self.clock.advance(remaining)
        return self.clock.now()

    def cancel_all(self):
        with self._lock:
            queue, self._queue = self._queue, []
        for _, _, task in queue:
            task.cancel()
