import threading
import time

from locks import FifoLock, KeyedLocks
from scheduler import ManualClock, ManualScheduler, ThreadingScheduler


def test_manual_scheduler_runs_tasks_in_due_order():
    scheduler = ManualScheduler(ManualClock())
    ran = []

    scheduler.schedule(5, ran.append, "late")
    scheduler.schedule(1, ran.append, "early")
    scheduler.schedule(1, ran.append, "early-second")

    scheduler.advance(0.5)
    assert ran == []
    scheduler.advance(1)
    assert ran == ["early", "early-second"]
    scheduler.advance(10)
    assert ran == ["early", "early-second", "late"]
    assert scheduler.pending() == []


def test_manual_scheduler_moves_clock_to_due_time():
    clock = ManualClock()
    scheduler = ManualScheduler(clock)
    start = clock.now()
    seen = []

    scheduler.schedule(3, lambda: seen.append(clock.now()))
    scheduler.advance(10)

    assert (seen[0] - start).total_seconds() == 3
    assert (clock.now() - start).total_seconds() == 10


def test_tasks_scheduled_while_advancing_run_when_due():
    scheduler = ManualScheduler(ManualClock())
    ran = []

    def first():
        ran.append("first")
        scheduler.schedule(2, ran.append, "follow-up")

    scheduler.schedule(1, first)
    scheduler.advance(5)

    assert ran == ["first", "follow-up"]


def test_cancelled_task_never_runs():
    scheduler = ManualScheduler(ManualClock())
    ran = []

    task = scheduler.schedule(1, ran.append, "x")
    task.cancel()
    scheduler.advance(5)

    assert ran == []


def test_failing_task_does_not_stop_others(caplog):
    scheduler = ManualScheduler(ManualClock())
    ran = []

    def boom():
        raise RuntimeError("boom")

    scheduler.schedule(1, boom)
    scheduler.schedule(2, ran.append, "after")
    scheduler.advance(5)

    assert ran == ["after"]
    assert "Scheduled task boom failed" in caplog.text


def test_threading_scheduler_runs_after_delay():
    scheduler = ThreadingScheduler()
    done = threading.Event()

    scheduler.schedule(0.05, done.set)

    assert done.wait(timeout=2)


def test_threading_scheduler_cancel_all():
    scheduler = ThreadingScheduler()
    ran = []

    scheduler.schedule(0.2, ran.append, "x")
    scheduler.cancel_all()
    time.sleep(0.3)

    assert ran == []


def test_fifo_lock_serves_waiters_in_arrival_order():
    lock = FifoLock()
    order = []
    lock.acquire()

    threads = []
    for index in range(5):
        def worker(index=index):
            with lock:
                order.append(index)

        thread = threading.Thread(target=worker)
        thread.start()
        # Wait until the worker has taken its ticket before starting the next one.
        while lock._next_ticket != index + 2:
            time.sleep(0.001)
        threads.append(thread)

    lock.release()
    for thread in threads:
        thread.join()

    assert order == [0, 1, 2, 3, 4]


def test_keyed_locks_are_independent():
    locks = KeyedLocks()
    entered = threading.Event()

    def hold_other_key():
        with locks.hold("HSP-2"):
            entered.set()

    with locks.hold("HSP-1"):
        worker = threading.Thread(target=hold_other_key)
        worker.start()
        assert entered.wait(timeout=5)
        worker.join()


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    entered = threading.Event()

    def hold_same_key():
        with locks.hold("HSP-1"):
            entered.set()

    with locks.hold("HSP-1"):
        worker = threading.Thread(target=hold_same_key)
        worker.start()
        assert not entered.wait(timeout=0.2)
    worker.join(timeout=5)
    assert entered.is_set()


def test_keyed_locks_drop_idle_keys():
    locks = KeyedLocks(factory=FifoLock)

    with locks.hold("EMG-1"):
        with locks.hold("EMG-2"):
            assert len(locks) == 2
        assert len(locks) == 1

    assert len(locks) == 0
