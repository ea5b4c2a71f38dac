import threading
from contextlib import contextmanager


class FifoLock:
    """Mutex that admits waiters strictly in arrival order."""

    def __init__(self):
        self._condition = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    def acquire(self):
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._serving != ticket:
                self._condition.wait()

    def release(self):
        with self._condition:
            self._serving += 1
            self._condition.notify_all()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class KeyedLocks:
    """
    Registry of independent locks, one per key.

    Holding the lock for one hospital (or unit, or emergency) never blocks
    work on another key. A key's lock is dropped once nobody holds or waits
    on it, so the registry only grows with the keys in use right now.
    """

    def __init__(self, factory=threading.Lock):
        self._factory = factory
        self._locks = {}
        self._users = {}
        self._registry_lock = threading.Lock()

    def __len__(self):
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key):
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._factory()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key):
        with self._registry_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key):
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)
