import threading
from contextlib import contextmanager


class KeyedLock:
    """
    One mutex per key, created on first use and dropped once nobody holds it.

    Used to serialize writes that share a natural key (e.g. a subscription id)
    while letting writes for different keys run in parallel.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._waiters = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]
