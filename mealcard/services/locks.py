import threading
from contextlib import contextmanager

from mealcard.errors import VerificationUnavailable


class KeyedLock:
    """
    One mutex per key, created on demand and dropped once nobody
    holds or waits on it. Different keys never contend.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key, timeout=None):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        acquired = entry[0].acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise VerificationUnavailable(f"Timed out waiting for ledger key {key}")
            yield
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)
