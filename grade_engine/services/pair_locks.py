"""Per-(student, course offering) exclusive sections for recompute attempts."""

import threading
from contextlib import contextmanager

from grade_engine.core.errors import RecomputeTimeoutError

PairKey = tuple[int, int]


class PairLockRegistry:
    """Keyed locks with bounded waits. Idle keys are dropped."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[PairKey, threading.Lock] = {}
        self._users: dict[PairKey, int] = {}

    @contextmanager
    def hold(self, student_id: int, course_offering_id: int, timeout: float):
        key = (student_id, course_offering_id)
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            if not lock.acquire(timeout=timeout):
                raise RecomputeTimeoutError(
                    f"Timed out after {timeout}s waiting for another recompute of "
                    f"student {student_id} in offering {course_offering_id}"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
