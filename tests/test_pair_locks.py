"""Tests for per-pair exclusive sections."""

import threading
import time

import pytest

from grade_engine.core.errors import RecomputeTimeoutError
from grade_engine.services.pair_locks import PairLockRegistry


def test_same_pair_is_serialized():
    locks = PairLockRegistry()
    inside = []
    overlap = threading.Event()

    def worker():
        with locks.hold(1, 1, timeout=5):
            inside.append(1)
            if len(inside) > 1:
                overlap.set()
            time.sleep(0.05)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not overlap.is_set()
    assert locks.active_keys() == 0


def test_different_pairs_do_not_block_each_other():
    locks = PairLockRegistry()
    with locks.hold(1, 1, timeout=1):
        with locks.hold(2, 1, timeout=0.1):
            assert locks.active_keys() == 2


def test_timeout_raises():
    locks = PairLockRegistry()
    held = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold(1, 1, timeout=1):
            held.set()
            release.wait(5)

    t = threading.Thread(target=holder)
    t.start()
    held.wait(5)
    try:
        with pytest.raises(RecomputeTimeoutError) as exc_info:
            with locks.hold(1, 1, timeout=0.05):
                pass
        assert exc_info.value.error_code == "RECOMPUTE_TIMEOUT"
    finally:
        release.set()
        t.join()
    assert locks.active_keys() == 0


def test_lock_released_when_body_raises():
    locks = PairLockRegistry()
    with pytest.raises(ValueError):
        with locks.hold(3, 3, timeout=1):
            raise ValueError("boom")
    with locks.hold(3, 3, timeout=0.1):
        pass
