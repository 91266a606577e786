"""Tests for the per-key reentrant lock."""

import threading
import time

from fhir_vault.domain.utils import KeyedLock, utcnow


class TestKeyedLock:

    def test_reentrant_for_the_same_thread(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("a"):
                assert locks.active_keys() == 1
        assert locks.active_keys() == 0

    def test_same_key_serializes(self):
        locks = KeyedLock()
        inside = []
        overlaps = []

        def worker():
            with locks.hold("a"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert locks.active_keys() == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        acquired = threading.Event()

        def worker():
            with locks.hold("b"):
                acquired.set()

        with locks.hold("a"):
            thread = threading.Thread(target=worker)
            thread.start()
            assert acquired.wait(timeout=2)
            thread.join()

    def test_entry_released_after_exception(self):
        locks = KeyedLock()
        try:
            with locks.hold("a"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert locks.active_keys() == 0


def test_utcnow_is_timezone_aware():
    assert utcnow().utcoffset().total_seconds() == 0
