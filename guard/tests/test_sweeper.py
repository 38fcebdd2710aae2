"""Tests for Sweeper: background passes, failure isolation, stop."""

import threading

from guard.sweeper import Sweeper


class TestSweeper:
    def test_runs_until_stopped(self):
        ran = threading.Event()
        sweeper = Sweeper(ran.set, interval_seconds=0.01)
        sweeper.start()
        try:
            assert ran.wait(2.0)
            assert sweeper.running
        finally:
            sweeper.stop()
        assert not sweeper.running

    def test_failed_pass_does_not_kill_thread(self):
        calls = []
        second = threading.Event()

        def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            second.set()

        sweeper = Sweeper(sweep, interval_seconds=0.01)
        sweeper.start()
        try:
            assert second.wait(2.0)
        finally:
            sweeper.stop()

    def test_start_is_idempotent(self):
        sweeper = Sweeper(lambda: None, interval_seconds=60)
        sweeper.start()
        thread = sweeper._thread
        sweeper.start()
        assert sweeper._thread is thread
        sweeper.stop()
