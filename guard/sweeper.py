"""Background reclamation of abandoned keys.

Lazy expiry only resets a key when it is hit again, so one-off challenge
ids and counters from attackers who stopped probing would otherwise live
forever.  The sweeper runs on its own daemon thread, independent of the
request path; each pass takes the same striped locks as a request would,
one key at a time.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class Sweeper:

    def __init__(self, sweep, interval_seconds: float):
        self._sweep = sweep
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="guard-sweeper", daemon=True)
        self._thread.start()
        logger.info("Sweeper started (every %ss)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._sweep()
            except Exception:
                logger.exception("Sweep pass failed")
