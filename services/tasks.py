"""
Fixed-rate repeating task with a per-task re-entrancy guard.
A tick that fires while the previous tick is still running is skipped, never queued.
"""

import logging
import threading
from typing import Callable, Optional

from toolkit.utils import utc_now_iso

_LOGGER = logging.getLogger(__name__)


class RepeatingTask:
    """Runs fn every `interval` seconds on a daemon thread until cancelled."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object], *, run_immediately: bool = False):
        self.name = name
        self.interval = max(0.05, float(interval))
        self.fn = fn
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._busy = threading.Lock()
        self._lock = threading.Lock()
        self.thread: Optional[threading.Thread] = None
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_run_at = ""

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self._stop.is_set()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self.thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
            self.thread.start()

    def cancel(self, wait: bool = False) -> None:
        self._stop.set()
        thread = self.thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(2.0, self.interval))

    def run_once(self) -> bool:
        """Run one tick now. Returns False if a previous tick is still in progress."""
        if not self._busy.acquire(blocking=False):
            self.skipped += 1
            _LOGGER.debug("%s: previous tick still running, skipping", self.name)
            return False
        try:
            self.fn()
            self.runs += 1
        except Exception:
            # A failing tick must not kill the schedule.
            self.failures += 1
            _LOGGER.exception("%s tick failed", self.name)
        finally:
            self.last_run_at = utc_now_iso()
            self._busy.release()
        return True

    def _dispatch(self) -> None:
        if self._busy.locked():
            self.skipped += 1
            _LOGGER.debug("%s: previous tick still running, skipping", self.name)
            return
        threading.Thread(target=self.run_once, name=f"tick-{self.name}", daemon=True).start()

    def _loop(self) -> None:
        if self.run_immediately and not self._stop.is_set():
            self._dispatch()
        while not self._stop.wait(self.interval):
            self._dispatch()

    def status(self) -> dict:
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "running": self.running,
            "busy": self.busy,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "last_run_at": self.last_run_at,
        }
