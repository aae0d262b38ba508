"""Cancellable periodic background threads.

Every timer in an instance (claim poller, per-job heartbeat, instance
heartbeat, orphan reclaimer) is a PeriodicTask. Threads are daemons so a
hard kill never hangs on them; graceful stop is an Event.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run fn every interval_s on a dedicated daemon thread.

    Exceptions raised by fn are logged and the loop continues, so one failed
    store write never stops liveness or claiming.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], object],
        run_immediately: bool = False,
        on_exit: Optional[Callable[[], None]] = None,
    ):
        """Create (but do not start) the task.

        Args:
            name: Thread name, also used in log messages
            interval_s: Seconds between runs
            fn: Callable executed each tick
            run_immediately: Run once right after start instead of waiting a full interval
            on_exit: Called on the task thread after the loop ends (e.g. close connections)
        """
        self.name = name
        self.interval_s = interval_s
        self.fn = fn
        self.run_immediately = run_immediately
        self.on_exit = on_exit

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.is_running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the loop to stop and wait up to timeout for the current tick."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("%s did not stop within %.1fs", self.name, timeout)

    def _loop(self) -> None:
        try:
            if self.run_immediately:
                self._tick()
            # wait() doubles as an interruptible sleep for fast shutdown
            while not self._stop_event.wait(self.interval_s):
                self._tick()
        finally:
            if self.on_exit is not None:
                try:
                    self.on_exit()
                except Exception:
                    logger.exception("%s cleanup failed", self.name)

    def _tick(self) -> None:
        try:
            self.fn()
        except Exception:
            logger.exception("%s tick failed", self.name)
