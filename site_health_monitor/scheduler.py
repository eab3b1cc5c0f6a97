"""Recurring timer that runs the sitemap check on its own thread."""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TWICE_DAILY_HOURS = 12


class SitemapCheckScheduler:
    """
    Runs a check function every interval on a daemon thread.

    start() is idempotent (never two timers) and stop() cancels the timer
    and signals any in-flight check to discard its result.
    """

    def __init__(
        self,
        check: Callable[[threading.Event], object],
        interval_hours: float = TWICE_DAILY_HOURS,
        run_immediately: bool = True,
    ):
        """
        Args:
            check: Called with the cancellation event on every tick
            interval_hours: Hours between ticks (twice daily by default)
            run_immediately: Run the first tick at start() rather than after one interval
        """
        if interval_hours <= 0:
            raise ValueError("interval_hours must be greater than zero")
        self.check = check
        self.interval = timedelta(hours=interval_hours)
        self.run_immediately = run_immediately
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    @property
    def next_run_at(self) -> Optional[datetime]:
        with self._lock:
            if self._thread is None:
                return None
            return self._next_run_at

    def start(self) -> bool:
        """Start the timer. Returns False if it was already running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("Sitemap check scheduler already running")
                return False
            self._stop_event = threading.Event()
            first_delay = timedelta(0) if self.run_immediately else self.interval
            self._next_run_at = datetime.now(timezone.utc) + first_delay
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event, first_delay.total_seconds()),
                name="sitemap-check-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Sitemap check scheduled every {self.interval.total_seconds() / 3600:g}h")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Cancel the timer. Returns False if it was not running."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._stop_event.set()
            self._thread = None
            self._next_run_at = None

        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Sitemap check scheduler stopped")
        return True

    def _run(self, stop_event: threading.Event, first_delay: float) -> None:
        delay = first_delay
        while not stop_event.wait(delay):
            try:
                self.check(stop_event)
            except Exception:
                logger.exception("Scheduled sitemap check failed")
            delay = self.interval.total_seconds()
            with self._lock:
                if not stop_event.is_set():
                    self._next_run_at = datetime.now(timezone.utc) + self.interval
