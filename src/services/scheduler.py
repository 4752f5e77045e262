"""Cancellable, resettable timers for deferred side effects."""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Runs ``action`` once after ``delay`` seconds with no further schedule() calls.

    Each schedule() cancels the pending timer and starts a new one. The action
    never runs concurrently with itself.
    """

    def __init__(self, action: Callable[[], None], delay: float, name: str = "debounce"):
        if action is None:
            raise ValueError("action is required")
        if delay < 0:
            raise ValueError("delay must be non-negative")

        self._action = action
        self._delay = delay
        self._name = name
        self._lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._closed = False

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def schedule(self, delay: float | None = None) -> None:
        """(Re)start the quiet-period timer."""
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(
                self._delay if delay is None else delay, self._fire
            )
            timer.daemon = True
            timer.name = self._name
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush(self) -> bool:
        """Run the pending action now. Returns False when nothing was pending."""
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
        self._run()
        return True

    def close(self) -> None:
        """Run any pending action and refuse further schedules."""
        self.flush()
        with self._lock:
            self._closed = True

    def _fire(self) -> None:
        with self._lock:
            if self._timer is None or threading.current_thread() is not self._timer:
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        with self._run_lock:
            try:
                self._action()
            except Exception:
                logger.exception(f"Scheduled action {self._name} failed")
