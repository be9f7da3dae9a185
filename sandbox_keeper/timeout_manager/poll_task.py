# poll_task.py
"""
Fixed-interval poll task.

Runs one callable on its own daemon thread every interval. Waiting uses a stop
Event so stop() interrupts the wait immediately instead of sleeping it out.
"""

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sandbox_keeper.utils.logging_config import get_logger

logger = get_logger(__name__)


TaskFn = Callable[[], None]


class PollTask:
    """
    A single periodic task with its own thread.

    Key behavior:
    - Uses a stop Event for interruptible waiting (fast shutdown).
    - Maintains thread and counters under a lock for safe status reads.
    - Logs exceptions with tracebacks via logger.exception and keeps polling.
    - Never joins itself when stopped from inside its own callable.
    """

    def __init__(self, name: str, func: TaskFn, interval_seconds: float):
        self.name = name
        self.func = func
        self.interval_seconds = float(interval_seconds)

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._last_run: Optional[datetime] = None
        self._run_count = 0
        self._error_count = 0

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                logger.debug("Poll task '%s' already running", self.name)
                return

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                daemon=True,
                name=f"poll-{self.name}",
            )
            self._thread.start()

        logger.info("Poll task '%s' started (interval=%ss)", self.name, self.interval_seconds)

    def stop(self, join_timeout_seconds: float = 2.0) -> None:
        with self._lock:
            self._stop_event.set()
            thread = self._thread

        if thread is None:
            return

        if thread is not threading.current_thread():
            thread.join(timeout=join_timeout_seconds)

        with self._lock:
            if self._thread is thread and not thread.is_alive():
                self._thread = None

        logger.info("Poll task '%s' stop requested", self.name)

    def is_alive(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            thread_alive = self._thread.is_alive() if self._thread else False
            last_run = self._last_run.isoformat() if self._last_run else None
            return {
                "name": self.name,
                "thread_alive": thread_alive,
                "interval_seconds": self.interval_seconds,
                "last_run": last_run,
                "run_count": self._run_count,
                "error_count": self._error_count,
            }

    def _loop(self, stop_event: threading.Event) -> None:
        # Fixed-rate loop, using Event.wait for interruptible sleep
        while not stop_event.is_set():
            if stop_event.wait(timeout=self.interval_seconds):
                break
            self._execute()

    def _execute(self) -> None:
        try:
            self.func()
            now = datetime.now(timezone.utc)
            with self._lock:
                self._last_run = now
                self._run_count += 1
        except Exception:
            with self._lock:
                self._error_count += 1
            logger.exception("Poll task '%s' failed during execution", self.name)
