"""Elapsed-time stopwatch ticking on a background thread (no GUI dependency)."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)

TICK_INTERVAL = 0.2


class ElapsedClock:
    """Stopwatch that accumulates elapsed seconds across pauses.

    While running, ``on_tick`` receives the current elapsed value roughly every
    ``interval`` seconds from a daemon thread. Callers that own state on another
    thread are expected to marshal the value themselves.
    """

    def __init__(
        self,
        on_tick: Callable[[float], None] | None = None,
        interval: float = TICK_INTERVAL,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self.on_tick = on_tick
        self.interval = interval
        self._now = time_source
        self._offset = 0.0
        self._started_at: float | None = None
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    @property
    def elapsed(self) -> float:
        with self._lock:
            return self._current()

    def _current(self) -> float:
        if self._started_at is not None:
            return self._offset + (self._now() - self._started_at)
        return self._offset

    def start(self, offset: float | None = None) -> None:
        """Start, or resume from the accumulated value unless ``offset`` is given."""
        with self._lock:
            if self._started_at is not None:
                return
            if offset is not None:
                self._offset = max(offset, 0.0)
            self._started_at = self._now()
        self._start_ticking()
        LOGGER.debug("Clock started at offset %.1fs", self._offset)
        self._emit()

    def pause(self) -> None:
        with self._lock:
            if self._started_at is None:
                return
            self._offset = self._current()
            self._started_at = None
        self._stop_ticking()
        LOGGER.debug("Clock paused at %.1fs", self._offset)
        self._emit()

    def stop(self) -> float:
        """Stop and reset to zero, returning the elapsed value before the reset."""
        with self._lock:
            elapsed = self._current()
            self._offset = 0.0
            self._started_at = None
        self._stop_ticking()
        LOGGER.debug("Clock stopped after %.1fs", elapsed)
        self._emit()
        return elapsed

    def _start_ticking(self) -> None:
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop, args=(self._stop_event,), name="elapsed-clock", daemon=True
        )
        self._thread.start()

    def _stop_ticking(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1)
        self._thread = None
        self._stop_event = None

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            self._emit()

    def _emit(self) -> None:
        if not self.on_tick:
            return
        try:
            self.on_tick(self.elapsed)
        except Exception:  # pragma: no cover - defensive
            LOGGER.exception("Clock tick callback failed")
