"""Flush in-flight session state exactly once when the process goes away."""
from __future__ import annotations

import atexit
import logging
import signal
import sys
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


class ShutdownGuard:
    """Run ``flush`` on the first termination signal and ignore the rest.

    Trigger sources are registered by the host (see the ``install_*`` helpers);
    the window close handler calls :meth:`trigger` directly. ``flush`` failures
    are logged and swallowed since no UI may be left to show them.
    """

    def __init__(self, flush: Callable[[], None]) -> None:
        self._flush = flush
        self._lock = threading.Lock()
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def trigger(self, reason: str) -> bool:
        with self._lock:
            if self._fired:
                LOGGER.debug("Shutdown already handled; ignoring %s", reason)
                return False
            self._fired = True
        LOGGER.info("Shutdown triggered by %s; flushing session", reason)
        try:
            self._flush()
        except Exception:
            LOGGER.exception("Session flush failed during shutdown (%s)", reason)
        return True


def install_atexit(guard: ShutdownGuard) -> None:
    atexit.register(guard.trigger, "process exit")


def install_excepthook(guard: ShutdownGuard, on_fault: Optional[Callable[[], None]] = None) -> None:
    """Chain onto ``sys.excepthook`` and ``threading.excepthook``.

    ``on_fault`` runs after the flush so the host can end its event loop.
    """
    previous_hook = sys.excepthook
    previous_thread_hook = threading.excepthook

    def _excepthook(exc_type, exc_value, exc_tb) -> None:
        LOGGER.critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_tb))
        guard.trigger("unhandled exception")
        if on_fault is not None:
            on_fault()
        previous_hook(exc_type, exc_value, exc_tb)

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        LOGGER.critical(
            "Unhandled exception in thread %s",
            getattr(args.thread, "name", "?"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        guard.trigger("unhandled thread exception")
        if on_fault is not None:
            on_fault()
        previous_thread_hook(args)

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook


def install_signal_handlers(guard: ShutdownGuard, signals: tuple = (signal.SIGTERM,)) -> None:
    """Flush on termination signals, then exit. Main thread only."""

    def _handler(signum, _frame) -> None:
        guard.trigger(f"signal {signal.Signals(signum).name}")
        sys.exit(128 + signum)

    for signum in signals:
        signal.signal(signum, _handler)
