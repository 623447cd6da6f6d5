"""Hand the workbook to an external editor and wait for it to come back.

There is no portable "editor closed the file" notification, so the handoff
watches the document's lock instead: the editor taking the lock is treated as
"opened", releasing it as "closed". A save-and-close that happens entirely
between two polls goes unnoticed.
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

from .errors import NotFoundError
from .models import ReferenceData, StatusLevel
from .storage import EntryStore

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
LOCK_TIMEOUT = 5 * 60.0

PathLike = Union[str, Path]
Reporter = Callable[[str, StatusLevel], None]


def open_externally(path: PathLike) -> bool:
    """Open a file with the system's default application."""
    target = str(path)
    try:
        if sys.platform == "win32":
            os.startfile(target)  # type: ignore[attr-defined]
        elif sys.platform == "darwin":
            subprocess.Popen(["open", target], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        else:
            subprocess.Popen(["xdg-open", target], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError:
        LOGGER.exception("Failed to open %s externally", target)
        return False
    return True


def owner_files(path: PathLike) -> tuple[Path, Path]:
    """Lock files Excel and LibreOffice place next to a document they have open."""
    target = Path(path)
    return (
        target.with_name(f"~${target.name}"),
        target.with_name(f".~lock.{target.name}#"),
    )


def document_is_locked(path: PathLike) -> bool:
    target = Path(path)
    if any(marker.exists() for marker in owner_files(target)):
        return True
    try:
        with open(target, "r+b"):
            return False
    except PermissionError:
        return True
    except FileNotFoundError:
        return False


def wait_until(
    condition: Callable[[], bool],
    interval: float = POLL_INTERVAL,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``condition`` every ``interval`` seconds.

    Returns True once the condition holds, False when ``timeout`` elapses or
    ``cancel_event`` is set first. Exceptions raised by the condition propagate.
    """
    cancel_event = cancel_event or threading.Event()
    deadline = None if timeout is None else clock() + timeout
    while True:
        if cancel_event.is_set():
            return False
        if condition():
            return True
        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                return False
            delay = min(interval, remaining)
        else:
            delay = interval
        if cancel_event.wait(delay):
            return False


class ExternalEditHandoff:
    """Open the document elsewhere, wait for lock then release, and reload it."""

    def __init__(
        self,
        store: EntryStore,
        opener: Callable[[Path], bool] = open_externally,
        is_locked: Callable[[Path], bool] = document_is_locked,
        interval: float = POLL_INTERVAL,
        lock_timeout: float = LOCK_TIMEOUT,
    ) -> None:
        self.store = store
        self.opener = opener
        self.is_locked = is_locked
        self.interval = interval
        self.lock_timeout = lock_timeout
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    def run(self, path: PathLike, report: Optional[Reporter] = None) -> Optional[ReferenceData]:
        """Run one handoff cycle.

        Returns the reloaded reference data, or None when the editor never took
        the lock (or the wait was cancelled). A reload that is still invalid
        raises ``StructureError``; a document that vanished raises
        ``NotFoundError``.
        """
        target = Path(path)
        report = report or _log_report
        self._ensure_exists(target)

        if self.opener(target):
            report(f"Opened {target.name}. Fill in the Reference sheet, save and close it.", StatusLevel.INFO)
        else:
            report(
                f"Could not open {target.name} automatically. Open it manually, fill it in and close it.",
                StatusLevel.WARNING,
            )

        LOGGER.info("Waiting up to %.0fs for %s to be opened", self.lock_timeout, target)
        opened = wait_until(
            lambda: self._ensure_exists(target) and self.is_locked(target),
            interval=self.interval,
            timeout=self.lock_timeout,
            cancel_event=self._cancel,
        )
        if not opened:
            LOGGER.info("Editor never locked %s; giving up", target)
            report(f"{target.name} was not opened in an editor.", StatusLevel.WARNING)
            return None

        report(f"Waiting for {target.name} to be closed…", StatusLevel.INFO)
        released = wait_until(
            lambda: self._ensure_exists(target) and not self.is_locked(target),
            interval=self.interval,
            cancel_event=self._cancel,
        )
        if not released:
            LOGGER.info("Handoff for %s cancelled while waiting for release", target)
            return None

        LOGGER.info("%s released by editor; reloading reference data", target)
        return self.store.load_reference(target)

    @staticmethod
    def _ensure_exists(target: Path) -> bool:
        if not target.exists():
            raise NotFoundError(f"Excel file not found: {target}")
        return True


def _log_report(message: str, level: StatusLevel) -> None:
    LOGGER.info("%s (%s)", message, level.value)
