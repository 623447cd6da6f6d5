"""Application entry point for Timesheet (wxPython edition)."""
from __future__ import annotations

import importlib.util
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional

from timesheet_app.timesheet import __version__
from timesheet_app.timesheet.controllers import CONFIG_DIR, ConfigManager, Dispatcher, DialogService, SessionController
from timesheet_app.timesheet.handoff import ExternalEditHandoff
from timesheet_app.timesheet.shutdown import (
    ShutdownGuard,
    install_atexit,
    install_excepthook,
    install_signal_handlers,
)
from timesheet_app.timesheet.storage import EntryStore
from timesheet_app.timesheet.timers import ElapsedClock

LOG_DIR = CONFIG_DIR / "logs"
LOG_FILE = LOG_DIR / "app.log"


def ensure_wx_dependencies() -> None:
    """Exit early with a clear message when wxPython bindings are missing."""

    def _missing_message() -> str:
        return (
            "wxPython runtime is missing. Install it with `pip install timesheet-tracker[gui]` "
            "(or `pip install wxPython`) and ensure GTK3 or native widgets are available. "
            "On Debian/Ubuntu, you may need `libgtk-3-dev` and related dependencies.\n"
        )

    if importlib.util.find_spec("wx") is None:
        sys.stderr.write(_missing_message())
        sys.exit(1)


def configure_logging(log_file: Path = LOG_FILE) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=3, encoding="utf-8")
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[handler, logging.StreamHandler()],
    )
    logging.info("Timesheet v%s starting", __version__)


def build_controller(
    config_manager: ConfigManager, dialogs: DialogService, dispatcher: Dispatcher
) -> SessionController:
    store = EntryStore()
    handoff = ExternalEditHandoff(store)
    return SessionController(store, ElapsedClock(), handoff, dialogs, config_manager, dispatcher=dispatcher)


def install_shutdown_guard(
    controller: SessionController, on_fault: Optional[Callable[[], None]] = None
) -> ShutdownGuard:
    guard = ShutdownGuard(controller.flush_and_stop)
    install_atexit(guard)
    install_excepthook(guard, on_fault)
    install_signal_handlers(guard)
    return guard


def main() -> None:
    ensure_wx_dependencies()
    configure_logging()

    import wx

    from timesheet_app.timesheet.views.main_window import TimesheetApp, WxDialogService

    config_manager = ConfigManager()
    dialogs = WxDialogService()
    controller = build_controller(config_manager, dialogs, wx.CallAfter)

    def _exit_main_loop() -> None:
        app = wx.GetApp()
        if app is not None:
            wx.CallAfter(app.ExitMainLoop)

    guard = install_shutdown_guard(controller, on_fault=_exit_main_loop)
    app = TimesheetApp(controller, guard, dialogs)
    app.run()


if __name__ == "__main__":
    main()
