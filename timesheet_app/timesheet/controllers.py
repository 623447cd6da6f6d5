"""Controllers orchestrating dialogs, the workbook store, the handoff and the clock."""
from __future__ import annotations

import logging
import tomllib
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Callable, Generator, List, Optional, Protocol, Tuple

from . import __version__
from .errors import LockError, NotFoundError, StructureError
from .handoff import ExternalEditHandoff
from .models import (
    Enablement,
    ReferenceData,
    SessionState,
    StatusLevel,
    TimerPhase,
    TimesheetEntry,
    format_elapsed,
)
from .storage import REFERENCE_SHEET, TIMESHEET_SHEET, WORKDAY_SHEET, EntryStore
from .timers import ElapsedClock

LOGGER = logging.getLogger(__name__)


CONFIG_DIR = Path.home() / ".timesheet"
CONFIG_FILE = CONFIG_DIR / "config.toml"

# A command body yields blocking callables; each result is sent back in.
Command = Generator[Callable[[], object], object, None]
Dispatcher = Callable[..., None]


@dataclass
class AppConfig:
    document_path: Optional[str] = None

    @classmethod
    def from_toml(cls, data: dict) -> "AppConfig":
        raw_path = data.get("document_path")
        if raw_path in (None, "", "null"):
            return cls(document_path=None)
        return cls(document_path=str(raw_path))

    def to_toml(self) -> str:
        lines = [
            f"document_path = {_toml_string(self.document_path or '')}",
        ]
        return "\n".join(lines) + "\n"


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ConfigManager:
    def __init__(self, config_file: Path = CONFIG_FILE) -> None:
        self.config_file = Path(config_file)
        self.config = self._load()

    def _load(self) -> AppConfig:
        if not self.config_file.exists():
            return AppConfig()
        try:
            with open(self.config_file, "rb") as fh:
                return AppConfig.from_toml(tomllib.load(fh))
        except (OSError, tomllib.TOMLDecodeError):
            LOGGER.warning("Configuration %s is unreadable; using defaults", self.config_file, exc_info=True)
            return AppConfig()

    def save(self, config: Optional[AppConfig] = None) -> None:
        cfg = config or self.config
        self.config = cfg
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(cfg.to_toml(), encoding="utf-8")
        LOGGER.info("Saved configuration to %s", self.config_file)


class DialogService(Protocol):
    def pick_document(self) -> Optional[str]: ...

    def pick_save_path(self, suggested_name: str) -> Optional[str]: ...

    def show_message(self, title: str, body: str, level: StatusLevel = StatusLevel.INFO) -> None: ...

    def show_confirmation(self, title: str, body: str, accept: str, cancel: str) -> bool: ...

    def show_prompt(self, title: str, body: str, accept: str, cancel: str) -> Optional[str]: ...


class SessionListener(Protocol):
    def state_changed(self, controller: "SessionController") -> None: ...

    def status_changed(self, message: str, level: StatusLevel) -> None: ...

    def timer_ticked(self, text: str) -> None: ...


def call_inline(fn: Callable[..., object], *args: object) -> None:
    fn(*args)


class SessionController:
    """Workday/timer state machine.

    Every method is meant to be called on one logical thread (the GUI thread).
    Blocking workbook calls run on ``executor`` and their results come back
    through ``dispatcher`` (``wx.CallAfter`` in the app), so session state and
    listener callbacks never leave that thread. ``busy`` is a single-flight
    latch: a command issued while another is in flight is dropped.
    """

    def __init__(
        self,
        store: EntryStore,
        clock: ElapsedClock,
        handoff: ExternalEditHandoff,
        dialogs: DialogService,
        config_manager: ConfigManager,
        dispatcher: Dispatcher = call_inline,
        executor: Optional[Executor] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.clock = clock
        self.handoff = handoff
        self.dialogs = dialogs
        self.config_manager = config_manager
        self._dispatcher = dispatcher
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="timesheet-io")
        self._now = now
        self.state = SessionState()
        self.reference: Optional[ReferenceData] = None
        self.busy = False
        self.status: Tuple[str, StatusLevel] = ("No file selected.", StatusLevel.INFO)
        self._listeners: List[SessionListener] = []
        self._initialized = False
        self._closed = False
        self._in_flight: Optional[str] = None
        self.clock.on_tick = self._on_clock_tick

    # Observers
    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Derived state
    @property
    def has_reference(self) -> bool:
        return self.reference is not None and self.reference.is_complete

    @property
    def projects(self) -> Tuple[str, ...]:
        return self.reference.projects if self.reference else ()

    @property
    def work_types(self) -> Tuple[str, ...]:
        return self.reference.work_types if self.reference else ()

    @property
    def timer_text(self) -> str:
        return format_elapsed(self.clock.elapsed)

    def can_start_workday(self) -> bool:
        return (
            not self.busy
            and bool(self.state.document_path)
            and not self.state.timer_active
            and not self.state.workday_active
        )

    def can_end_workday(self) -> bool:
        return not self.busy and self.state.workday_active and not self.state.timer_active

    def can_start_timer(self) -> bool:
        return (
            not self.busy
            and self.state.workday_active
            and self.state.timer_phase is not TimerPhase.RUNNING
            and self.state.has_selection
        )

    def can_pause_timer(self) -> bool:
        return self.state.timer_phase is TimerPhase.RUNNING

    def can_stop_timer(self) -> bool:
        return self.clock.elapsed > 0

    @property
    def enablement(self) -> Enablement:
        if self._closed:
            return Enablement(False, False, False, False, False, False)
        return Enablement(
            inputs_enabled=self.has_reference and not self.busy and self.state.timer_phase is not TimerPhase.RUNNING,
            start_workday_enabled=self.can_start_workday(),
            end_workday_enabled=self.can_end_workday(),
            start_timer_enabled=self.can_start_timer(),
            pause_timer_enabled=self.can_pause_timer(),
            stop_timer_enabled=self.can_stop_timer(),
        )

    # Startup and document selection
    def initialize(self) -> bool:
        if self._initialized:
            return False
        self._initialized = True
        path = self.config_manager.config.document_path
        self.state.document_path = path
        self._notify_state()
        if not path:
            self._set_status("No file selected.", StatusLevel.INFO)
            return True
        return self._run_command("initialize", self._switch_document_steps(path, persist=False))

    def browse_document(self) -> bool:
        if self._closed or self.busy:
            return self._reject("browse document")
        selected = self.dialogs.pick_document()
        if not selected:
            return False
        return self.switch_document(selected)

    def switch_document(self, path: str) -> bool:
        if self._closed or not self._may_switch_to(path):
            return self._reject("switch document")
        return self._run_command("switch document", self._switch_document_steps(str(path)))

    def reload_reference(self) -> bool:
        path = self.state.document_path
        if not path:
            self.dialogs.show_message("No file selected", "Choose an Excel file first.", StatusLevel.WARNING)
            return False
        return self.switch_document(path)

    def create_template(self) -> bool:
        if self._closed or self.busy:
            return self._reject("create template")
        suggested = f"timesheet_template_{self._now():%Y%m%d_%H%M%S}.xlsx"
        target = self.dialogs.pick_save_path(suggested)
        if not target or not self._may_switch_to(target):
            return False
        return self._run_command("create template", self._create_template_steps(target))

    def open_current_document(self) -> bool:
        path = self.state.document_path
        if not path:
            self.dialogs.show_message("No file selected", "Choose an Excel file first.", StatusLevel.WARNING)
            return False
        if not Path(path).exists():
            self.dialogs.show_message("File not found", f"The Excel file is missing:\n{path}", StatusLevel.ERROR)
            return False
        if not self.handoff.opener(Path(path)):
            self.dialogs.show_message("Could not open file", f"No application could open:\n{path}", StatusLevel.ERROR)
            return False
        return True

    def resume_pending_workday(self) -> bool:
        if self._closed or not self.state.document_path or self.state.workday_active:
            return self._reject("resume workday")
        return self._run_command("resume workday", self._resume_pending_steps())

    def select_project(self, name: Optional[str]) -> bool:
        if name is not None and name not in self.projects:
            return self._reject(f"select project {name!r}")
        self.state.selected_project = name
        self._notify_state()
        return True

    def select_work_type(self, name: Optional[str]) -> bool:
        if name is not None and name not in self.work_types:
            return self._reject(f"select work type {name!r}")
        self.state.selected_work_type = name
        self._notify_state()
        return True

    # Workday
    def start_workday(self) -> bool:
        if self._closed or not self.can_start_workday():
            return self._reject("start workday")
        return self._run_command("start workday", self._start_workday_steps(self.state.document_path))

    def end_workday(self) -> bool:
        if self._closed or not self.can_end_workday():
            return self._reject("end workday")
        return self._run_command("end workday", self._end_workday_steps(self.state.document_path))

    # Timer
    def start_timer(self) -> bool:
        if self._closed or not self.can_start_timer():
            return self._reject("start timer")
        self.state.timer_phase = TimerPhase.RUNNING
        self.clock.start()
        self._notify_state()
        return True

    def pause_timer(self) -> bool:
        if self._closed or not self.can_pause_timer():
            return self._reject("pause timer")
        self.state.timer_phase = TimerPhase.PAUSED
        self.clock.pause()
        self._notify_state()
        return True

    def stop_timer(self) -> bool:
        if self._closed or self.busy or not self.can_stop_timer():
            return self._reject("stop timer")
        return self._run_command("stop timer", self._stop_timer_steps())

    # Shutdown
    def flush_and_stop(self) -> None:
        """Persist whatever is in flight and refuse further commands.

        Runs on whichever thread the shutdown trigger fired on and never raises.
        A command still running on the worker is allowed to finish first, and
        whatever it already persisted is not written again.
        """
        self._closed = True
        self.handoff.cancel()
        self.clock.on_tick = None
        in_flight = self._in_flight
        self._executor.shutdown(wait=True)
        if in_flight:
            LOGGER.info("Shutdown waited for %s to finish", in_flight)
        timer_active = self.state.timer_active
        elapsed = self.clock.stop()
        self.state.timer_phase = TimerPhase.STOPPED
        path = self.state.document_path
        if in_flight != "stop timer" and timer_active and elapsed > 0 and path and self.state.has_selection:
            try:
                entry = TimesheetEntry(
                    project=self.state.selected_project,
                    work_type=self.state.selected_work_type,
                    duration=timedelta(seconds=elapsed),
                    finished_at=self._now(),
                )
                self.store.append_time_entry(path, entry)
                LOGGER.info("Saved running timer (%s) on shutdown", entry.duration)
            except Exception:
                LOGGER.exception("Could not save the running timer during shutdown")
        if in_flight != "end workday" and self.state.workday_active and path:
            try:
                info = self.store.end_workday(path, self._now())
                self.state.workday_active = False
                LOGGER.info("Closed workday on shutdown after %s", info.duration_text)
            except Exception:
                LOGGER.exception("Could not close the workday during shutdown")
        try:
            self._dispatch(self._notify_state)
        except Exception:
            LOGGER.debug("Listeners not refreshed after shutdown", exc_info=True)

    # Help texts
    def requirements_text(self) -> str:
        return (
            "The Excel file must contain the sheets:\n"
            f"• '{REFERENCE_SHEET}' with columns Project and Work type\n"
            f"• '{TIMESHEET_SHEET}' with columns Date, Project, Work type, Duration (optional Comment)\n"
            f"• '{WORKDAY_SHEET}' with columns Date, Start, End, Duration"
        )

    def about_text(self) -> str:
        return f"Timesheet\nVersion {__version__}"

    # Command bodies
    def _switch_document_steps(self, path: str, persist: bool = True) -> Command:
        try:
            reference = yield partial(self.store.load_reference, path)
        except StructureError as exc:
            LOGGER.warning("Reference data in %s is invalid: %s", path, exc)
            reference = yield from self._recover_reference(path, str(exc))
            if reference is None:
                if path == self.state.document_path:
                    self.reference = None
                    self.state.selected_project = None
                    self.state.selected_work_type = None
                self._set_status("No valid Excel file selected.", StatusLevel.WARNING)
                return
        self._apply_reference(path, reference)
        if persist:
            self._save_config(path)
        yield from self._resume_pending_steps()

    def _recover_reference(self, path: str, problem: str) -> Generator[Callable[[], object], object, Optional[ReferenceData]]:
        while True:
            self.dialogs.show_message(
                "Excel structure",
                f"{problem}\n\nThe file will now open. Fill in the '{REFERENCE_SHEET}' sheet, save and close it.",
                StatusLevel.WARNING,
            )
            try:
                reference = yield partial(self.handoff.run, path, self._report_from_worker)
            except StructureError as exc:
                problem = str(exc)
            else:
                return reference
            if not self.dialogs.show_confirmation("Excel structure", f"{problem}\n\nTry again?", "Retry", "Cancel"):
                return None

    def _resume_pending_steps(self) -> Command:
        path = self.state.document_path
        if self.state.workday_active or not path:
            return
        record = yield partial(self.store.get_pending_workday, path, self._now().date())
        if record is None:
            return
        started = f"{record.start_time:%H:%M} on {record.date:%d.%m.%Y}"
        if self.dialogs.show_confirmation(
            "Unfinished workday",
            f"A workday started at {started} has not been finished. Continue it?",
            "Continue",
            "Ignore",
        ):
            self.state.workday_active = True
            self._set_status(f"Workday continued (started at {started}).", StatusLevel.SUCCESS)

    def _create_template_steps(self, target: str) -> Command:
        created = yield partial(self.store.create_template, target)
        self.dialogs.show_message("Template created", f"Template created:\n{created}", StatusLevel.SUCCESS)
        yield from self._switch_document_steps(str(created))

    def _start_workday_steps(self, path: str) -> Command:
        if not Path(path).exists():
            raise NotFoundError(f"Excel file not found: {path}")
        info = yield partial(self.store.start_workday, path, self._now())
        self.state.workday_active = True
        self._set_status(f"Workday started at {info.start_text}.", StatusLevel.SUCCESS)

    def _end_workday_steps(self, path: str) -> Command:
        info = yield partial(self.store.end_workday, path, self._now())
        self.state.workday_active = False
        self._set_status(f"Workday finished. Duration: {info.duration_text}.", StatusLevel.SUCCESS)

    def _stop_timer_steps(self) -> Command:
        elapsed = self.clock.stop()
        self.state.timer_phase = TimerPhase.STOPPED
        self._notify_state()
        if elapsed <= 0:
            return
        lost = format_elapsed(elapsed)
        path = self.state.document_path
        if not path:
            self.dialogs.show_message(
                "No file selected", f"Choose an Excel file. {lost} was not recorded.", StatusLevel.WARNING
            )
            return
        if not self.state.has_selection:
            # The elapsed time is not kept; the user is told how much was lost.
            LOGGER.warning("Discarded %s: project or work type missing", lost)
            self.dialogs.show_message(
                "Missing data", f"Select a project and a work type. {lost} was not recorded.", StatusLevel.WARNING
            )
            return
        comment = self.dialogs.show_prompt("Comment", "Optional comment for this entry:", "Save", "Skip")
        entry = TimesheetEntry(
            project=self.state.selected_project,
            work_type=self.state.selected_work_type,
            duration=timedelta(seconds=elapsed),
            finished_at=self._now(),
            comment=(comment or "").strip() or None,
        )
        yield partial(self.store.append_time_entry, path, entry)
        self._set_status(f"Added {lost} to '{TIMESHEET_SHEET}'.", StatusLevel.SUCCESS)

    # Command plumbing
    def _run_command(self, name: str, steps: Command) -> bool:
        if self.busy:
            LOGGER.debug("Ignoring %s: another operation is in flight", name)
            steps.close()
            return False
        LOGGER.debug("Running %s", name)
        self._in_flight = name
        self._set_busy(True)
        self._advance(name, steps)
        return True

    def _advance(
        self, name: str, steps: Command, result: object = None, error: Optional[BaseException] = None
    ) -> None:
        try:
            step = steps.throw(error) if error is not None else steps.send(result)
        except StopIteration:
            self._finish(name)
            return
        except Exception as exc:  # noqa: BLE001 - reported to the user
            self._handle_error(name, exc)
            self._finish(name)
            return
        try:
            future = self._executor.submit(step)
        except RuntimeError as exc:
            steps.close()
            self._handle_error(name, exc)
            self._finish(name)
            return
        future.add_done_callback(partial(self._on_step_done, name, steps))

    def _on_step_done(self, name: str, steps: Command, future: Future) -> None:
        self._dispatch(self._resume, name, steps, future)

    def _resume(self, name: str, steps: Command, future: Future) -> None:
        if self._closed:
            LOGGER.debug("Discarding the rest of %s after shutdown", name)
            steps.close()
            self._finish(name)
            return
        try:
            result = future.result()
        except Exception as exc:  # noqa: BLE001 - thrown into the command body
            self._advance(name, steps, error=exc)
        else:
            self._advance(name, steps, result=result)

    def _finish(self, name: str) -> None:
        LOGGER.debug("Finished %s", name)
        self._in_flight = None
        self._set_busy(False)

    def _handle_error(self, name: str, exc: Exception) -> None:
        if isinstance(exc, NotFoundError):
            LOGGER.warning("%s failed: %s", name, exc)
            current = self.state.document_path
            if not current or not Path(current).exists():
                self._forget_document()
            else:
                self._set_status(str(exc), StatusLevel.ERROR)
            self.dialogs.show_message("File not found", f"{exc}\n\nChoose the file again.", StatusLevel.ERROR)
        elif isinstance(exc, StructureError):
            LOGGER.warning("%s failed: %s", name, exc)
            self._set_status(str(exc), StatusLevel.ERROR)
            self.dialogs.show_message("Excel structure", str(exc), StatusLevel.ERROR)
        elif isinstance(exc, LockError):
            LOGGER.warning("%s failed: %s", name, exc)
            self._set_status(str(exc), StatusLevel.ERROR)
            self.dialogs.show_message(
                "File is in use", f"{exc}\n\nClose it in the other program and try again.", StatusLevel.ERROR
            )
        else:
            LOGGER.error("%s failed", name, exc_info=exc)
            self._set_status(f"{name.capitalize()} failed.", StatusLevel.ERROR)
            self.dialogs.show_message("Error", str(exc) or exc.__class__.__name__, StatusLevel.ERROR)

    def _may_switch_to(self, path: str) -> bool:
        current = self.state.document_path
        if current and Path(path) != Path(current) and (self.state.workday_active or self.state.timer_active):
            self.dialogs.show_message(
                "Workday in progress",
                "Stop the timer and finish the workday before switching to another file.",
                StatusLevel.WARNING,
            )
            return False
        return True

    def _apply_reference(self, path: str, reference: ReferenceData) -> None:
        self.reference = reference
        self.state.document_path = str(path)
        self.state.selected_project = reference.projects[0]
        self.state.selected_work_type = reference.work_types[0]
        self._set_status(f"Selected file: {path}", StatusLevel.SUCCESS)

    def _forget_document(self) -> None:
        LOGGER.info("Forgetting document %s", self.state.document_path)
        self.state.reset()
        self.reference = None
        try:
            self._save_config(None)
        except OSError:
            LOGGER.exception("Could not clear the stored document path")
        self._set_status("No file selected.", StatusLevel.WARNING)

    def _save_config(self, path: Optional[str]) -> None:
        cfg = self.config_manager.config
        cfg.document_path = path
        self.config_manager.save(cfg)

    # Notifications
    def _dispatch(self, fn: Callable[..., object], *args: object) -> None:
        self._dispatcher(fn, *args)

    def _report_from_worker(self, message: str, level: StatusLevel) -> None:
        self._dispatch(self._set_status, message, level)

    def _on_clock_tick(self, elapsed: float) -> None:
        self._dispatch(self._apply_tick, elapsed)

    def _apply_tick(self, elapsed: float) -> None:
        text = format_elapsed(elapsed)
        for listener in list(self._listeners):
            listener.timer_ticked(text)
        self._notify_state()

    def _set_busy(self, busy: bool) -> None:
        self.busy = busy
        self._notify_state()

    def _set_status(self, message: str, level: StatusLevel) -> None:
        self.status = (message, level)
        LOGGER.info("Status: %s", message)
        for listener in list(self._listeners):
            listener.status_changed(message, level)

    def _notify_state(self) -> None:
        for listener in list(self._listeners):
            listener.state_changed(self)

    def _reject(self, action: str) -> bool:
        LOGGER.debug("Rejected %s (busy=%s, state=%s)", action, self.busy, self.state)
        return False
