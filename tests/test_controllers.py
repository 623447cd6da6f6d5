import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import astuple
from datetime import datetime, timedelta

import pytest
from openpyxl import load_workbook

from timesheet_app.timesheet.controllers import ConfigManager, SessionController
from timesheet_app.timesheet.errors import LockError, StructureError
from timesheet_app.timesheet.handoff import wait_until
from timesheet_app.timesheet.models import ReferenceData, StatusLevel, TimerPhase
from timesheet_app.timesheet.storage import TIMESHEET_SHEET, WORKDAY_SHEET, EntryStore
from timesheet_app.timesheet.timers import ElapsedClock

from conftest import FakeDialogs, FakeTime, InlineExecutor


class SpyStore(EntryStore):
    def __init__(self):
        self.calls = []
        self.entries = []

    def load_reference(self, path):
        self.calls.append("load_reference")
        return super().load_reference(path)

    def append_time_entry(self, path, entry):
        self.calls.append("append_time_entry")
        self.entries.append(entry)
        return super().append_time_entry(path, entry)

    def start_workday(self, path, now=None):
        self.calls.append("start_workday")
        return super().start_workday(path, now)

    def end_workday(self, path, now=None):
        self.calls.append("end_workday")
        return super().end_workday(path, now)

    def get_pending_workday(self, path, today=None):
        self.calls.append("get_pending_workday")
        return super().get_pending_workday(path, today)


class FakeHandoff:
    def __init__(self, results=()):
        self.results = list(results)
        self.runs = 0
        self.cancelled = False
        self.opened = []

    def opener(self, path):
        self.opened.append(path)
        return True

    def run(self, path, report=None):
        self.runs += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def cancel(self):
        self.cancelled = True


class RecordingListener:
    def __init__(self):
        self.states = []
        self.statuses = []
        self.ticks = []

    def state_changed(self, controller):
        self.states.append(controller.enablement)

    def status_changed(self, message, level):
        self.statuses.append((message, level))

    def timer_ticked(self, text):
        self.ticks.append(text)


class Now:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


def make_controller(tmp_path, store=None, dialogs=None, handoff=None, executor=None, now=None, fake_time=None):
    controller = SessionController(
        store or SpyStore(),
        ElapsedClock(time_source=fake_time or FakeTime(), interval=60),
        handoff or FakeHandoff(),
        dialogs or FakeDialogs(),
        ConfigManager(tmp_path / "config.toml"),
        executor=executor or InlineExecutor(),
        now=now or Now(datetime(2024, 3, 4, 9, 0)),
    )
    return controller


def test_switch_document_loads_reference_and_saves_config(tmp_path, workbook):
    listener = RecordingListener()
    controller = make_controller(tmp_path)
    controller.add_listener(listener)

    assert controller.switch_document(str(workbook))

    assert controller.projects == ("Apollo", "Gemini")
    assert controller.state.selected_project == "Apollo"
    assert controller.state.selected_work_type == "Design"
    assert controller.state.document_path == str(workbook)
    assert ConfigManager(tmp_path / "config.toml").config.document_path == str(workbook)
    assert not controller.busy
    assert listener.statuses[-1][1] is StatusLevel.SUCCESS
    assert listener.states[-1].inputs_enabled
    assert listener.states[-1].start_workday_enabled


def test_start_timer_rejected_without_workday(tmp_path, workbook):
    controller = make_controller(tmp_path)
    controller.switch_document(str(workbook))
    assert controller.state.has_selection

    assert not controller.start_timer()
    assert controller.state.timer_phase is TimerPhase.STOPPED
    assert controller.clock.elapsed == 0


def test_stop_timer_with_zero_elapsed_never_calls_store(tmp_path, workbook):
    store = SpyStore()
    controller = make_controller(tmp_path, store=store)
    controller.state.document_path = str(workbook)

    assert not controller.stop_timer()
    assert store.calls == []


def test_pause_preserves_offset_and_entry_gets_full_duration(tmp_path, workbook):
    fake = FakeTime()
    store = SpyStore()
    dialogs = FakeDialogs(prompt="  wrote specs ")
    listener = RecordingListener()
    controller = make_controller(tmp_path, store=store, dialogs=dialogs, fake_time=fake)
    controller.add_listener(listener)
    controller.switch_document(str(workbook))
    controller.select_work_type("Review")
    assert controller.start_workday()
    assert controller.state.workday_active

    assert controller.start_timer()
    fake.advance(300)
    assert controller.pause_timer()
    assert controller.timer_text == "00:05:00"
    assert controller.state.timer_phase is TimerPhase.PAUSED
    assert not controller.end_workday()

    fake.advance(60)
    assert controller.start_timer()
    fake.advance(150)
    assert controller.stop_timer()

    assert len(store.entries) == 1
    entry = store.entries[0]
    assert entry.duration == timedelta(minutes=7, seconds=30)
    assert (entry.project, entry.work_type, entry.comment) == ("Apollo", "Review", "wrote specs")
    assert controller.clock.elapsed == 0
    assert controller.state.timer_phase is TimerPhase.STOPPED
    assert "00:05:00" in listener.ticks
    sheet = load_workbook(workbook)[TIMESHEET_SHEET]
    assert sheet.cell(row=2, column=2).value == "Apollo"


def test_stop_timer_without_selection_discards_time_loudly(tmp_path, workbook):
    fake = FakeTime()
    store = SpyStore()
    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, store=store, dialogs=dialogs, fake_time=fake)
    controller.switch_document(str(workbook))
    controller.start_workday()
    controller.start_timer()
    fake.advance(42)
    controller.select_project(None)

    assert controller.stop_timer()

    assert "append_time_entry" not in store.calls
    assert controller.clock.elapsed == 0
    title, body, level = dialogs.messages[-1]
    assert level is StatusLevel.WARNING
    assert "00:00:42" in body
    assert dialogs.prompts == []


def test_select_rejects_unknown_names(tmp_path, workbook):
    controller = make_controller(tmp_path)
    controller.switch_document(str(workbook))
    assert not controller.select_project("Unknown")
    assert controller.select_project("Gemini")
    assert controller.state.selected_project == "Gemini"


def test_workday_start_and_end_report_duration(tmp_path, workbook):
    now = Now(datetime(2024, 3, 4, 9, 0))
    listener = RecordingListener()
    controller = make_controller(tmp_path, now=now)
    controller.add_listener(listener)
    controller.switch_document(str(workbook))

    assert controller.start_workday()
    assert not controller.start_workday()
    now.value = datetime(2024, 3, 4, 17, 30)
    assert controller.end_workday()

    assert not controller.state.workday_active
    assert "08:30" in listener.statuses[-1][0]


def test_end_workday_in_flight_start_is_dropped(tmp_path, workbook):
    release = threading.Event()
    entered = threading.Event()

    class SlowStore(SpyStore):
        def start_workday(self, path, now=None):
            entered.set()
            release.wait(5)
            return super().start_workday(path, now)

    store = SlowStore()
    dialogs = FakeDialogs()
    executor = ThreadPoolExecutor(max_workers=2)
    controller = make_controller(tmp_path, store=store, dialogs=dialogs, executor=executor)
    controller.state.document_path = str(workbook)

    assert controller.start_workday()
    assert entered.wait(5)
    assert controller.busy
    assert not controller.end_workday()
    assert not controller.start_workday()
    assert not controller.switch_document(str(workbook))

    release.set()
    assert wait_until(lambda: not controller.busy, interval=0.01, timeout=5)
    executor.shutdown(wait=True)

    assert store.calls.count("start_workday") == 1
    assert store.calls.count("end_workday") == 0
    assert controller.state.workday_active
    assert dialogs.messages == []
    assert load_workbook(workbook)[WORKDAY_SHEET].max_row == 2


def test_structure_error_enters_handoff_and_retries(tmp_path, store):
    doc = store.create_template(tmp_path / "T.xlsx")
    handoff = FakeHandoff([StructureError("still empty"), ReferenceData(("A",), ("B",))])
    dialogs = FakeDialogs(confirm=True)
    controller = make_controller(tmp_path, handoff=handoff, dialogs=dialogs)

    assert controller.switch_document(str(doc))

    assert handoff.runs == 2
    assert controller.projects == ("A",)
    assert controller.work_types == ("B",)
    assert controller.state.document_path == str(doc)
    assert any("still empty" in body for _title, body in dialogs.confirmations)
    assert not controller.busy


def test_structure_error_cancel_leaves_no_valid_document(tmp_path, store):
    doc = store.create_template(tmp_path / "T.xlsx")
    handoff = FakeHandoff([StructureError("still empty")])
    listener = RecordingListener()
    controller = make_controller(tmp_path, handoff=handoff, dialogs=FakeDialogs(confirm=False))
    controller.add_listener(listener)

    assert controller.switch_document(str(doc))

    assert handoff.runs == 1
    assert controller.reference is None
    assert controller.state.document_path is None
    assert listener.statuses[-1] == ("No valid Excel file selected.", StatusLevel.WARNING)
    assert ConfigManager(tmp_path / "config.toml").config.document_path is None


def test_handoff_without_lock_does_not_retry(tmp_path, store):
    doc = store.create_template(tmp_path / "T.xlsx")
    handoff = FakeHandoff([None])
    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, handoff=handoff, dialogs=dialogs)

    controller.switch_document(str(doc))

    assert handoff.runs == 1
    assert dialogs.confirmations == []
    assert not controller.has_reference


def test_create_template_hands_off_and_loads(tmp_path):
    target = tmp_path / "T.xlsx"
    handoff = FakeHandoff([ReferenceData(("A",), ("B",))])
    dialogs = FakeDialogs(save_path=str(target))
    controller = make_controller(tmp_path, handoff=handoff, dialogs=dialogs)

    assert controller.create_template()

    assert target.exists()
    assert dialogs.suggested_name.startswith("timesheet_template_20240304_090000")
    assert dialogs.messages[0][0] == "Template created"
    assert controller.state.document_path == str(target)
    assert controller.projects == ("A",)


def test_initialize_forgets_missing_document(tmp_path):
    config = ConfigManager(tmp_path / "config.toml")
    config.config.document_path = str(tmp_path / "moved.xlsx")
    config.save()
    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, dialogs=dialogs)

    assert controller.initialize()

    assert controller.state.document_path is None
    assert ConfigManager(tmp_path / "config.toml").config.document_path is None
    assert dialogs.messages[-1][0] == "File not found"
    assert not controller.busy
    assert not controller.initialize()


@pytest.mark.parametrize("accept", [True, False])
def test_initialize_offers_to_resume_open_workday(tmp_path, workbook, store, accept):
    store.start_workday(workbook, datetime(2024, 3, 4, 7, 45))
    config = ConfigManager(tmp_path / "config.toml")
    config.config.document_path = str(workbook)
    config.save()
    dialogs = FakeDialogs(confirm=accept)
    controller = make_controller(tmp_path, dialogs=dialogs)

    controller.initialize()

    assert controller.state.workday_active is accept
    assert "07:45" in dialogs.confirmations[0][1]
    assert load_workbook(workbook)[WORKDAY_SHEET].max_row == 2


def test_lock_error_is_reported_and_state_kept(tmp_path, workbook):
    class LockedStore(SpyStore):
        def start_workday(self, path, now=None):
            raise LockError("Excel file is in use by another program")

    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, store=LockedStore(), dialogs=dialogs)
    controller.switch_document(str(workbook))

    assert controller.start_workday()

    assert not controller.state.workday_active
    assert not controller.busy
    assert dialogs.messages[-1][0] == "File is in use"
    assert controller.can_start_workday()


def test_switching_documents_refused_during_workday(tmp_path, workbook, store):
    other = store.create_template(tmp_path / "other.xlsx")
    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, dialogs=dialogs)
    controller.switch_document(str(workbook))
    controller.start_workday()

    assert not controller.switch_document(str(other))
    assert controller.state.document_path == str(workbook)
    assert dialogs.messages[-1][0] == "Workday in progress"


def test_flush_and_stop_persists_timer_and_workday(tmp_path, workbook):
    fake = FakeTime()
    now = Now(datetime(2024, 3, 4, 9, 0))
    store = SpyStore()
    handoff = FakeHandoff()
    controller = make_controller(tmp_path, store=store, handoff=handoff, now=now, fake_time=fake)
    controller.switch_document(str(workbook))
    controller.start_workday()
    controller.start_timer()
    fake.advance(90)
    now.value = datetime(2024, 3, 4, 12, 0)

    controller.flush_and_stop()

    assert store.entries[0].duration == timedelta(seconds=90)
    assert "end_workday" in store.calls
    assert not controller.state.workday_active
    assert handoff.cancelled
    assert not controller.start_workday()
    assert store.get_pending_workday(workbook, now.value.date()) is None


def test_flush_and_stop_swallows_store_failures(tmp_path, workbook):
    class BrokenStore(SpyStore):
        def end_workday(self, path, now=None):
            raise OSError("disk full")

    controller = make_controller(tmp_path, store=BrokenStore())
    controller.switch_document(str(workbook))
    controller.start_workday()

    controller.flush_and_stop()

    assert controller.state.workday_active


def test_open_current_document_uses_opener(tmp_path, workbook):
    handoff = FakeHandoff()
    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, handoff=handoff, dialogs=dialogs)

    assert not controller.open_current_document()
    assert dialogs.messages[-1][0] == "No file selected"

    controller.switch_document(str(workbook))
    assert controller.open_current_document()
    assert str(handoff.opened[0]) == str(workbook)


def test_shutdown_waits_for_end_workday_and_does_not_close_twice(tmp_path, workbook, store):
    store.start_workday(workbook, datetime(2024, 3, 1, 8, 0))
    saved = threading.Event()
    release = threading.Event()

    class SlowStore(SpyStore):
        def end_workday(self, path, now=None):
            result = super().end_workday(path, now)
            saved.set()
            release.wait(5)
            return result

    slow = SlowStore()
    now = Now(datetime(2024, 3, 4, 9, 0))
    controller = make_controller(tmp_path, store=slow, executor=ThreadPoolExecutor(max_workers=1), now=now)
    controller.switch_document(str(workbook))
    assert wait_until(lambda: not controller.busy, interval=0.01, timeout=5)
    controller.start_workday()
    assert wait_until(lambda: not controller.busy, interval=0.01, timeout=5)
    assert controller.state.workday_active

    now.value = datetime(2024, 3, 4, 17, 30)
    assert controller.end_workday()
    assert saved.wait(5)
    threading.Timer(0.1, release.set).start()

    controller.flush_and_stop()

    assert slow.calls.count("end_workday") == 1
    assert not controller.busy
    sheet = load_workbook(workbook)[WORKDAY_SHEET]
    assert sheet.cell(row=2, column=3).value is None
    assert sheet.cell(row=3, column=3).value is not None


def test_closed_controller_offers_no_commands(tmp_path, workbook):
    listener = RecordingListener()
    controller = make_controller(tmp_path)
    controller.add_listener(listener)
    controller.switch_document(str(workbook))
    controller.start_workday()
    assert controller.enablement.end_workday_enabled

    controller.flush_and_stop()

    assert not any(astuple(controller.enablement))
    assert not any(astuple(listener.states[-1]))


def test_missing_other_document_keeps_current_one(tmp_path, workbook):
    dialogs = FakeDialogs()
    controller = make_controller(tmp_path, dialogs=dialogs)
    controller.switch_document(str(workbook))

    assert controller.switch_document(str(tmp_path / "gone.xlsx"))

    assert dialogs.messages[-1][0] == "File not found"
    assert controller.state.document_path == str(workbook)
    assert controller.projects == ("Apollo", "Gemini")
    assert ConfigManager(tmp_path / "config.toml").config.document_path == str(workbook)
