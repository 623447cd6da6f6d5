import sys
from concurrent.futures import Executor, Future
from pathlib import Path

import pytest
from openpyxl import load_workbook

# Ensure the package is importable during tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timesheet_app.timesheet.storage import REFERENCE_SHEET, EntryStore  # noqa: E402


class InlineExecutor(Executor):
    """Runs submitted work immediately so command bodies finish synchronously."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future


class FakeTime:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDialogs:
    def __init__(self, confirm=True, prompt="", document=None, save_path=None):
        self.confirm = confirm
        self.prompt = prompt
        self.document = document
        self.save_path = save_path
        self.messages = []
        self.confirmations = []
        self.prompts = []

    def pick_document(self):
        return self.document

    def pick_save_path(self, suggested_name):
        self.suggested_name = suggested_name
        return self.save_path

    def show_message(self, title, body, level=None):
        self.messages.append((title, body, level))

    def show_confirmation(self, title, body, accept, cancel):
        self.confirmations.append((title, body))
        if isinstance(self.confirm, list):
            return self.confirm.pop(0)
        return self.confirm

    def show_prompt(self, title, body, accept, cancel):
        self.prompts.append(title)
        return self.prompt


def fill_reference(path, projects, work_types):
    wb = load_workbook(path)
    sheet = wb[REFERENCE_SHEET]
    for row, value in enumerate(projects, start=2):
        sheet.cell(row=row, column=1, value=value)
    for row, value in enumerate(work_types, start=2):
        sheet.cell(row=row, column=2, value=value)
    wb.save(path)


@pytest.fixture
def store():
    return EntryStore()


@pytest.fixture
def workbook(tmp_path, store):
    path = tmp_path / "timesheet.xlsx"
    store.create_template(path)
    fill_reference(path, ["Apollo", "Gemini"], ["Design", "Review"])
    return path
