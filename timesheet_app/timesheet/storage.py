"""Spreadsheet-backed persistence layer (openpyxl)."""
from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Iterator, Optional, Union

from openpyxl import Workbook, load_workbook
from openpyxl.utils.datetime import from_excel
from openpyxl.worksheet.worksheet import Worksheet

from .errors import LockError, NotFoundError, StructureError
from .models import ReferenceData, TimesheetEntry, WorkdayEnd, WorkdayRecord, WorkdayStart

LOGGER = logging.getLogger(__name__)

REFERENCE_SHEET = "Reference"
TIMESHEET_SHEET = "Time log"
WORKDAY_SHEET = "Workday log"

REFERENCE_HEADERS = ["Project", "Work type"]
TIMESHEET_HEADERS = ["Date", "Project", "Work type", "Duration", "Comment"]
WORKDAY_HEADERS = ["Date", "Start", "End", "Duration"]

DATE_NUMBER_FORMAT = "dd.mm.yyyy"
TIME_NUMBER_FORMAT = "hh:mm"
ENTRY_DURATION_FORMAT = "[h]:mm:ss"
WORKDAY_DURATION_FORMAT = "[h]:mm"

# Text fallbacks for cells that were typed in by hand.
DATE_TEXT_FORMATS = ("%d.%m.%Y", "%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y %H:%M", "%d.%m.%Y %H:%M:%S", "%Y-%m-%d %H:%M:%S")
TIME_TEXT_FORMATS = ("%H:%M", "%H:%M:%S")

FIRST_DATA_ROW = 2
RECORD_COLUMNS = 4

PathLike = Union[str, Path]


class EntryStore:
    """Reads and writes the timesheet workbook.

    No workbook handle outlives a call: every operation loads the document,
    works on it and, for writes, saves it before returning.
    """

    def load_reference(self, path: PathLike) -> ReferenceData:
        with self._open(path) as wb:
            sheet = _require_sheet(wb, REFERENCE_SHEET)
            projects = []
            work_types = []
            for row in sheet.iter_rows(min_row=FIRST_DATA_ROW, max_col=2, values_only=True):
                project, work_type = (tuple(row) + (None, None))[:2]
                projects.append(project)
                work_types.append(work_type)
        reference = ReferenceData.from_columns(projects, work_types)
        if not reference.is_complete:
            raise StructureError(
                f"Sheet '{REFERENCE_SHEET}' must contain at least one project and one work type."
            )
        LOGGER.info(
            "Loaded %s projects and %s work types from %s",
            len(reference.projects),
            len(reference.work_types),
            path,
        )
        return reference

    def append_time_entry(self, path: PathLike, entry: TimesheetEntry) -> int:
        with self._open(path, save=True) as wb:
            sheet = _require_sheet(wb, TIMESHEET_SHEET)
            row = first_empty_row(sheet)
            _write(sheet, row, 1, entry.finished_at.date(), DATE_NUMBER_FORMAT)
            sheet.cell(row=row, column=2, value=entry.project)
            sheet.cell(row=row, column=3, value=entry.work_type)
            _write(sheet, row, 4, entry.duration, ENTRY_DURATION_FORMAT)
            if entry.comment:
                sheet.cell(row=row, column=5, value=entry.comment)
        LOGGER.info("Appended %s / %s (%s) at row %s", entry.project, entry.work_type, entry.duration, row)
        return row

    def start_workday(self, path: PathLike, now: Optional[datetime] = None) -> WorkdayStart:
        now = (now or datetime.now()).replace(microsecond=0)
        with self._open(path, save=True) as wb:
            if WORKDAY_SHEET in wb.sheetnames:
                sheet = wb[WORKDAY_SHEET]
            else:
                sheet = wb.create_sheet(title=WORKDAY_SHEET)
                LOGGER.info("Created sheet %s", WORKDAY_SHEET)
            _ensure_headers(sheet, WORKDAY_HEADERS)
            row = first_empty_row(sheet)
            _write(sheet, row, 1, now.date(), DATE_NUMBER_FORMAT)
            _write(sheet, row, 2, now.time(), TIME_NUMBER_FORMAT)
        LOGGER.info("Workday started at %s (row %s)", now, row)
        return WorkdayStart(date=now.date(), start_time=now.time())

    def end_workday(self, path: PathLike, now: Optional[datetime] = None) -> WorkdayEnd:
        now = (now or datetime.now()).replace(microsecond=0)
        with self._open(path, save=True) as wb:
            sheet = _require_sheet(wb, WORKDAY_SHEET)
            record = find_open_workday(sheet)
            if record is None:
                raise StructureError("No unfinished workday record was found.")
            duration = now - record.started_at
            if duration < timedelta(0):
                LOGGER.warning("Workday end %s precedes start %s; clamping to zero", now, record.started_at)
                duration = timedelta(0)
            _write(sheet, record.row, 3, now.time(), TIME_NUMBER_FORMAT)
            _write(sheet, record.row, 4, duration, WORKDAY_DURATION_FORMAT)
            closed = read_workday_row(sheet, record.row)
        LOGGER.info("Workday ended at %s after %s (row %s)", now, closed.duration, closed.row)
        return WorkdayEnd(end_time=closed.end_time, duration=closed.duration)

    def get_pending_workday(self, path: PathLike, today: Optional[date] = None) -> Optional[WorkdayRecord]:
        today = today or date.today()
        with self._open(path) as wb:
            if WORKDAY_SHEET not in wb.sheetnames:
                return None
            record = find_open_workday(wb[WORKDAY_SHEET])
        if record is None or record.date != today:
            return None
        return record

    def create_template(self, path: PathLike) -> Path:
        target = Path(path)
        wb = Workbook()
        reference = wb.active
        reference.title = REFERENCE_SHEET
        reference.append(REFERENCE_HEADERS)
        wb.create_sheet(title=TIMESHEET_SHEET).append(TIMESHEET_HEADERS)
        wb.create_sheet(title=WORKDAY_SHEET).append(WORKDAY_HEADERS)
        _atomic_save(wb, target)
        LOGGER.info("Created template %s", target)
        return target

    @contextmanager
    def _open(self, path: PathLike, save: bool = False) -> Iterator[Workbook]:
        target = Path(path)
        if not target.is_file():
            raise NotFoundError(f"Excel file not found: {target}")
        try:
            wb = load_workbook(target)
        except PermissionError as exc:
            raise LockError(f"Excel file is in use by another program: {target}") from exc
        try:
            yield wb
            if save:
                _atomic_save(wb, target)
        except PermissionError as exc:
            raise LockError(f"Excel file is in use by another program: {target}") from exc
        finally:
            wb.close()


def _require_sheet(wb: Workbook, name: str) -> Worksheet:
    if name not in wb.sheetnames:
        raise StructureError(f"Workbook must contain sheet '{name}'.")
    return wb[name]


def _ensure_headers(sheet: Worksheet, headers: list[str]) -> None:
    if _is_empty(sheet.cell(row=1, column=1).value):
        for column, title in enumerate(headers, start=1):
            sheet.cell(row=1, column=column, value=title)


def _write(sheet: Worksheet, row: int, column: int, value: object, number_format: str) -> None:
    cell = sheet.cell(row=row, column=column, value=value)
    cell.number_format = number_format


def _atomic_save(wb: Workbook, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.stem}_", suffix=".tmp", dir=str(target.parent))
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        wb.save(tmp_path)
        os.replace(tmp_path, target)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                LOGGER.warning("Could not remove temporary file %s", tmp_path)


def _is_empty(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def first_empty_row(sheet: Worksheet, start_row: int = FIRST_DATA_ROW, last_column: int = RECORD_COLUMNS) -> int:
    """First row at or after ``start_row`` whose first ``last_column`` cells are empty."""
    max_row = max(sheet.max_row, start_row - 1)
    for row in range(start_row, max_row + 1):
        if all(_is_empty(sheet.cell(row=row, column=col).value) for col in range(1, last_column + 1)):
            return row
    return max_row + 1


def find_open_workday(sheet: Worksheet) -> Optional[WorkdayRecord]:
    """Scan upwards from the last used row for a workday without an end time."""
    for row in range(sheet.max_row, FIRST_DATA_ROW - 1, -1):
        if _is_empty(sheet.cell(row=row, column=3).value):
            record = read_workday_row(sheet, row)
            if record is not None:
                return record
    return None


def read_workday_row(sheet: Worksheet, row: int) -> Optional[WorkdayRecord]:
    """Read one workday row, or None when it has no date or start time."""
    date_value = sheet.cell(row=row, column=1).value
    start_value = sheet.cell(row=row, column=2).value
    if _is_empty(date_value) or _is_empty(start_value):
        return None
    end_value = sheet.cell(row=row, column=3).value
    duration_value = sheet.cell(row=row, column=4).value
    return WorkdayRecord(
        row=row,
        date=read_date(date_value),
        start_time=read_time(start_value),
        end_time=None if _is_empty(end_value) else read_time(end_value),
        duration=None if _is_empty(duration_value) else read_duration(duration_value),
    )


def read_date(value: object) -> date:
    """Read a date cell: typed date, then timestamp/serial, then text."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        converted = from_excel(value)
        if isinstance(converted, datetime):
            return converted.date()
    if isinstance(value, str):
        text = value.strip()
        for fmt in DATE_TEXT_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
    raise StructureError(f"Could not read the workday start date from {value!r}.")


def read_time(value: object) -> time:
    """Read a time cell: typed time, then timestamp/duration/serial, then text."""
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if isinstance(value, datetime):
        return value.time().replace(microsecond=0)
    if isinstance(value, timedelta):
        return (datetime.min + value).time().replace(microsecond=0)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value < 1:
        seconds = round(value * 24 * 3600)
        return (datetime.min + timedelta(seconds=seconds)).time()
    if isinstance(value, str):
        text = value.strip()
        for fmt in TIME_TEXT_FORMATS:
            try:
                return datetime.strptime(text, fmt).time()
            except ValueError:
                continue
    raise StructureError(f"Could not read the workday start time from {value!r}.")


def read_duration(value: object) -> timedelta:
    """Read a duration cell: typed timedelta, then fraction of a day, then ``h:mm[:ss]`` text."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, time):
        return timedelta(hours=value.hour, minutes=value.minute, seconds=value.second)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=round(value * 24 * 3600))
    if isinstance(value, str):
        parts = value.strip().split(":")
        if len(parts) in (2, 3) and all(part.isdigit() for part in parts):
            hours, minutes, *seconds = (int(part) for part in parts)
            return timedelta(hours=hours, minutes=minutes, seconds=seconds[0] if seconds else 0)
    raise StructureError(f"Could not read the workday duration from {value!r}.")
