"""Data models for the timesheet tracker."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence, Tuple

DATE_FORMAT = "%d.%m.%Y"
TIME_FORMAT = "%H:%M"


def format_elapsed(seconds: float) -> str:
    """Render a stopwatch value as ``HH:MM:SS`` (hours may exceed 24)."""
    total = max(int(seconds), 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_hours_minutes(duration: timedelta) -> str:
    """Render a duration as ``HH:MM``, rounding half-up to whole minutes."""
    total_minutes = int(max(duration.total_seconds(), 0.0) / 60 + 0.5)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours:02d}:{minutes:02d}"


class TimerPhase(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class StatusLevel(enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ReferenceData:
    """Valid projects and work types read from the Reference sheet."""

    projects: Tuple[str, ...]
    work_types: Tuple[str, ...]

    @classmethod
    def from_columns(cls, projects: Sequence[object], work_types: Sequence[object]) -> "ReferenceData":
        return cls(projects=_distinct_names(projects), work_types=_distinct_names(work_types))

    @property
    def is_complete(self) -> bool:
        return bool(self.projects) and bool(self.work_types)


def _distinct_names(values: Sequence[object]) -> Tuple[str, ...]:
    names = (str(value).strip() for value in values if value is not None)
    return tuple(dict.fromkeys(name for name in names if name))


@dataclass(frozen=True)
class TimesheetEntry:
    """One finished timed task, appended to the time log."""

    project: str
    work_type: str
    duration: timedelta
    finished_at: datetime
    comment: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.project or not self.project.strip():
            raise ValueError("project must not be blank")
        if not self.work_type or not self.work_type.strip():
            raise ValueError("work type must not be blank")
        if self.duration <= timedelta(0):
            raise ValueError("duration must be positive")


@dataclass(frozen=True)
class WorkdayRecord:
    """A row of the workday log."""

    row: int
    date: date
    start_time: time
    end_time: Optional[time] = None
    duration: Optional[timedelta] = None

    @property
    def is_open(self) -> bool:
        return self.start_time is not None and self.end_time is None

    @property
    def started_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)


@dataclass(frozen=True)
class WorkdayStart:
    date: date
    start_time: time

    @property
    def date_text(self) -> str:
        return self.date.strftime(DATE_FORMAT)

    @property
    def start_text(self) -> str:
        return self.start_time.strftime(TIME_FORMAT)


@dataclass(frozen=True)
class WorkdayEnd:
    end_time: time
    duration: timedelta

    @property
    def duration_text(self) -> str:
        return format_hours_minutes(self.duration)


@dataclass
class SessionState:
    """Mutable session state owned by the session controller."""

    workday_active: bool = False
    timer_phase: TimerPhase = TimerPhase.STOPPED
    selected_project: Optional[str] = None
    selected_work_type: Optional[str] = None
    document_path: Optional[str] = None

    @property
    def timer_active(self) -> bool:
        return self.timer_phase is not TimerPhase.STOPPED

    @property
    def has_selection(self) -> bool:
        return bool(self.selected_project) and bool(self.selected_work_type)

    def reset(self) -> None:
        self.workday_active = False
        self.selected_project = None
        self.selected_work_type = None
        self.document_path = None


@dataclass(frozen=True)
class Enablement:
    """Which commands the presentation layer should currently offer."""

    inputs_enabled: bool
    start_workday_enabled: bool
    end_workday_enabled: bool
    start_timer_enabled: bool
    pause_timer_enabled: bool
    stop_timer_enabled: bool
