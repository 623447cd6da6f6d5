"""Error types raised by the spreadsheet store and the handoff."""
from __future__ import annotations


class TimesheetError(Exception):
    """Base class for document related failures."""


class StructureError(TimesheetError):
    """The document does not match the expected sheet/column contract."""


class NotFoundError(TimesheetError, FileNotFoundError):
    """The configured document no longer exists on disk."""


class LockError(TimesheetError, PermissionError):
    """The document is held exclusively by another process."""
