"""Spreadsheet-backed workday and task timesheet tracker."""

__version__ = "0.1.0"
