"""
Exceptions raised by the change tracker.
"""

from __future__ import annotations


class ChangeTrackerError(Exception):
    """Base exception for change tracking operations."""


class NotFoundError(ChangeTrackerError):
    """Unknown file, version or conflict."""


class InvalidArgumentError(ChangeTrackerError):
    """A required parameter is missing or malformed."""


class UnsupportedError(ChangeTrackerError):
    """Unknown resolution strategy or diff format."""


class StorageIOError(ChangeTrackerError):
    """Reading or writing the change log failed."""
