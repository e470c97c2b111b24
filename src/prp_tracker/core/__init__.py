"""
Core data model and exceptions for PRP change tracking.
"""

from .errors import (
    ChangeTrackerError,
    InvalidArgumentError,
    NotFoundError,
    StorageIOError,
    UnsupportedError,
)
from .models import (
    AuditTrail,
    ChangeKind,
    ChangeMetadata,
    ChangeRecord,
    ConflictResolution,
    DetailedChange,
    DiffFormat,
    HistoryPage,
    LineChangeType,
    ResolutionStrategy,
    RollbackOptions,
    RollbackResult,
    TrackerState,
)

__all__ = [
    "AuditTrail",
    "ChangeKind",
    "ChangeMetadata",
    "ChangeRecord",
    "ChangeTrackerError",
    "ConflictResolution",
    "DetailedChange",
    "DiffFormat",
    "HistoryPage",
    "InvalidArgumentError",
    "LineChangeType",
    "NotFoundError",
    "ResolutionStrategy",
    "RollbackOptions",
    "RollbackResult",
    "StorageIOError",
    "TrackerState",
    "UnsupportedError",
]
