"""
Change tracking and version control for PRP documents.
"""

from .config import TrackerConfig
from .core import (
    ChangeKind,
    ChangeRecord,
    ChangeTrackerError,
    ConflictResolution,
    DiffFormat,
    ResolutionStrategy,
    RollbackOptions,
)
from .version import ChangeTracker

__version__ = "0.1.0"

__all__ = [
    "ChangeKind",
    "ChangeRecord",
    "ChangeTracker",
    "ChangeTrackerError",
    "ConflictResolution",
    "DiffFormat",
    "ResolutionStrategy",
    "RollbackOptions",
    "TrackerConfig",
]
