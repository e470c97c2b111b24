"""
Document versioning and change tracking modules.
"""

from .change_tracker import ChangeTracker, ContentSource
from .diff_engine import DiffAlgorithm, DiffEngine, DiffLabels
from .history_store import ChangeHistoryStore, ChangeLogRepository

__all__ = [
    "ChangeTracker",
    "ContentSource",
    "DiffAlgorithm",
    "DiffEngine",
    "DiffLabels",
    "ChangeHistoryStore",
    "ChangeLogRepository",
]
