"""
Data model for tracked PRP documents.

Change records are persisted, so they are pydantic models serialized with the
camelCase keys used by the on-disk change logs. Everything else is a plain
dataclass returned from tracker queries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ChangeKind(str, Enum):
    """Kinds of mutation recorded for a document."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"


class LineChangeType(str, Enum):
    """Types of line-level deltas."""
    ADDITION = "addition"
    DELETION = "deletion"
    MODIFICATION = "modification"


class DiffFormat(str, Enum):
    """Renderings supported by the diff engine."""
    UNIFIED = "unified"
    SIDE_BY_SIDE = "side-by-side"
    HTML = "html"


class ResolutionStrategy(str, Enum):
    """Ways a detected conflict can be resolved."""
    MERGE = "merge"
    ACCEPT_CURRENT = "accept-current"
    ACCEPT_INCOMING = "accept-incoming"
    MANUAL = "manual"


# Strategies whose payload must include merged content
CONTENT_REQUIRED_STRATEGIES = frozenset({
    ResolutionStrategy.ACCEPT_INCOMING,
    ResolutionStrategy.MANUAL,
})


class TrackerState(Enum):
    """Lifecycle of a change tracker."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat a naive datetime as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _RecordModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON-ready dictionary written to change logs."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from a change log dictionary."""
        return cls.model_validate(data)


class DetailedChange(_RecordModel):
    """One contiguous line-range delta within a document comparison."""

    type: LineChangeType
    section: str = "content"
    line_start: int
    line_end: int
    content_before: Optional[str] = None
    content_after: Optional[str] = None
    summary: str = ""

    def overlaps(self, other: DetailedChange) -> bool:
        """Check whether two line ranges share at least one line."""
        return not (self.line_end < other.line_start or other.line_end < self.line_start)


class ChangeMetadata(_RecordModel):
    """Size, line count and hash of the content on both sides of a change."""

    size_before: Optional[int] = None
    size_after: Optional[int] = None
    lines_before: Optional[int] = None
    lines_after: Optional[int] = None
    hash_before: Optional[str] = None
    hash_after: Optional[str] = None


class ChangeRecord(_RecordModel):
    """Immutable log entry for one mutation of one document."""

    id: str
    file_id: str
    version: int
    timestamp: datetime
    author: Optional[str] = None
    description: str = ""
    change_type: ChangeKind
    changes: List[DetailedChange] = Field(default_factory=list)
    metadata: ChangeMetadata = Field(default_factory=ChangeMetadata)

    # Full content after the change; absent on records written without snapshots
    snapshot: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def summary_dict(self) -> Dict[str, Any]:
        """Short form used in tool responses and audit timelines."""
        return {
            "id": self.id,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "author": self.author,
            "description": self.description,
            "changeType": self.change_type.value,
        }


@dataclass
class ConflictResolution:
    """How a detected conflict was or should be resolved."""

    conflict_id: str
    file_id: str
    base_version: int
    conflicting_versions: List[int] = field(default_factory=list)
    resolution: ResolutionStrategy = ResolutionStrategy.MANUAL
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    merged_content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        resolution = self.resolution
        return {
            "conflictId": self.conflict_id,
            "fileId": self.file_id,
            "baseVersion": self.base_version,
            "conflictingVersions": list(self.conflicting_versions),
            "resolution": resolution.value if isinstance(resolution, Enum) else resolution,
            "resolvedBy": self.resolved_by,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "mergedContent": self.merged_content,
        }


@dataclass
class RollbackOptions:
    """Input to a rollback. Only target_version and reason affect the result."""

    target_version: int
    preserve_changes: bool = False
    create_backup: bool = True
    reason: Optional[str] = None


@dataclass
class RollbackResult:
    content: str
    change_record: ChangeRecord


@dataclass
class HistoryPage:
    """A filtered, paginated slice of a document's history."""

    changes: List[ChangeRecord]
    total: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "total": self.total,
            "hasMore": self.has_more,
        }


@dataclass
class AuditTrail:
    """Chronological compliance view of a document's history."""

    file_id: str
    total_changes: int
    authors: List[str]
    change_types: Dict[str, int]
    timeline: List[ChangeRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "totalChanges": self.total_changes,
            "authors": list(self.authors),
            "changeTypes": dict(self.change_types),
            "timeline": [c.summary_dict() for c in self.timeline],
        }
