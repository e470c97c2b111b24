"""
Version control and change tracking for PRP documents.

Records versioned edits with line-level detail, renders diffs between
versions, detects and resolves conflicting edits, rolls back by recording a
new change, and answers audit-trail queries. Each document's active history
is persisted as a JSON array; records evicted by the retention cap are moved
to an archive directory.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Union
from uuid import uuid4

from ..config import TrackerConfig
from ..core.errors import InvalidArgumentError, NotFoundError, UnsupportedError
from ..core.models import (
    CONTENT_REQUIRED_STRATEGIES,
    AuditTrail,
    ChangeKind,
    ChangeMetadata,
    ChangeRecord,
    ConflictResolution,
    DiffFormat,
    HistoryPage,
    ResolutionStrategy,
    RollbackOptions,
    RollbackResult,
    TrackerState,
    as_utc,
    utcnow,
)
from .diff_engine import DiffEngine, DiffLabels, split_lines
from .history_store import ChangeHistoryStore, ChangeLogRepository, KeyedLock, validate_file_id


class ContentSource(Protocol):
    """Supplies document content the tracker has no snapshot for."""

    async def get_current_content(self, file_id: str) -> str:
        ...

    async def get_content_at_version(self, file_id: str, version: int) -> str:
        ...


def _sha256(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def _timeline_key(record: ChangeRecord):
    return (record.timestamp, record.version)


def _coerce_kind(change_type: Union[ChangeKind, str]) -> ChangeKind:
    try:
        return ChangeKind(change_type)
    except ValueError:
        raise InvalidArgumentError(f"Unknown change type: {change_type}") from None


def _coerce_version(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidArgumentError(f"{name} must be a positive integer, got {value!r}")
    return value


class ChangeTracker:
    """
    Owner of per-document change history.

    All public operations are coroutines and lazily initialize the tracker on
    first use. Writes to the same document are serialized so version numbers
    stay gapless under concurrent callers.
    """

    # Unresolved conflicts kept for lookup by id; the oldest are dropped first
    max_pending_conflicts = 100

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        store: Optional[ChangeHistoryStore] = None,
        content_source: Optional[ContentSource] = None,
    ):
        self.config = config or TrackerConfig()
        self.store = store if store is not None else ChangeHistoryStore()
        self.repository = ChangeLogRepository(self.config.changes_path)
        self.diff_engine = DiffEngine(self.config.diff_algorithm)
        self.content_source = content_source
        self.logger = logging.getLogger(__name__)

        self._state = TrackerState.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._file_locks = KeyedLock()

        # Conflicts detected but not yet resolved, by conflict id
        self._pending_conflicts: Dict[str, ConflictResolution] = {}

    @property
    def state(self) -> TrackerState:
        return self._state

    async def initialize(self) -> None:
        """Create storage directories and load every change log once."""
        if self._state == TrackerState.READY:
            return

        async with self._init_lock:
            if self._state == TrackerState.READY:
                return

            self._state = TrackerState.INITIALIZING
            try:
                await self._run_io(self.repository.ensure_directories)
                records = await self._run_io(self.repository.load_all)
            except Exception:
                self._state = TrackerState.UNINITIALIZED
                raise

            self.store.clear()
            for record in records:
                self.store.extend(record.file_id, [record])
            self.store.sort_by_version()

            self._state = TrackerState.READY
            self.logger.info(
                f"Change tracker ready: {len(records)} records for "
                f"{len(self.store.file_ids())} documents in {self.repository.changes_path}"
            )

    async def _ensure_initialized(self) -> None:
        if self._state != TrackerState.READY:
            await self.initialize()

    async def _run_io(self, func: Callable, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # Recording

    async def record_change(
        self,
        file_id: str,
        change_type: Union[ChangeKind, str],
        content_before: Optional[str] = "",
        content_after: Optional[str] = "",
        description: str = "",
        author: Optional[str] = None,
    ) -> ChangeRecord:
        """
        Record a change to a document.

        Args:
            file_id: Document identifier
            change_type: create, update, delete or restore
            content_before: Content prior to the change
            content_after: Content after the change
            description: Summary; generated from the diff when empty
            author: Who made the change

        Returns:
            The persisted ChangeRecord
        """
        validate_file_id(file_id)
        kind = _coerce_kind(change_type)
        await self._ensure_initialized()

        async with self._file_locks(file_id):
            return await self._append_change(
                file_id, kind, content_before or "", content_after or "", description, author
            )

    async def _append_change(
        self,
        file_id: str,
        kind: ChangeKind,
        content_before: str,
        content_after: str,
        description: str,
        author: Optional[str],
    ) -> ChangeRecord:
        # Caller holds the file lock
        changes = (
            self.diff_engine.detailed_changes(content_before, content_after)
            if self.config.enable_diff_generation
            else []
        )

        history = list(self.store.get(file_id))
        version = max((r.version for r in history), default=0) + 1

        record = ChangeRecord(
            id=self._generate_change_id(file_id),
            file_id=file_id,
            version=version,
            timestamp=utcnow(),
            author=author,
            description=description or self.diff_engine.describe(kind, changes),
            change_type=kind,
            changes=changes,
            metadata=ChangeMetadata(
                size_before=len(content_before.encode('utf-8')),
                size_after=len(content_after.encode('utf-8')),
                lines_before=len(split_lines(content_before)),
                lines_after=len(split_lines(content_after)),
                hash_before=_sha256(content_before) if content_before else None,
                hash_after=_sha256(content_after) if content_after else None,
            ),
            snapshot=content_after if self.config.store_snapshots else None,
        )

        history.append(record)
        evicted: List[ChangeRecord] = []
        while len(history) > self.config.max_version_history:
            evicted.append(history.pop(0))

        # Persist before publishing so a failed write leaves memory untouched
        for old in evicted:
            await self._run_io(self.repository.write_archive, old)
            self.logger.info(f"Archived version {old.version} of {file_id}")
        await self._run_io(self.repository.write_history, file_id, history)

        self.store.replace(file_id, history)
        self.logger.debug(f"Recorded {kind.value} v{version} for {file_id}: {record.description}")
        return record

    def _generate_change_id(self, file_id: str) -> str:
        seed = f"{file_id}_{time.time_ns()}_{uuid4().hex}"
        return hashlib.md5(seed.encode('utf-8')).hexdigest()

    def _generate_conflict_id(self, file_id: str, base_version: int, current_version: int) -> str:
        seed = f"conflict_{file_id}_{base_version}_{current_version}_{time.time_ns()}_{uuid4().hex}"
        return hashlib.md5(seed.encode('utf-8')).hexdigest()

    # Lookups

    async def list_documents(self) -> List[str]:
        """File ids with at least one active record."""
        await self._ensure_initialized()
        return self.store.file_ids()

    async def get_current_version(self, file_id: str) -> int:
        """Latest version number, or 0 when the document has no history."""
        await self._ensure_initialized()
        return max((r.version for r in self.store.get(file_id)), default=0)

    async def get_change(self, file_id: str, version: int) -> ChangeRecord:
        await self._ensure_initialized()
        record = self._find_version(file_id, version)
        if record is None:
            raise NotFoundError(f"Version {version} not found for file {file_id}")
        return record

    def _find_version(self, file_id: str, version: int) -> Optional[ChangeRecord]:
        for record in self.store.get(file_id):
            if record.version == version:
                return record
        return None

    async def get_content_at_version(self, file_id: str, version: int) -> str:
        """Content of a document right after the given version was recorded."""
        record = await self.get_change(file_id, version)

        if record.snapshot is not None:
            return record.snapshot
        if self.content_source is not None:
            return await self.content_source.get_content_at_version(file_id, version)

        raise NotFoundError(f"No content stored for version {version} of {file_id}")

    async def get_current_content(self, file_id: str) -> str:
        current_version = await self.get_current_version(file_id)
        if current_version == 0:
            return ""
        return await self.get_content_at_version(file_id, current_version)

    async def get_archived_change(self, file_id: str, version: int) -> ChangeRecord:
        """Read a record that was evicted by the retention cap."""
        validate_file_id(file_id)
        await self._ensure_initialized()
        return await self._run_io(self.repository.read_archive, file_id, version)

    async def list_archived_versions(self, file_id: str) -> List[int]:
        validate_file_id(file_id)
        await self._ensure_initialized()
        return await self._run_io(self.repository.archived_versions, file_id)

    # Queries

    async def get_change_history(
        self,
        file_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
        author: Optional[str] = None,
        change_type: Optional[Union[ChangeKind, str]] = None,
    ) -> HistoryPage:
        """
        Get change history for a document, most recent first.

        Args:
            file_id: Document identifier
            limit: Maximum records to return (all when None)
            offset: Records to skip after sorting
            from_version: Lowest version to include
            to_version: Highest version to include
            author: Only changes by this author
            change_type: Only changes of this kind

        Returns:
            HistoryPage with the page, the filtered total and whether more remain
        """
        if limit is not None and limit < 0:
            raise InvalidArgumentError("limit must not be negative")
        if offset < 0:
            raise InvalidArgumentError("offset must not be negative")
        kind = _coerce_kind(change_type) if change_type else None

        await self._ensure_initialized()
        changes = list(self.store.get(file_id))

        if from_version is not None:
            changes = [c for c in changes if c.version >= from_version]
        if to_version is not None:
            changes = [c for c in changes if c.version <= to_version]
        if author:
            changes = [c for c in changes if c.author == author]
        if kind:
            changes = [c for c in changes if c.change_type == kind]

        changes.sort(key=_timeline_key, reverse=True)

        total = len(changes)
        if limit is None:
            limit = total
        page = changes[offset:offset + limit]

        return HistoryPage(changes=page, total=total, has_more=offset + len(page) < total)

    async def generate_diff(
        self,
        file_id: str,
        from_version: int,
        to_version: int,
        diff_format: Union[DiffFormat, str] = DiffFormat.UNIFIED,
    ) -> str:
        """
        Render a diff between two recorded versions of a document.

        Raises:
            NotFoundError: Either version is not in the document's history
            UnsupportedError: Unknown diff format
        """
        try:
            diff_format = DiffFormat(diff_format)
        except ValueError:
            raise UnsupportedError(f"Unsupported diff format: {diff_format}") from None

        from_change = await self.get_change(file_id, from_version)
        to_change = await self.get_change(file_id, to_version)

        from_content = await self.get_content_at_version(file_id, from_version)
        to_content = await self.get_content_at_version(file_id, to_version)

        return self.diff_engine.render(
            from_content,
            to_content,
            diff_format,
            DiffLabels(
                from_version=from_version,
                to_version=to_version,
                from_timestamp=from_change.timestamp,
                to_timestamp=to_change.timestamp,
            ),
        )

    async def get_audit_trail(
        self,
        file_id: str,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> AuditTrail:
        """Summarize who changed a document and how, oldest change first."""
        await self._ensure_initialized()
        changes = list(self.store.get(file_id))

        if from_date is not None:
            lower = as_utc(from_date)
            changes = [c for c in changes if c.timestamp >= lower]
        if to_date is not None:
            upper = as_utc(to_date)
            changes = [c for c in changes if c.timestamp <= upper]

        changes.sort(key=_timeline_key)

        authors: List[str] = []
        change_types: Dict[str, int] = {}
        for change in changes:
            if change.author and change.author not in authors:
                authors.append(change.author)
            kind = change.change_type.value
            change_types[kind] = change_types.get(kind, 0) + 1

        return AuditTrail(
            file_id=file_id,
            total_changes=len(changes),
            authors=authors,
            change_types=change_types,
            timeline=changes,
        )

    # Rollback and conflicts

    async def rollback_to_version(self, file_id: str, options: RollbackOptions) -> RollbackResult:
        """
        Restore a document to a previous version by recording an update.

        History is never truncated; the rollback becomes the newest version.
        """
        validate_file_id(file_id)
        target_version = _coerce_version(options.target_version, "targetVersion")
        await self._ensure_initialized()

        async with self._file_locks(file_id):
            target_content = await self.get_content_at_version(file_id, target_version)
            current_content = await self.get_current_content(file_id)

            description = (
                f"Rollback to v{target_version}: {options.reason}"
                if options.reason
                else f"Rollback to version {target_version}"
            )

            record = await self._append_change(
                file_id, ChangeKind.UPDATE, current_content, target_content, description, None
            )

        self.logger.info(f"Rolled back {file_id} to version {target_version} as v{record.version}")
        return RollbackResult(content=target_content, change_record=record)

    async def detect_conflicts(
        self,
        file_id: str,
        base_version: int,
        incoming_content: str,
    ) -> Optional[ConflictResolution]:
        """
        Check whether an edit based on an older version collides with newer changes.

        Returns:
            None when there is nothing to resolve, otherwise a pending
            ConflictResolution defaulted to manual resolution
        """
        validate_file_id(file_id)
        await self._ensure_initialized()

        current_version = await self.get_current_version(file_id)
        if base_version == current_version:
            return None

        base_content = await self.get_content_at_version(file_id, base_version)
        current_content = await self.get_current_content(file_id)

        base_to_current = self.diff_engine.detailed_changes(base_content, current_content)
        base_to_incoming = self.diff_engine.detailed_changes(base_content, incoming_content or "")

        if not self.diff_engine.has_conflicts(base_to_current, base_to_incoming):
            return None

        conflict = ConflictResolution(
            conflict_id=self._generate_conflict_id(file_id, base_version, current_version),
            file_id=file_id,
            base_version=base_version,
            conflicting_versions=[current_version],
            resolution=ResolutionStrategy.MANUAL,
        )
        self._register_conflict(conflict)
        self.logger.info(
            f"Conflict {conflict.conflict_id} on {file_id}: base v{base_version} vs current v{current_version}"
        )
        return conflict

    def _register_conflict(self, conflict: ConflictResolution) -> None:
        self._pending_conflicts[conflict.conflict_id] = conflict
        while len(self._pending_conflicts) > self.max_pending_conflicts:
            expired = next(iter(self._pending_conflicts))
            del self._pending_conflicts[expired]
            self.logger.debug(f"Dropped unresolved conflict {expired}")

    def get_pending_conflict(self, conflict_id: str) -> ConflictResolution:
        conflict = self._pending_conflicts.get(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        return conflict

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        resolved_by: Optional[str] = None,
    ) -> str:
        """
        Resolve a conflict with the strategy named in ``resolution``.

        Returns:
            The resolved content. Recording it is left to the caller.

        Raises:
            UnsupportedError: Unknown strategy
            InvalidArgumentError: Strategy needs merged content that is missing
        """
        try:
            strategy = ResolutionStrategy(resolution.resolution)
        except ValueError:
            raise UnsupportedError(f"Unknown resolution strategy: {resolution.resolution}") from None

        file_id = validate_file_id(resolution.file_id)
        await self._ensure_initialized()

        if strategy in CONTENT_REQUIRED_STRATEGIES and resolution.merged_content is None:
            raise InvalidArgumentError(f"Merged content required for {strategy.value} resolution")

        if strategy == ResolutionStrategy.ACCEPT_CURRENT:
            content = await self.get_current_content(file_id)
        elif strategy == ResolutionStrategy.MERGE:
            content = await self._merge_with_markers(file_id, resolution.conflicting_versions)
        else:
            content = resolution.merged_content

        resolution.resolution = strategy
        resolution.resolved_by = resolved_by or resolution.resolved_by
        resolution.resolved_at = utcnow()
        self._pending_conflicts.pop(conflict_id, None)

        self.logger.info(f"Resolved conflict {conflict_id} on {file_id} with {strategy.value}")
        return content

    async def _merge_with_markers(self, file_id: str, conflicting_versions: List[int]) -> str:
        # Textual merge only: both sides are kept between conflict markers
        if not conflicting_versions:
            raise InvalidArgumentError("Merge resolution needs at least one conflicting version")

        conflict_version = conflicting_versions[0]
        current_content = await self.get_current_content(file_id)
        conflict_content = await self.get_content_at_version(file_id, conflict_version)

        return (
            f"<<<<<<< Current\n{current_content}\n"
            f"=======\n{conflict_content}\n"
            f">>>>>>> Version {conflict_version}\n"
        )
