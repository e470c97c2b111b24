"""
Tests for the change tracker.

Covers:
- Version assignment and metadata
- History filtering, ordering and pagination
- Diff rendering between stored versions
- Rollback as a recorded update
- Conflict detection and resolution strategies
- Audit trail
- Retention cap and archive
- Persistence across restarts
- Concurrent writers
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone

import pytest

from prp_tracker.config import TrackerConfig
from prp_tracker.core.errors import (
    InvalidArgumentError,
    NotFoundError,
    StorageIOError,
    UnsupportedError,
)
from prp_tracker.core.models import (
    ChangeKind,
    ConflictResolution,
    LineChangeType,
    ResolutionStrategy,
    RollbackOptions,
    TrackerState,
)
from prp_tracker.version.change_tracker import ChangeTracker
from prp_tracker.version.history_store import KeyedLock


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

class TestRecordChange:
    @pytest.mark.asyncio
    async def test_create_record_metadata(self, tracker):
        record = await tracker.record_change("doc1", "create", "", "line1\nline2", "init")

        assert record.version == 1
        assert record.file_id == "doc1"
        assert record.change_type == ChangeKind.CREATE
        assert record.description == "init"
        assert record.metadata.lines_before == 1
        assert record.metadata.lines_after == 2
        assert record.metadata.size_before == 0
        assert record.metadata.size_after == len("line1\nline2")
        assert record.metadata.hash_before is None
        assert record.metadata.hash_after == hashlib.sha256(b"line1\nline2").hexdigest()

    @pytest.mark.asyncio
    async def test_update_generates_description(self, tracker):
        await tracker.record_change("doc1", "create", "", "line1\nline2", "init")
        record = await tracker.record_change("doc1", "update", "line1\nline2", "line1\nline2 changed", "")

        assert record.version == 2
        assert record.description == "Updated: +0 -0 ~1"
        assert len(record.changes) == 1
        change = record.changes[0]
        assert change.type == LineChangeType.MODIFICATION
        assert change.line_start == 2
        assert change.line_end == 2
        assert change.content_before == "line2"
        assert change.content_after == "line2 changed"

    @pytest.mark.asyncio
    async def test_default_descriptions_per_kind(self, tracker):
        created = await tracker.record_change("doc1", ChangeKind.CREATE, "", "a")
        restored = await tracker.record_change("doc1", ChangeKind.RESTORE, "a", "b")
        deleted = await tracker.record_change("doc1", ChangeKind.DELETE, "b", "")

        assert created.description == "File created"
        assert restored.description == "File restored from backup"
        assert deleted.description == "File deleted"
        assert deleted.metadata.hash_after is None

    @pytest.mark.asyncio
    async def test_versions_are_sequential_per_file(self, tracker):
        versions = []
        for i in range(5):
            record = await tracker.record_change("doc1", "update", str(i), str(i + 1))
            versions.append(record.version)
        other = await tracker.record_change("doc2", "create", "", "x")

        assert versions == [1, 2, 3, 4, 5]
        assert other.version == 1

    @pytest.mark.asyncio
    async def test_record_ids_are_unique(self, tracker):
        first = await tracker.record_change("doc1", "create", "", "a")
        second = await tracker.record_change("doc1", "update", "a", "b")
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_diff_generation_disabled(self, tracker_config):
        tracker_config.enable_diff_generation = False
        tracker = ChangeTracker(tracker_config)

        record = await tracker.record_change("doc1", "update", "a", "b")

        assert record.changes == []
        assert record.description == "Updated: +0 -0 ~0"

    @pytest.mark.asyncio
    async def test_rejects_empty_file_id(self, tracker):
        with pytest.raises(InvalidArgumentError):
            await tracker.record_change("", "create", "", "a")

    @pytest.mark.asyncio
    async def test_rejects_path_in_file_id(self, tracker):
        with pytest.raises(InvalidArgumentError):
            await tracker.record_change("../escape", "create", "", "a")

    @pytest.mark.asyncio
    async def test_rejects_unknown_change_type(self, tracker):
        with pytest.raises(InvalidArgumentError, match="rename"):
            await tracker.record_change("doc1", "rename", "", "a")

    @pytest.mark.asyncio
    async def test_change_log_written_to_disk(self, tracker, tracker_config):
        await tracker.record_change("doc1", "create", "", "hello", "init")

        log_file = tracker_config.changes_path / "doc1_changes.json"
        data = json.loads(log_file.read_text())

        assert len(data) == 1
        assert data[0]["fileId"] == "doc1"
        assert data[0]["changeType"] == "create"
        assert data[0]["metadata"]["linesAfter"] == 1
        assert "hashBefore" not in data[0]["metadata"]

    @pytest.mark.asyncio
    async def test_failed_write_leaves_history_unchanged(self, tracker):
        await tracker.record_change("doc1", "create", "", "a")

        def fail(*args):
            raise StorageIOError("disk full")

        tracker.repository.write_history = fail

        with pytest.raises(StorageIOError):
            await tracker.record_change("doc1", "update", "a", "b")

        assert await tracker.get_current_version("doc1") == 1
        assert await tracker.get_current_content("doc1") == "a"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestInitialization:
    @pytest.mark.asyncio
    async def test_lazy_initialization(self, tracker_config):
        tracker = ChangeTracker(tracker_config)
        assert tracker.state == TrackerState.UNINITIALIZED

        await tracker.get_change_history("doc1")

        assert tracker.state == TrackerState.READY
        assert tracker_config.changes_path.is_dir()
        assert (tracker_config.changes_path / "archive").is_dir()

    @pytest.mark.asyncio
    async def test_concurrent_initialize_loads_once(self, tracker_config):
        tracker = ChangeTracker(tracker_config)
        calls = []
        original = tracker.repository.load_all

        def counting_load():
            calls.append(1)
            return original()

        tracker.repository.load_all = counting_load

        await asyncio.gather(*(tracker.initialize() for _ in range(5)))

        assert len(calls) == 1
        assert tracker.state == TrackerState.READY


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class TestChangeHistory:
    async def _record_five(self, tracker):
        authors = ["alice", "bob", "alice", "carol", "alice"]
        content = ""
        for i, author in enumerate(authors):
            kind = "create" if i == 0 else "update"
            await tracker.record_change("doc1", kind, content, f"v{i + 1}", author=author)
            content = f"v{i + 1}"

    @pytest.mark.asyncio
    async def test_newest_first(self, tracker):
        await self._record_five(tracker)

        page = await tracker.get_change_history("doc1")

        assert [c.version for c in page.changes] == [5, 4, 3, 2, 1]
        assert page.total == 5
        assert page.has_more is False
        timestamps = [c.timestamp for c in page.changes]
        assert timestamps == sorted(timestamps, reverse=True)

    @pytest.mark.asyncio
    async def test_pagination(self, tracker):
        await self._record_five(tracker)

        first = await tracker.get_change_history("doc1", limit=2)
        last = await tracker.get_change_history("doc1", limit=2, offset=4)

        assert [c.version for c in first.changes] == [5, 4]
        assert first.total == 5
        assert first.has_more is True
        assert [c.version for c in last.changes] == [1]
        assert last.has_more is False

    @pytest.mark.asyncio
    async def test_offset_past_end(self, tracker):
        await self._record_five(tracker)

        page = await tracker.get_change_history("doc1", limit=3, offset=10)

        assert page.changes == []
        assert page.total == 5
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_version_range_filter(self, tracker):
        await self._record_five(tracker)

        page = await tracker.get_change_history("doc1", from_version=2, to_version=4)

        assert [c.version for c in page.changes] == [4, 3, 2]
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_author_and_type_filters(self, tracker):
        await self._record_five(tracker)

        by_alice = await tracker.get_change_history("doc1", author="alice")
        creates = await tracker.get_change_history("doc1", change_type="create")
        alice_updates = await tracker.get_change_history("doc1", author="alice", change_type=ChangeKind.UPDATE)

        assert [c.version for c in by_alice.changes] == [5, 3, 1]
        assert [c.version for c in creates.changes] == [1]
        assert [c.version for c in alice_updates.changes] == [5, 3]

    @pytest.mark.asyncio
    async def test_unknown_file_is_empty(self, tracker):
        page = await tracker.get_change_history("missing")

        assert page.changes == []
        assert page.total == 0
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_negative_offset_rejected(self, tracker):
        with pytest.raises(InvalidArgumentError):
            await tracker.get_change_history("doc1", offset=-1)


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------

class TestGenerateDiff:
    @pytest.mark.asyncio
    async def test_unified_diff(self, seeded_tracker):
        diff = await seeded_tracker.generate_diff("doc1", 1, 2)
        lines = diff.splitlines()

        assert lines[0].startswith("--- Version 1 (")
        assert lines[1].startswith("+++ Version 2 (")
        assert lines[2:] == [" line1", "-line2", "+line2 changed"]

    @pytest.mark.asyncio
    async def test_same_version_has_no_changes(self, seeded_tracker):
        diff = await seeded_tracker.generate_diff("doc1", 2, 2, "unified")
        body = diff.splitlines()[2:]

        assert body
        assert [line for line in body if line.startswith(("+", "-"))] == []

    @pytest.mark.asyncio
    async def test_side_by_side_diff(self, seeded_tracker):
        diff = await seeded_tracker.generate_diff("doc1", 1, 2, "side-by-side")
        lines = diff.splitlines()

        assert lines[0] == "Version 1 | Version 2"
        assert lines[1] == f"{'-' * 40} | {'-' * 40}"
        assert lines[3] == f"{'line2':<40} | {'line2 changed':<40}"

    @pytest.mark.asyncio
    async def test_html_diff(self, tracker):
        await tracker.record_change("doc1", "create", "", "same\n<b>old</b>")
        await tracker.record_change("doc1", "update", "same\n<b>old</b>", "same\nnew & 'quoted'")

        diff = await tracker.generate_diff("doc1", 1, 2, "html")

        assert '<table class="diff-table">' in diff
        assert '<td class="unchanged">same</td>' in diff
        assert '<td class="deletion">-&lt;b&gt;old&lt;/b&gt;</td>' in diff
        assert '<td class="addition">+new &amp; &#x27;quoted&#x27;</td>' in diff

    @pytest.mark.asyncio
    async def test_missing_version(self, seeded_tracker):
        with pytest.raises(NotFoundError):
            await seeded_tracker.generate_diff("doc1", 1, 9)

    @pytest.mark.asyncio
    async def test_unsupported_format(self, seeded_tracker):
        with pytest.raises(UnsupportedError, match="xml"):
            await seeded_tracker.generate_diff("doc1", 1, 2, "xml")


# ---------------------------------------------------------------------------
# Content retrieval
# ---------------------------------------------------------------------------

class FakeContentSource:
    def __init__(self, versions):
        self.versions = versions

    async def get_current_content(self, file_id):
        return self.versions[max(self.versions)]

    async def get_content_at_version(self, file_id, version):
        return self.versions[version]


class TestContentRetrieval:
    @pytest.mark.asyncio
    async def test_snapshot_content(self, seeded_tracker):
        assert await seeded_tracker.get_content_at_version("doc1", 1) == "line1\nline2"
        assert await seeded_tracker.get_current_content("doc1") == "line1\nline2 changed"

    @pytest.mark.asyncio
    async def test_empty_document_has_empty_content(self, tracker):
        assert await tracker.get_current_content("missing") == ""

    @pytest.mark.asyncio
    async def test_content_source_fallback(self, tracker_config):
        tracker_config.store_snapshots = False
        source = FakeContentSource({1: "alpha", 2: "beta"})
        tracker = ChangeTracker(tracker_config, content_source=source)

        first = await tracker.record_change("doc1", "create", "", "alpha")
        await tracker.record_change("doc1", "update", "alpha", "beta")
        diff = await tracker.generate_diff("doc1", 1, 2)

        assert first.snapshot is None
        assert diff.splitlines()[2:] == ["-alpha", "+beta"]

    @pytest.mark.asyncio
    async def test_missing_snapshot_without_source(self, tracker_config):
        tracker_config.store_snapshots = False
        tracker = ChangeTracker(tracker_config)
        await tracker.record_change("doc1", "create", "", "alpha")

        with pytest.raises(NotFoundError, match="No content stored"):
            await tracker.get_content_at_version("doc1", 1)


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_with_reason(self, seeded_tracker):
        result = await seeded_tracker.rollback_to_version(
            "doc1", RollbackOptions(target_version=1, reason="bad release")
        )

        assert result.content == "line1\nline2"
        assert result.change_record.version == 3
        assert result.change_record.change_type == ChangeKind.UPDATE
        assert result.change_record.description == "Rollback to v1: bad release"
        assert await seeded_tracker.get_current_content("doc1") == "line1\nline2"

    @pytest.mark.asyncio
    async def test_rollback_default_description(self, seeded_tracker):
        result = await seeded_tracker.rollback_to_version("doc1", RollbackOptions(target_version=1))
        assert result.change_record.description == "Rollback to version 1"

    @pytest.mark.asyncio
    async def test_rollback_keeps_history(self, seeded_tracker):
        await seeded_tracker.rollback_to_version("doc1", RollbackOptions(target_version=1))

        page = await seeded_tracker.get_change_history("doc1")

        assert [c.version for c in page.changes] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_rollback_to_missing_version(self, seeded_tracker):
        with pytest.raises(NotFoundError):
            await seeded_tracker.rollback_to_version("doc1", RollbackOptions(target_version=7))


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

BASE = "a\nb\nc\nd"
CURRENT = "A\nb\nc\nd"


class TestConflicts:
    async def _two_versions(self, tracker):
        await tracker.record_change("doc1", "create", "", BASE)
        await tracker.record_change("doc1", "update", BASE, CURRENT)

    @pytest.mark.asyncio
    async def test_no_conflict_on_latest_version(self, seeded_tracker):
        assert await seeded_tracker.detect_conflicts("doc1", 2, "incoming text") is None

    @pytest.mark.asyncio
    async def test_non_overlapping_edits(self, tracker):
        await self._two_versions(tracker)

        assert await tracker.detect_conflicts("doc1", 1, "a\nb\nc\nD") is None

    @pytest.mark.asyncio
    async def test_overlapping_edits(self, tracker):
        await self._two_versions(tracker)

        conflict = await tracker.detect_conflicts("doc1", 1, "X\nb\nc\nd")

        assert conflict is not None
        assert conflict.file_id == "doc1"
        assert conflict.base_version == 1
        assert conflict.conflicting_versions == [2]
        assert conflict.resolution == ResolutionStrategy.MANUAL
        assert tracker.get_pending_conflict(conflict.conflict_id) is conflict

    @pytest.mark.asyncio
    async def test_unknown_base_version(self, tracker):
        await self._two_versions(tracker)

        with pytest.raises(NotFoundError):
            await tracker.detect_conflicts("doc1", 5, "x")

    @pytest.mark.asyncio
    async def test_accept_current(self, tracker):
        await self._two_versions(tracker)
        conflict = await tracker.detect_conflicts("doc1", 1, "X\nb\nc\nd")
        conflict.resolution = ResolutionStrategy.ACCEPT_CURRENT

        content = await tracker.resolve_conflict(conflict.conflict_id, conflict, "reviewer")

        assert content == CURRENT
        assert conflict.resolved_by == "reviewer"
        assert conflict.resolved_at is not None
        with pytest.raises(NotFoundError):
            tracker.get_pending_conflict(conflict.conflict_id)

    @pytest.mark.asyncio
    async def test_accept_incoming_requires_content(self, tracker):
        await self._two_versions(tracker)
        conflict = await tracker.detect_conflicts("doc1", 1, "X\nb\nc\nd")
        conflict.resolution = "accept-incoming"

        with pytest.raises(InvalidArgumentError, match="Merged content required"):
            await tracker.resolve_conflict(conflict.conflict_id, conflict)

        conflict.merged_content = "X\nb\nc\nd"
        assert await tracker.resolve_conflict(conflict.conflict_id, conflict) == "X\nb\nc\nd"

    @pytest.mark.asyncio
    async def test_manual_returns_merged_content(self, tracker):
        await self._two_versions(tracker)
        conflict = await tracker.detect_conflicts("doc1", 1, "X\nb\nc\nd")

        with pytest.raises(InvalidArgumentError):
            await tracker.resolve_conflict(conflict.conflict_id, conflict)

        conflict.merged_content = "merged by hand"
        assert await tracker.resolve_conflict(conflict.conflict_id, conflict) == "merged by hand"

    @pytest.mark.asyncio
    async def test_merge_wraps_with_markers(self, tracker):
        await self._two_versions(tracker)
        resolution = ConflictResolution(
            conflict_id="c1",
            file_id="doc1",
            base_version=1,
            conflicting_versions=[1],
            resolution=ResolutionStrategy.MERGE,
        )

        content = await tracker.resolve_conflict("c1", resolution)

        assert content == f"<<<<<<< Current\n{CURRENT}\n=======\n{BASE}\n>>>>>>> Version 1\n"

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, tracker):
        await self._two_versions(tracker)
        resolution = ConflictResolution(
            conflict_id="c1", file_id="doc1", base_version=1, conflicting_versions=[2], resolution="rebase"
        )

        with pytest.raises(UnsupportedError, match="rebase"):
            await tracker.resolve_conflict("c1", resolution)

    @pytest.mark.asyncio
    async def test_unresolved_conflicts_are_capped(self, tracker):
        await self._two_versions(tracker)
        tracker.max_pending_conflicts = 2

        conflicts = [await tracker.detect_conflicts("doc1", 1, f"X{i}\nb\nc\nd") for i in range(3)]

        with pytest.raises(NotFoundError):
            tracker.get_pending_conflict(conflicts[0].conflict_id)
        assert tracker.get_pending_conflict(conflicts[1].conflict_id) is conflicts[1]
        assert tracker.get_pending_conflict(conflicts[2].conflict_id) is conflicts[2]


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_summary(self, tracker):
        await tracker.record_change("doc1", "create", "", "a", author="alice")
        await tracker.record_change("doc1", "update", "a", "b", author="bob")
        await tracker.record_change("doc1", "update", "b", "c", author="alice")
        await tracker.record_change("doc1", "delete", "c", "")

        trail = await tracker.get_audit_trail("doc1")

        assert trail.file_id == "doc1"
        assert trail.total_changes == 4
        assert sorted(trail.authors) == ["alice", "bob"]
        assert trail.change_types == {"create": 1, "update": 2, "delete": 1}
        assert [c.version for c in trail.timeline] == [1, 2, 3, 4]
        timestamps = [c.timestamp for c in trail.timeline]
        assert timestamps == sorted(timestamps)

    @pytest.mark.asyncio
    async def test_date_bounds_are_inclusive(self, tracker):
        records = []
        content = ""
        for i in range(4):
            records.append(await tracker.record_change("doc1", "update", content, str(i)))
            content = str(i)

        trail = await tracker.get_audit_trail("doc1", records[1].timestamp, records[2].timestamp)

        assert [c.version for c in trail.timeline] == [2, 3]

    @pytest.mark.asyncio
    async def test_unknown_file(self, tracker):
        trail = await tracker.get_audit_trail("missing")

        assert trail.total_changes == 0
        assert trail.authors == []
        assert trail.change_types == {}


# ---------------------------------------------------------------------------
# Retention and archive
# ---------------------------------------------------------------------------

class TestRetention:
    @pytest.mark.asyncio
    async def test_oldest_records_archived(self, tmp_path):
        config = TrackerConfig(base_dir=tmp_path, max_version_history=3)
        tracker = ChangeTracker(config)

        content = ""
        for i in range(1, 6):
            await tracker.record_change("doc1", "update", content, f"content {i}")
            content = f"content {i}"

        page = await tracker.get_change_history("doc1")
        assert [c.version for c in page.changes] == [5, 4, 3]
        assert await tracker.list_archived_versions("doc1") == [1, 2]

        archived = await tracker.get_archived_change("doc1", 1)
        assert archived.version == 1
        assert archived.snapshot == "content 1"

        on_disk = json.loads((config.changes_path / "doc1_changes.json").read_text())
        assert [r["version"] for r in on_disk] == [3, 4, 5]

        with pytest.raises(NotFoundError):
            await tracker.get_change("doc1", 1)

    @pytest.mark.asyncio
    async def test_versions_continue_after_eviction_and_restart(self, tmp_path):
        config = TrackerConfig(base_dir=tmp_path, max_version_history=2)
        tracker = ChangeTracker(config)
        for i in range(4):
            await tracker.record_change("doc1", "update", "", str(i))

        restarted = ChangeTracker(config)
        record = await restarted.record_change("doc1", "update", "3", "4")

        assert record.version == 5

    @pytest.mark.asyncio
    async def test_missing_archive_entry(self, tracker):
        with pytest.raises(NotFoundError):
            await tracker.get_archived_change("doc1", 1)

    @pytest.mark.asyncio
    async def test_corrupt_archive_entry(self, tracker, tracker_config):
        archive = tracker_config.changes_path / "archive"
        (archive / "doc1_1.json").write_text("{bad")
        (archive / "doc1_2.json").write_text('{"id": "x"}')

        with pytest.raises(StorageIOError):
            await tracker.get_archived_change("doc1", 1)
        with pytest.raises(StorageIOError):
            await tracker.get_archived_change("doc1", 2)

    @pytest.mark.asyncio
    async def test_archive_listing_matches_ids_literally(self, tmp_path):
        tracker = ChangeTracker(TrackerConfig(base_dir=tmp_path, max_version_history=1))
        for file_id in ("ab", "doc[1]", "doc1"):
            for i in range(3):
                await tracker.record_change(file_id, "update", "", str(i))

        assert await tracker.list_archived_versions("a*") == []
        assert await tracker.list_archived_versions("ab") == [1, 2]
        assert await tracker.list_archived_versions("doc[1]") == [1, 2]
        assert await tracker.list_archived_versions("doc?") == []


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    @pytest.mark.asyncio
    async def test_history_survives_restart(self, seeded_tracker, tracker_config):
        await seeded_tracker.record_change("doc2", "create", "", "other")
        before = (await seeded_tracker.get_change_history("doc1")).changes

        restarted = ChangeTracker(tracker_config)
        await restarted.initialize()
        after = (await restarted.get_change_history("doc1")).changes

        assert [c.version for c in after] == [c.version for c in before]
        assert [c.change_type for c in after] == [c.change_type for c in before]
        assert [c.metadata for c in after] == [c.metadata for c in before]
        assert [c.changes for c in after] == [c.changes for c in before]
        assert [c.timestamp for c in after] == [c.timestamp for c in before]
        assert await restarted.list_documents() == ["doc1", "doc2"]
        assert await restarted.get_current_content("doc1") == "line1\nline2 changed"

    @pytest.mark.asyncio
    async def test_corrupt_log_is_skipped(self, seeded_tracker, tracker_config):
        (tracker_config.changes_path / "broken_changes.json").write_text("{not json")
        (tracker_config.changes_path / "object_changes.json").write_text('{"id": "x"}')

        restarted = ChangeTracker(tracker_config)
        await restarted.initialize()

        assert restarted.state == TrackerState.READY
        assert await restarted.get_current_version("doc1") == 2

    @pytest.mark.asyncio
    async def test_loads_legacy_records(self, tracker_config):
        tracker_config.changes_path.mkdir(parents=True)
        legacy = [{
            "id": "abc",
            "fileId": "legacy",
            "version": 1,
            "timestamp": "2024-03-01T10:00:00.000Z",
            "description": "File created",
            "changeType": "create",
            "changes": [],
            "metadata": {"sizeBefore": 0, "sizeAfter": 3, "linesBefore": 1, "linesAfter": 1},
        }]
        (tracker_config.changes_path / "legacy_changes.json").write_text(json.dumps(legacy))

        tracker = ChangeTracker(tracker_config)
        record = await tracker.get_change("legacy", 1)

        assert record.change_type == ChangeKind.CREATE
        assert record.snapshot is None
        assert record.timestamp.year == 2024

    @pytest.mark.asyncio
    async def test_naive_timestamps_load_as_utc(self, tracker_config):
        tracker_config.changes_path.mkdir(parents=True)
        legacy = [{
            "id": "abc",
            "fileId": "legacy",
            "version": 1,
            "timestamp": "2024-03-01T10:00:00",
            "changeType": "create",
        }]
        (tracker_config.changes_path / "legacy_changes.json").write_text(json.dumps(legacy))

        tracker = ChangeTracker(tracker_config)
        await tracker.record_change("legacy", "update", "", "new")
        page = await tracker.get_change_history("legacy")
        trail = await tracker.get_audit_trail("legacy", datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert [c.version for c in page.changes] == [2, 1]
        assert page.changes[1].timestamp == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        assert [c.version for c in trail.timeline] == [1, 2]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_writes_get_unique_versions(self, tracker):
        records = await asyncio.gather(*(
            tracker.record_change("doc1", "update", "", f"edit {i}") for i in range(20)
        ))

        assert sorted(r.version for r in records) == list(range(1, 21))
        assert await tracker.get_current_version("doc1") == 20

        restarted = ChangeTracker(tracker.config)
        assert await restarted.get_current_version("doc1") == 20

    @pytest.mark.asyncio
    async def test_idle_file_locks_are_released(self, tracker):
        await asyncio.gather(*(
            tracker.record_change(f"doc{i % 3}", "update", "", f"edit {i}") for i in range(9)
        ))

        assert len(tracker._file_locks) == 0


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_lock_dropped_after_last_holder(self):
        locks = KeyedLock()
        order = []

        async def hold(name):
            async with locks("doc1"):
                order.append(f"{name} in")
                await asyncio.sleep(0)
                order.append(f"{name} out")

        async with locks("doc1"):
            waiter = asyncio.ensure_future(hold("second"))
            await asyncio.sleep(0)
            assert len(locks) == 1
            assert order == []

        await waiter

        assert order == ["second in", "second out"]
        assert len(locks) == 0
