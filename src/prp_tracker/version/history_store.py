"""
In-memory history store and on-disk change log repository.

The store holds the active records per document. The repository reads and
writes the JSON change logs and the archive of evicted records. Repository
methods are blocking and are run in an executor by the tracker.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..core.errors import InvalidArgumentError, NotFoundError, StorageIOError
from ..core.models import ChangeRecord


logger = logging.getLogger(__name__)

ARCHIVE_DIR_NAME = "archive"
CHANGE_LOG_SUFFIX = "_changes.json"


def validate_file_id(file_id: Any) -> str:
    """Reject ids that are empty or would escape the change directory."""
    if not isinstance(file_id, str) or not file_id.strip():
        raise InvalidArgumentError("fileId must be a non-empty string")
    if "/" in file_id or "\\" in file_id or file_id in (".", ".."):
        raise InvalidArgumentError(f"fileId contains path separators: {file_id!r}")
    return file_id


class ChangeHistoryStore:
    """
    Owned mapping of file id to its append-ordered change records.

    Readers get tuple snapshots, so a concurrent replace never changes a list
    that is being iterated.
    """

    def __init__(self):
        self._history: Dict[str, List[ChangeRecord]] = {}

    def get(self, file_id: str) -> Tuple[ChangeRecord, ...]:
        return tuple(self._history.get(file_id, ()))

    def replace(self, file_id: str, records: Iterable[ChangeRecord]) -> None:
        self._history[file_id] = list(records)

    def extend(self, file_id: str, records: Iterable[ChangeRecord]) -> None:
        self._history.setdefault(file_id, []).extend(records)

    def sort_by_version(self) -> None:
        for records in self._history.values():
            records.sort(key=lambda r: r.version)

    def file_ids(self) -> List[str]:
        return sorted(file_id for file_id, records in self._history.items() if records)

    def clear(self) -> None:
        self._history.clear()

    def __contains__(self, file_id: str) -> bool:
        return bool(self._history.get(file_id))

    def __len__(self) -> int:
        return len(self._history)


class KeyedLock:
    """
    One asyncio lock per key, created on first use.

    A key's lock is dropped once nobody holds or waits on it, so the map only
    holds keys that are in use.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def __call__(self, key: str) -> AsyncContextManager[None]:
        return self._hold(key)

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ChangeLogRepository:
    """Reads and writes per-document JSON change logs and archived records."""

    def __init__(self, changes_path: Path):
        self.changes_path = Path(changes_path)
        self.archive_path = self.changes_path / ARCHIVE_DIR_NAME

    def ensure_directories(self) -> None:
        try:
            self.archive_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Could not create change directory {self.changes_path}: {e}") from e

    def log_file(self, file_id: str) -> Path:
        return self.changes_path / f"{file_id}{CHANGE_LOG_SUFFIX}"

    def archive_file(self, file_id: str, version: int) -> Path:
        return self.archive_path / f"{file_id}_{version}.json"

    def load_all(self) -> List[ChangeRecord]:
        """
        Load records from every JSON file in the change directory.

        Files that cannot be read or parsed are skipped with a warning so one
        corrupt log does not block startup.
        """
        records: List[ChangeRecord] = []

        for path in sorted(self.changes_path.glob("*.json")):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if not isinstance(data, list):
                    raise ValueError("change log is not a JSON array")
                records.extend(ChangeRecord.from_dict(item) for item in data)
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping unreadable change log {path.name}: {e}")

        return records

    def write_history(self, file_id: str, records: List[ChangeRecord]) -> None:
        """Rewrite a document's change log with the given active records."""
        self._write_json(self.log_file(file_id), [r.to_dict() for r in records])

    def write_archive(self, record: ChangeRecord) -> Path:
        path = self.archive_file(record.file_id, record.version)
        self._write_json(path, record.to_dict())
        return path

    def read_archive(self, file_id: str, version: int) -> ChangeRecord:
        path = self.archive_file(file_id, version)
        if not path.exists():
            raise NotFoundError(f"Version {version} of {file_id} is not archived")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                return ChangeRecord.from_dict(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            raise StorageIOError(f"Could not read archive {path}: {e}") from e

    def archived_versions(self, file_id: str) -> List[int]:
        # File ids may contain glob metacharacters, so match names literally
        versions = []
        prefix = f"{file_id}_"
        for path in self.archive_path.glob("*.json"):
            if not path.stem.startswith(prefix):
                continue
            suffix = path.stem[len(prefix):]
            if suffix.isdigit():
                versions.append(int(suffix))
        return sorted(versions)

    def _write_json(self, path: Path, payload: Any) -> None:
        # Write to a sibling temp file and rename so a failed write never
        # leaves a truncated log behind
        tmp_name: Optional[str] = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageIOError(f"Could not write {path}: {e}") from e
