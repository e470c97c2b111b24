"""Shared fixtures for change tracker tests."""

import pytest
import pytest_asyncio

from prp_tracker.config import TrackerConfig
from prp_tracker.version.change_tracker import ChangeTracker


@pytest.fixture
def tracker_config(tmp_path):
    """Tracker configuration rooted in a temporary directory."""
    return TrackerConfig(base_dir=tmp_path / "data")


@pytest_asyncio.fixture
async def tracker(tracker_config):
    """An initialized tracker with empty history."""
    change_tracker = ChangeTracker(tracker_config)
    await change_tracker.initialize()
    return change_tracker


@pytest_asyncio.fixture
async def seeded_tracker(tracker):
    """Tracker holding two versions of doc1."""
    await tracker.record_change("doc1", "create", "", "line1\nline2", "init", author="alice")
    await tracker.record_change("doc1", "update", "line1\nline2", "line1\nline2 changed", "", author="bob")
    return tracker
