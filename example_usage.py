"""
Example usage of the PRP change tracker.

This demonstrates recording versions of a document, browsing its history,
rendering diffs, resolving a conflicting edit and rolling back.
"""

import asyncio
import tempfile
from pathlib import Path

from prp_tracker import ChangeTracker, TrackerConfig
from prp_tracker.core.models import ResolutionStrategy, RollbackOptions
from prp_tracker.tools import execute_action, get_all_tools


DRAFT = """# Checkout redesign
## Goal
Reduce checkout abandonment.
## Scope
Web only."""

REVISED = """# Checkout redesign
## Goal
Reduce checkout abandonment by 15%.
## Scope
Web only."""


async def example_change_tracking(base_dir: Path):
    """Example of recording and inspecting document versions."""

    tracker = ChangeTracker(TrackerConfig(base_dir=base_dir))
    await tracker.initialize()

    print("Recording versions...")
    created = await tracker.record_change("checkout", "create", "", DRAFT, "Initial draft", author="dana")
    updated = await tracker.record_change("checkout", "update", DRAFT, REVISED, author="lee")

    print(f"✓ Version {created.version}: {created.description}")
    print(f"✓ Version {updated.version}: {updated.description}")

    print("\n=== Unified Diff ===")
    print(await tracker.generate_diff("checkout", 1, 2))

    print("=== Conflict Check ===")
    # Someone edited the goal starting from version 1
    incoming = DRAFT.replace("abandonment.", "abandonment on mobile.")
    conflict = await tracker.detect_conflicts("checkout", 1, incoming)

    if conflict:
        print(f"Conflict {conflict.conflict_id} against versions {conflict.conflicting_versions}")
        conflict.resolution = ResolutionStrategy.MERGE
        print(await tracker.resolve_conflict(conflict.conflict_id, conflict, "dana"))

    print("=== Rollback ===")
    result = await tracker.rollback_to_version(
        "checkout", RollbackOptions(target_version=1, reason="metric not agreed yet")
    )
    print(f"✓ Version {result.change_record.version}: {result.change_record.description}")

    print("\n=== Version History ===")
    page = await tracker.get_change_history("checkout", limit=5)
    for change in page.changes:
        print(f"• v{change.version} {change.change_type.value}: {change.description} "
              f"({change.timestamp.strftime('%H:%M:%S')})")

    trail = await tracker.get_audit_trail("checkout")
    print(f"\nAuthors: {', '.join(trail.authors)}; changes by type: {trail.change_types}")

    return tracker


async def example_tool_usage(tracker: ChangeTracker):
    """Example of running named storage actions."""

    print("\n=== Storage Actions ===")

    registry = get_all_tools()
    for tool_name in registry.list_tools():
        print(f"• {tool_name}: {registry.get_tool(tool_name).description}")

    result = await execute_action("get_change_history", {"fileId": "checkout", "historyLimit": 2}, tracker)
    print(f"\nget_change_history -> {result.data['pagination']}")

    result = await execute_action("generate_diff", {"fileId": "checkout", "fromVersion": 1, "toVersion": 9}, tracker)
    print(f"generate_diff with a missing version -> {result.to_response()}")


async def main():
    with tempfile.TemporaryDirectory() as tmp:
        tracker = await example_change_tracking(Path(tmp))
        await example_tool_usage(tracker)


if __name__ == "__main__":
    print("PRP Change Tracker Example")
    print("==========================")

    asyncio.run(main())

    print("\nTo use the command line instead, try:")
    print("  prp-tracker record checkout --after draft.md -t create -m 'Initial draft'")
    print("  prp-tracker history checkout")
    print("  prp-tracker diff checkout 1 2 --format side-by-side")
