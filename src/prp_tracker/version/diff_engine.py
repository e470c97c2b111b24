"""
Diff engine for comparing PRP document versions.

Computes line-level deltas between two content strings and renders them as
unified, side-by-side or HTML diffs. Lines are compared by index by default;
the sequence algorithm aligns them with difflib instead.
"""

from __future__ import annotations

import difflib
import html
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import zip_longest
from typing import Dict, Iterable, List, Optional, Union

from ..core.errors import UnsupportedError
from ..core.models import ChangeKind, DetailedChange, DiffFormat, LineChangeType


class DiffAlgorithm(Enum):
    """Line alignment strategies."""
    POSITIONAL = "positional"
    SEQUENCE = "sequence"


@dataclass
class AlignedLine:
    """A pair of lines compared against each other (either side may be absent)."""

    before_no: Optional[int] = None
    before: Optional[str] = None
    after_no: Optional[int] = None
    after: Optional[str] = None

    @property
    def unchanged(self) -> bool:
        return self.before is not None and self.before == self.after


@dataclass
class DiffLabels:
    """Version labels shown in rendered diff headers."""

    from_version: int
    to_version: int
    from_timestamp: Optional[datetime] = None
    to_timestamp: Optional[datetime] = None


def split_lines(content: str) -> List[str]:
    """Split on newlines; an empty document is a single empty line."""
    return (content or "").split("\n")


def _preview(text: str, width: int = 50) -> str:
    return text if len(text) <= width else f"{text[:width]}..."


class DiffEngine:
    """
    Line diff calculator and renderer.

    The positional algorithm compares line i of one version with line i of the
    other, so a single inserted line shows up as modifications of every line
    after it. The sequence algorithm avoids that cascade.
    """

    column_width = 40

    def __init__(self, algorithm: Union[DiffAlgorithm, str] = DiffAlgorithm.POSITIONAL):
        try:
            self.algorithm = DiffAlgorithm(algorithm)
        except ValueError:
            raise UnsupportedError(f"Unknown diff algorithm: {algorithm}") from None

    def align(self, before_lines: List[str], after_lines: List[str]) -> List[AlignedLine]:
        """Pair up lines of two versions according to the configured algorithm."""
        if self.algorithm == DiffAlgorithm.SEQUENCE:
            return self._align_sequence(before_lines, after_lines)
        return self._align_positional(before_lines, after_lines)

    def _align_positional(self, before_lines: List[str], after_lines: List[str]) -> List[AlignedLine]:
        rows = []
        for i in range(max(len(before_lines), len(after_lines))):
            before = before_lines[i] if i < len(before_lines) else None
            after = after_lines[i] if i < len(after_lines) else None
            rows.append(AlignedLine(
                before_no=i + 1 if before is not None else None,
                before=before,
                after_no=i + 1 if after is not None else None,
                after=after,
            ))
        return rows

    def _align_sequence(self, before_lines: List[str], after_lines: List[str]) -> List[AlignedLine]:
        matcher = difflib.SequenceMatcher(None, before_lines, after_lines, autojunk=False)
        rows = []

        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == 'equal':
                for i, j in zip(range(i1, i2), range(j1, j2)):
                    rows.append(AlignedLine(i + 1, before_lines[i], j + 1, after_lines[j]))
            elif tag == 'delete':
                for i in range(i1, i2):
                    rows.append(AlignedLine(before_no=i + 1, before=before_lines[i]))
            elif tag == 'insert':
                for j in range(j1, j2):
                    rows.append(AlignedLine(after_no=j + 1, after=after_lines[j]))
            elif tag == 'replace':
                for i, j in zip_longest(range(i1, i2), range(j1, j2)):
                    rows.append(AlignedLine(
                        before_no=i + 1 if i is not None else None,
                        before=before_lines[i] if i is not None else None,
                        after_no=j + 1 if j is not None else None,
                        after=after_lines[j] if j is not None else None,
                    ))

        return rows

    def detailed_changes(self, content_before: str, content_after: str) -> List[DetailedChange]:
        """
        Calculate line-level changes between two content strings.

        Args:
            content_before: Original content
            content_after: Updated content

        Returns:
            One DetailedChange per differing line, in line order
        """
        changes = []

        for row in self.align(split_lines(content_before), split_lines(content_after)):
            if row.unchanged:
                continue

            if row.before is None:
                changes.append(DetailedChange(
                    type=LineChangeType.ADDITION,
                    line_start=row.after_no,
                    line_end=row.after_no,
                    content_after=row.after,
                    summary=f"Added line {row.after_no}: {_preview(row.after)}",
                ))
            elif row.after is None:
                changes.append(DetailedChange(
                    type=LineChangeType.DELETION,
                    line_start=row.before_no,
                    line_end=row.before_no,
                    content_before=row.before,
                    summary=f"Deleted line {row.before_no}: {_preview(row.before)}",
                ))
            else:
                changes.append(DetailedChange(
                    type=LineChangeType.MODIFICATION,
                    line_start=row.before_no,
                    line_end=row.before_no,
                    content_before=row.before,
                    content_after=row.after,
                    summary=f"Modified line {row.before_no}",
                ))

        return changes

    def summarize_changes(self, changes: Iterable[DetailedChange]) -> Dict[str, int]:
        """Count additions, deletions and modifications."""
        summary = {"additions": 0, "deletions": 0, "modifications": 0}
        for change in changes:
            if change.type == LineChangeType.ADDITION:
                summary["additions"] += 1
            elif change.type == LineChangeType.DELETION:
                summary["deletions"] += 1
            else:
                summary["modifications"] += 1
        return summary

    def describe(self, change_type: ChangeKind, changes: List[DetailedChange]) -> str:
        """Generate the default description for a recorded change."""
        if change_type == ChangeKind.CREATE:
            return "File created"
        if change_type == ChangeKind.DELETE:
            return "File deleted"
        if change_type == ChangeKind.RESTORE:
            return "File restored from backup"

        summary = self.summarize_changes(changes)
        return (
            f"Updated: +{summary['additions']} "
            f"-{summary['deletions']} ~{summary['modifications']}"
        )

    @staticmethod
    def has_conflicts(changes1: List[DetailedChange], changes2: List[DetailedChange]) -> bool:
        """Check whether any change in one list overlaps a change in the other."""
        return any(c1.overlaps(c2) for c1 in changes1 for c2 in changes2)

    def render(
        self,
        from_content: str,
        to_content: str,
        diff_format: Union[DiffFormat, str],
        labels: DiffLabels,
    ) -> str:
        """
        Render a diff between two content strings.

        Args:
            from_content: Content of the older side
            to_content: Content of the newer side
            diff_format: unified, side-by-side or html
            labels: Version numbers and timestamps for the header

        Returns:
            Rendered diff text
        """
        try:
            diff_format = DiffFormat(diff_format)
        except ValueError:
            raise UnsupportedError(f"Unsupported diff format: {diff_format}") from None

        from_lines = split_lines(from_content)
        to_lines = split_lines(to_content)

        if diff_format == DiffFormat.HTML:
            return self._render_html(from_lines, to_lines, labels)
        if diff_format == DiffFormat.SIDE_BY_SIDE:
            return self._render_side_by_side(from_lines, to_lines, labels)
        return self._render_unified(from_lines, to_lines, labels)

    def _render_unified(self, from_lines: List[str], to_lines: List[str], labels: DiffLabels) -> str:
        output = [
            f"--- Version {labels.from_version} ({_format_timestamp(labels.from_timestamp)})",
            f"+++ Version {labels.to_version} ({_format_timestamp(labels.to_timestamp)})",
        ]

        for row in self.align(from_lines, to_lines):
            if row.unchanged:
                output.append(f" {row.before}")
                continue
            if row.before is not None:
                output.append(f"-{row.before}")
            if row.after is not None:
                output.append(f"+{row.after}")

        return "\n".join(output) + "\n"

    def _render_side_by_side(self, from_lines: List[str], to_lines: List[str], labels: DiffLabels) -> str:
        width = self.column_width
        output = [
            f"Version {labels.from_version} | Version {labels.to_version}",
            f"{'-' * width} | {'-' * width}",
        ]

        # Rows stay index-aligned so both columns read as the full documents
        for i in range(max(len(from_lines), len(to_lines))):
            left = from_lines[i] if i < len(from_lines) else ""
            right = to_lines[i] if i < len(to_lines) else ""
            output.append(f"{left[:width]:<{width}} | {right[:width]:<{width}}")

        return "\n".join(output) + "\n"

    def _render_html(self, from_lines: List[str], to_lines: List[str], labels: DiffLabels) -> str:
        output = [
            '<div class="diff">',
            f"<h3>Version {labels.from_version} &rarr; Version {labels.to_version}</h3>",
            '<table class="diff-table">',
        ]

        for row in self.align(from_lines, to_lines):
            if row.unchanged:
                output.append(f'<tr><td class="unchanged">{_escape(row.before)}</td></tr>')
                continue
            if row.before is not None:
                output.append(f'<tr><td class="deletion">-{_escape(row.before)}</td></tr>')
            if row.after is not None:
                output.append(f'<tr><td class="addition">+{_escape(row.after)}</td></tr>')

        output.append("</table>")
        output.append("</div>")
        return "\n".join(output)


def _escape(text: str) -> str:
    return html.escape(text, quote=True)


def _format_timestamp(timestamp: Optional[datetime]) -> str:
    return timestamp.isoformat() if timestamp else "unknown"
