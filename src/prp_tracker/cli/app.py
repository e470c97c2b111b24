"""
Main CLI application for the PRP change tracker.

Provides a Typer-based command-line interface for recording document
versions and browsing their history, diffs and audit trail.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Coroutine, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from ..config import get_config_manager, load_config
from ..core.errors import ChangeTrackerError
from ..core.models import ChangeKind, ConflictResolution, DiffFormat, ResolutionStrategy, RollbackOptions
from ..version.change_tracker import ChangeTracker

# Initialize Typer app
app = typer.Typer(
    name="prp-tracker",
    help="Version history, diffs and rollback for PRP documents",
    add_completion=False,
    rich_markup_mode="rich"
)

# Global console for rich output
console = Console()

# Global state
base_dir_override: Optional[Path] = None
change_tracker: Optional[ChangeTracker] = None


def get_tracker() -> ChangeTracker:
    """Get or create the change tracker for this invocation."""
    global change_tracker
    if change_tracker is None:
        config = load_config()
        if base_dir_override is not None:
            config = dataclasses.replace(config, base_dir=base_dir_override)
        change_tracker = ChangeTracker(config)
    return change_tracker


def run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a tracker coroutine, turning tracker errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except ChangeTrackerError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _read_text(path: Optional[Path]) -> Optional[str]:
    if path is None:
        return None
    if not path.exists():
        console.print(f"[red]Error: File not found: {path}[/red]")
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8")


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        console.print(f"[red]Error: Invalid date: {value}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    base_dir: Optional[Path] = typer.Option(None, "--base-dir", "-d", help="Storage directory (overrides config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Track versions of PRP documents."""
    global base_dir_override, change_tracker
    base_dir_override = base_dir
    change_tracker = None

    level = "DEBUG" if verbose else load_config().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@app.command()
def record(
    file_id: str = typer.Argument(..., help="Document identifier"),
    after: Path = typer.Option(..., "--after", help="File holding the new content"),
    before: Optional[Path] = typer.Option(None, "--before", help="File holding the previous content (default: latest version)"),
    change_type: ChangeKind = typer.Option(ChangeKind.UPDATE, "--type", "-t", help="Kind of change"),
    message: str = typer.Option("", "--message", "-m", help="Change description"),
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Author of the change"),
) -> None:
    """
    Record a new version of a document.
    """
    tracker = get_tracker()
    content_after = _read_text(after)
    content_before = _read_text(before)

    async def _record():
        previous = content_before
        if previous is None:
            previous = await tracker.get_current_content(file_id)
        return await tracker.record_change(file_id, change_type, previous, content_after, message, author)

    change = run(_record())
    console.print(f"[green]Recorded {file_id} version {change.version}[/green] ({change.description})")


@app.command()
def history(
    file_id: str = typer.Argument(..., help="Document identifier"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of entries to show"),
    offset: int = typer.Option(0, "--offset", help="Entries to skip"),
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Filter by author"),
    change_type: Optional[ChangeKind] = typer.Option(None, "--type", "-t", help="Filter by change type"),
) -> None:
    """
    Show the change history of a document, newest first.
    """
    tracker = get_tracker()
    page = run(tracker.get_change_history(
        file_id, limit=limit, offset=offset, author=author, change_type=change_type
    ))

    if not page.changes:
        console.print("[yellow]No version history available[/yellow]")
        return

    history_table = Table(title=f"History of {file_id} ({page.total} changes)")
    history_table.add_column("Version", style="cyan", justify="right")
    history_table.add_column("Date", style="green")
    history_table.add_column("Type", style="magenta")
    history_table.add_column("Author", style="blue")
    history_table.add_column("Description")

    for change in page.changes:
        history_table.add_row(
            str(change.version),
            change.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            change.change_type.value,
            change.author or "-",
            change.description,
        )

    console.print(history_table)
    if page.has_more:
        console.print(f"[dim]More entries available, use --offset {offset + len(page.changes)}[/dim]")


@app.command()
def diff(
    file_id: str = typer.Argument(..., help="Document identifier"),
    version1: int = typer.Argument(..., help="Older version"),
    version2: int = typer.Argument(..., help="Newer version"),
    diff_format: DiffFormat = typer.Option(DiffFormat.UNIFIED, "--format", "-f", help="Diff format"),
    output_file: Optional[Path] = typer.Option(None, "--output", "-o", help="Save diff to file"),
) -> None:
    """
    Show differences between two versions of a document.
    """
    tracker = get_tracker()
    rendered = run(tracker.generate_diff(file_id, version1, version2, diff_format))

    if output_file:
        output_file.write_text(rendered, encoding="utf-8")
        console.print(f"[green]Diff saved to {output_file}[/green]")
        return

    if diff_format == DiffFormat.UNIFIED:
        console.print(Panel(
            Syntax(rendered, "diff", theme="monokai"),
            title=f"Diff v{version1} -> v{version2}",
        ))
    else:
        console.print(rendered, markup=False, highlight=False)


@app.command()
def rollback(
    file_id: str = typer.Argument(..., help="Document identifier"),
    version: int = typer.Argument(..., help="Version to restore"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Reason for the rollback"),
    output_file: Optional[Path] = typer.Option(None, "--output", "-o", help="Write restored content to file"),
) -> None:
    """
    Roll a document back to an earlier version.
    """
    tracker = get_tracker()
    result = run(tracker.rollback_to_version(file_id, RollbackOptions(target_version=version, reason=reason)))

    if output_file:
        output_file.write_text(result.content, encoding="utf-8")

    console.print(
        f"[green]Rolled back {file_id} to version {version}[/green] "
        f"(recorded as version {result.change_record.version})"
    )


@app.command()
def conflicts(
    file_id: str = typer.Argument(..., help="Document identifier"),
    base_version: int = typer.Argument(..., help="Version the edit started from"),
    incoming: Path = typer.Argument(..., help="File holding the edited content"),
) -> None:
    """
    Check whether an edit conflicts with newer versions.
    """
    tracker = get_tracker()
    incoming_content = _read_text(incoming)
    conflict = run(tracker.detect_conflicts(file_id, base_version, incoming_content))

    if conflict is None:
        console.print("[green]No conflicts detected[/green]")
        return

    console.print(Panel(
        json.dumps(conflict.to_dict(), indent=2),
        title="[red]Conflict detected[/red]",
        border_style="red",
    ))
    raise typer.Exit(2)


@app.command()
def resolve(
    file_id: str = typer.Argument(..., help="Document identifier"),
    strategy: ResolutionStrategy = typer.Option(..., "--strategy", "-s", help="Resolution strategy"),
    content_file: Optional[Path] = typer.Option(None, "--content", "-c", help="Incoming or merged content"),
    version: Optional[int] = typer.Option(None, "--version", help="Conflicting version for merge (default: latest)"),
    resolved_by: Optional[str] = typer.Option(None, "--by", help="Who resolves the conflict"),
    output_file: Optional[Path] = typer.Option(None, "--output", "-o", help="Write resolved content to file"),
) -> None:
    """
    Produce resolved content for a conflicting edit.
    """
    tracker = get_tracker()
    merged_content = _read_text(content_file)

    async def _resolve():
        conflicting = version or await tracker.get_current_version(file_id)
        resolution = ConflictResolution(
            conflict_id=f"cli-{file_id}",
            file_id=file_id,
            base_version=0,
            conflicting_versions=[conflicting] if conflicting else [],
            resolution=strategy,
            merged_content=merged_content,
        )
        return await tracker.resolve_conflict(resolution.conflict_id, resolution, resolved_by)

    content = run(_resolve())

    if output_file:
        output_file.write_text(content, encoding="utf-8")
        console.print(f"[green]Resolved content saved to {output_file}[/green]")
    else:
        console.print(content, markup=False, highlight=False)


@app.command()
def audit(
    file_id: str = typer.Argument(..., help="Document identifier"),
    from_date: Optional[str] = typer.Option(None, "--from", help="Start date (ISO format)"),
    to_date: Optional[str] = typer.Option(None, "--to", help="End date (ISO format)"),
) -> None:
    """
    Show the chronological audit trail of a document.
    """
    tracker = get_tracker()
    trail = run(tracker.get_audit_trail(file_id, _parse_date(from_date), _parse_date(to_date)))

    summary = (
        f"[bold]Changes:[/bold] {trail.total_changes}\n"
        f"[bold]Authors:[/bold] {', '.join(trail.authors) or '-'}\n"
        f"[bold]Types:[/bold] {', '.join(f'{k}={v}' for k, v in trail.change_types.items()) or '-'}"
    )
    console.print(Panel(summary, title=f"Audit trail: {file_id}", border_style="blue"))

    timeline_table = Table(show_header=True)
    timeline_table.add_column("Date", style="green")
    timeline_table.add_column("Version", style="cyan", justify="right")
    timeline_table.add_column("Type", style="magenta")
    timeline_table.add_column("Author", style="blue")
    timeline_table.add_column("Description")

    for change in trail.timeline:
        timeline_table.add_row(
            change.timestamp.isoformat(),
            str(change.version),
            change.change_type.value,
            change.author or "-",
            change.description,
        )

    console.print(timeline_table)


@app.command()
def archive(
    file_id: str = typer.Argument(..., help="Document identifier"),
    version: Optional[int] = typer.Argument(None, help="Archived version to show"),
) -> None:
    """
    List archived versions of a document, or show one of them.
    """
    tracker = get_tracker()

    if version is None:
        versions = run(tracker.list_archived_versions(file_id))
        if not versions:
            console.print("[yellow]No archived versions[/yellow]")
            return
        console.print(f"Archived versions of {file_id}: {', '.join(str(v) for v in versions)}")
        return

    change = run(tracker.get_archived_change(file_id, version))
    console.print(Panel(
        json.dumps(change.to_dict(), indent=2),
        title=f"{file_id} version {version} (archived)",
    ))


@app.command()
def config() -> None:
    """
    Show the active configuration.
    """
    info = get_config_manager().get_config_info()
    if base_dir_override is not None:
        info["base_dir"] = str(base_dir_override)

    config_table = Table(title="Configuration", show_header=False)
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", style="green")

    for key, value in info.items():
        config_table.add_row(key, str(value))

    console.print(config_table)


if __name__ == "__main__":
    app()
