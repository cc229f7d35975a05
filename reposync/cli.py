"""
CLI interface for RepoSync.

Provides commands for:
- Manual sync of one project or all projects
- Running the daily scheduler or the HTTP service
- Checkpoint inspection
- Status and health checks
- Configuration validation

Usage Examples:
    # Incremental sync of one project
    reposync sync --project docs --verbose

    # Full resync of every enabled project
    reposync sync --all --full

    # Start the daily scheduler
    reposync start
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config
from .models import Classification, RunResult
from .utils import (
    ConfigError,
    check_checkpoint_db_health,
    check_github_connectivity,
    check_qdrant_health,
    setup_logging,
)

app = typer.Typer(
    name="reposync",
    help="Keep a vector index in sync with GitHub repositories",
    add_completion=False,
)

console = Console()

RESULT_STYLES = {
    Classification.SUCCESS: "green",
    Classification.WARNING: "yellow",
    Classification.ERROR: "red",
}


def _load_config(config_path: Optional[Path], verbose: bool = False) -> Config:
    """Load config and configure logging from it."""
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1)

    setup_logging(
        level="DEBUG" if verbose else config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    return config


def _print_result(result: RunResult) -> None:
    style = RESULT_STYLES[result.classification]
    lines = [
        f"[{style}]{result.classification.value.upper()}[/{style}]"
        f"{' (canceled)' if result.canceled else ''}\n",
        f"Repositories scanned: {result.repositories_scanned}",
        f"Files changed: {result.files_changed}",
        f"Files processed: {result.files_processed}",
        f"Files failed: {result.files_failed}",
        f"Files deleted: {result.files_deleted}",
        f"Chunks created: {result.chunks_created}",
        f"Embeddings generated: {result.embeddings_generated}",
        f"Vectors upserted: {result.vectors_upserted}",
        f"Vectors deleted: {result.vectors_deleted}",
        f"Duration: {result.duration_seconds:.2f}s",
    ]
    for error in result.errors:
        lines.append(f"[red]Error: {error}[/red]")
    for warning in result.warnings[:10]:
        lines.append(f"[yellow]Warning: {warning}[/yellow]")
    if len(result.warnings) > 10:
        lines.append(f"[yellow]... and {len(result.warnings) - 10} more warnings[/yellow]")

    console.print(Panel(
        "\n".join(lines),
        title=f"Sync Results: {result.project_id}",
        box=box.ROUNDED,
    ))


# =============================================================================
# Sync Commands
# =============================================================================

@app.command("sync")
def sync_project(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
    project: Optional[str] = typer.Option(
        None,
        "--project", "-p",
        help="Project id to sync",
    ),
    all_projects: bool = typer.Option(
        False,
        "--all", "-a",
        help="Sync all enabled projects",
    ),
    full: bool = typer.Option(
        False,
        "--full", "-f",
        help="Reprocess every file instead of only changed ones",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """
    Sync repositories into the vector index.

    Incremental by default: only files changed since the last sync are
    processed.
    """
    if not project and not all_projects:
        console.print("[yellow]Specify --project ID or --all[/yellow]")
        raise typer.Exit(1)

    config = _load_config(config_path, verbose)

    from .factory import build_components

    with build_components(config) as components:
        if project:
            console.print(f"[blue]Syncing project: {project}[/blue]")
            results = [components.engine.run_sync(project, incremental=not full)]
        else:
            console.print("[blue]Syncing all enabled projects[/blue]")
            results = components.engine.run_all(incremental=not full)

    for result in results:
        _print_result(result)

    if any(not r.success for r in results):
        raise typer.Exit(1)


@app.command("start")
def start_scheduler(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
    run_now: bool = typer.Option(
        False,
        "--run-now",
        help="Run one sync immediately before waiting for the schedule",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """Start the daily sync scheduler."""
    config = _load_config(config_path, verbose)

    from .scheduler import create_scheduler

    try:
        scheduler = create_scheduler(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[green]RepoSync Scheduler[/green]\n\n"
        f"Projects: {len(config.get_enabled_projects())}\n"
        f"Schedule: daily at {config.scheduler.time} {config.scheduler.timezone}\n\n"
        f"Press Ctrl+C to stop",
        title="Scheduler",
        box=box.ROUNDED,
    ))

    scheduler.start()
    if run_now:
        for result in scheduler.trigger_now():
            _print_result(result)
    scheduler.wait()


@app.command("serve")
def serve(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Listen port"),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """Run the HTTP trigger service."""
    config = _load_config(config_path, verbose)

    import uvicorn

    from .server import create_app_from_config

    uvicorn.run(
        create_app_from_config(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.logging.level.lower(),
    )


# =============================================================================
# Inspection Commands
# =============================================================================

@app.command("status")
def show_status(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
):
    """Show configured projects and their sync state."""
    config = _load_config(config_path)

    from .checkpoint import SQLiteCheckpointStore

    store = SQLiteCheckpointStore(config.checkpoints.path)

    table = Table(box=box.ROUNDED)
    table.add_column("Project", style="cyan")
    table.add_column("Organization", style="green")
    table.add_column("Keyword", style="yellow")
    table.add_column("Namespace", style="blue")
    table.add_column("Strategy", style="magenta")
    table.add_column("Files", style="white")
    table.add_column("Failed", style="red")
    table.add_column("Last Sync", style="white")
    table.add_column("Status", style="white")

    for project in config.projects:
        stats = store.get_stats(project.id)
        lease = store.get_run_lease(project.id)
        if lease and lease["expires_at"] > time.time():
            state = "[yellow]running[/yellow]"
        elif project.enabled:
            state = "[green]enabled[/green]"
        else:
            state = "[dim]disabled[/dim]"
        table.add_row(
            project.id,
            project.organization,
            project.filter_keyword or "-",
            project.namespace,
            project.diff_strategy.value,
            str(stats["file_count"]),
            str(stats["by_status"].get("failed", 0)),
            stats["last_synced_at"] or "never",
            state,
        )

    console.print(table)
    console.print(
        f"\nSchedule: daily at {config.scheduler.time} {config.scheduler.timezone}"
    )
    store.close()


@app.command("checkpoints")
def show_checkpoints(
    project: str = typer.Option(..., "--project", "-p", help="Project id"),
    failed_only: bool = typer.Option(False, "--failed", help="Only show failed files"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
):
    """List the checkpoints of a project."""
    config = _load_config(config_path)
    if config.get_project(project) is None:
        console.print(f"[red]Project not found: {project}[/red]")
        raise typer.Exit(1)

    from .checkpoint import SQLiteCheckpointStore

    store = SQLiteCheckpointStore(config.checkpoints.path)
    entries = store.list_for_project(project)
    if failed_only:
        entries = [e for e in entries if e.status.value == "failed"]

    table = Table(title=f"Checkpoints: {project}", box=box.ROUNDED)
    table.add_column("Repository", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Revision", style="yellow")
    table.add_column("Chunks", style="magenta")
    table.add_column("Status", style="white")
    table.add_column("Last Sync", style="white")

    for entry in entries:
        status = "[green]synced[/green]" if entry.status.value == "synced" else f"[red]failed[/red] {entry.error[:60]}"
        table.add_row(
            entry.repository,
            entry.path,
            entry.revision[:8] if entry.revision else "-",
            str(entry.chunk_count),
            status,
            entry.last_synced_at.strftime("%Y-%m-%d %H:%M") if entry.last_synced_at else "-",
        )

    console.print(table)
    console.print(f"\n{len(entries)} files")
    store.close()


@app.command("validate")
def validate_config(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
):
    """Validate configuration."""
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1)

    errors = config.validate()

    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  • {error}")
        raise typer.Exit(1)

    console.print("[green]Configuration is valid[/green]")
    console.print(f"  Projects: {len(config.projects)}")
    console.print(f"  Enabled: {len(config.get_enabled_projects())}")


@app.command("health")
def health_check(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to reposync.yaml",
    ),
):
    """Check connectivity to Qdrant, GitHub and the checkpoint store."""
    config = _load_config(config_path)

    checks = [
        check_qdrant_health(config.qdrant.host, config.qdrant.port),
        check_github_connectivity(config.github.api_url),
        check_checkpoint_db_health(config.checkpoints.path),
    ]

    table = Table(title="Health", box=box.ROUNDED)
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Message", style="white")
    for check in checks:
        table.add_row(
            check.component,
            "[green]healthy[/green]" if check.healthy else "[red]unhealthy[/red]",
            check.message,
        )
    console.print(table)

    if not all(c.healthy for c in checks):
        raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
