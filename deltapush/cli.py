from __future__ import annotations

import logging
import signal
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from deltapush.config import (
    APP_NAME,
    CONFIG_FILENAME,
    DeltaPushConfig,
    default_branch,
    default_repo_id,
    default_token,
    load_config,
    normalize_repo_id,
    save_config,
)
from deltapush.errors import DeltaPushError
from deltapush.models import SyncReport
from deltapush.session import SyncSession
from deltapush.sync_engine import SyncOptions, plan_sync, sync
from deltapush.transfer_ui import UploadProgressUI
from deltapush.uploader import DEFAULT_BATCH_DELAY_MS, DEFAULT_BATCH_SIZE, DEFAULT_UPLOAD_WORKERS


app = typer.Typer(help="deltapush: mirror a project directory into a GitHub branch")
console = Console()
logger = logging.getLogger(APP_NAME)


def setup_logging(verbose: bool) -> None:
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if logger.handlers:
        return
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S")
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)


@contextmanager
def _cooperative_interrupt(session: SyncSession) -> Iterator[None]:
    """First Ctrl-C stops after the in-flight batch; a second one aborts."""
    try:
        previous = signal.getsignal(signal.SIGINT)
    except ValueError:
        yield
        return

    def _handler(signum, frame) -> None:
        if session.cancelled:
            raise KeyboardInterrupt
        session.cancel()
        console.print(
            "[yellow]Stopping after the current batch...[/yellow] Press Ctrl-C again to abort immediately."
        )

    try:
        signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_report(report: SyncReport, config: DeltaPushConfig) -> int:
    if report.failed:
        table = Table(title="Failed uploads")
        table.add_column("Path")
        table.add_column("Kind")
        table.add_column("Error")
        for failure in report.failed:
            error = failure.error
            if failure.reset_at is not None:
                resets = datetime.fromtimestamp(failure.reset_at).strftime("%H:%M:%S")
                error = f"{error} (limit resets at {resets})"
            table.add_row(failure.path, failure.kind, error)
        console.print(table)

    _render_path_summary("Deleted remote", report.deleted_paths, "yellow")
    if report.deletion_error:
        console.print(f"[red]Deleting removed files failed:[/red] {report.deletion_error}")

    console.print(
        f"Uploaded: {report.uploaded_count}/{report.total_planned} | "
        f"Skipped unchanged: {report.skipped_unchanged} | Deleted: {report.deleted_count}"
    )

    if report.failure is not None:
        console.print(
            f"[red]No commit created[/red] ({report.failure.kind} while {report.failure.state}): "
            f"{report.failure.message}"
        )
        return 1
    if report.cancelled:
        console.print("[yellow]Sync cancelled.[/yellow] Uploaded blobs were not committed; the branch is unchanged.")
        return 130
    if report.commit is None:
        console.print(f"[green]Branch {config.branch} already matches the local project.[/green]")
        return 0

    if report.mode == "per-file":
        console.print(
            f"[yellow]Degraded mode:[/yellow] committed file by file ({len(report.extra_commits) + 1} commits)."
        )
    console.print(f"[green]Committed[/green] {report.commit.commit_url}")
    return 1 if report.failed else 0


@app.command()
def init(
    repo_id: str = typer.Argument("", help="Repository as owner/name or a GitHub URL."),
    branch: str = typer.Option("", "--branch", "-b", help="Target branch. Defaults to $GITHUB_WORKFLOW_REF or main."),
) -> None:
    """Initialize deltapush config in the current directory."""
    root = Path.cwd().resolve()
    original = repo_id or default_repo_id()
    if not original:
        console.print("[red]Pass a repository or set GITHUB_REPO_OWNER and GITHUB_REPO_NAME.[/red]")
        raise typer.Exit(code=1)

    config = DeltaPushConfig(
        repo_id=normalize_repo_id(original),
        token=default_token(),
        local_root=str(root),
        branch=branch or default_branch(),
    )
    try:
        config.validate()
    except DeltaPushError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    path = save_config(config, root)
    console.print(f"[green]Initialized {APP_NAME}[/green] at {config.local_root_path}")
    console.print(f"Config: {path}")
    console.print(f"Target: {config.repo_id}@{config.branch}")
    if config.repo_id != original.strip():
        console.print(f"Repo ID normalized: {original} -> {config.repo_id}")
    if not config.token:
        console.print(
            "[yellow]GITHUB_TOKEN not found in environment. `token` was initialized as empty.[/yellow]"
        )
    console.print(f"[dim]{CONFIG_FILENAME} may hold a token; it is never uploaded.[/dim]")


@app.command()
def status(
    include: list[str] | None = typer.Option(None, "--include", help="Include glob pattern(s) (repeatable)."),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Exclude glob pattern(s) (repeatable)."),
    from_zip: str | None = typer.Option(None, "--from-zip", help="Read the project from a zip archive."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug details to stderr."),
) -> None:
    """Compare the local project with the remote branch without writing anything."""
    setup_logging(verbose)
    try:
        config = load_config()
        options = SyncOptions(
            include_patterns=tuple(include or ()),
            exclude_patterns=tuple(exclude or ()),
            source_zip=from_zip,
        )
        with console.status(f"Comparing with {config.repo_id}@{config.branch}..."):
            preview = plan_sync(config, options)
    except (FileNotFoundError, RuntimeError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    diff = preview.diff
    _render_path_summary("New", diff.new, "green")
    _render_path_summary("Changed", diff.changed, "cyan")
    _render_path_summary("Only on remote", diff.deleted, "yellow")
    if not preview.branch_exists:
        console.print(f"[yellow]Branch {config.branch} does not exist yet; push will create it.[/yellow]")
    if not diff.has_changes:
        console.print("[green]No changes detected.[/green]")
    console.print(
        f"Local files: {preview.local_count} | New: {len(diff.new)} | Changed: {len(diff.changed)} | "
        f"Unchanged: {len(diff.unchanged)} | Only on remote: {len(diff.deleted)}"
    )


@app.command()
def push(
    batch_size: int = typer.Option(DEFAULT_BATCH_SIZE, "--batch-size", help="Blobs per upload batch."),
    delay_ms: int = typer.Option(DEFAULT_BATCH_DELAY_MS, "--delay-ms", help="Pause between batches (0-5000 ms)."),
    workers: int = typer.Option(DEFAULT_UPLOAD_WORKERS, "--workers", help="Concurrent uploads within a batch."),
    delete_removed: bool = typer.Option(
        False, "--delete-removed", help="Delete remote files that no longer exist locally."
    ),
    archive: bool = typer.Option(False, "--archive", help="Upload the whole project as one zip at the repo root."),
    archive_name: str | None = typer.Option(None, "--archive-name", help="File name for --archive."),
    replace_all: bool = typer.Option(
        False, "--replace-all", help="Rebuild the branch tree from local files only (drops everything else)."
    ),
    fallback_per_file: bool = typer.Option(
        False, "--fallback-per-file", help="If the single commit fails, commit each file separately."
    ),
    message: str | None = typer.Option(None, "--message", "-m", help="Commit message."),
    include: list[str] | None = typer.Option(None, "--include", help="Include glob pattern(s) (repeatable)."),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Exclude glob pattern(s) (repeatable)."),
    from_zip: str | None = typer.Option(None, "--from-zip", help="Read the project from a zip archive."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask before destructive operations."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug details to stderr."),
) -> None:
    """Upload what changed and fast-forward the branch in one commit."""
    setup_logging(verbose)
    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    if (delete_removed or replace_all) and not yes:
        what = "replace the whole branch tree" if replace_all else "delete remote files missing locally"
        if not typer.confirm(f"This will {what} in {config.repo_id}@{config.branch}. Continue?"):
            raise typer.Exit(code=1)

    options = SyncOptions(
        batch_size=batch_size,
        batch_delay_ms=delay_ms,
        upload_workers=workers,
        delete_removed=delete_removed,
        archive_mode=archive,
        archive_name=archive_name,
        replace_all=replace_all,
        fallback_per_file=fallback_per_file,
        commit_message=message,
        include_patterns=tuple(include or ()),
        exclude_patterns=tuple(exclude or ()),
        source_zip=from_zip,
    )

    try:
        with UploadProgressUI(console=console) as ui:
            session = SyncSession(progress=ui)
            with _cooperative_interrupt(session):
                report = sync(config, options, session)
    except KeyboardInterrupt:
        console.print("[yellow]Push interrupted.[/yellow] Uploaded blobs were not committed; the branch is unchanged.")
        raise typer.Exit(code=130)

    raise typer.Exit(code=_render_report(report, config))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
