from __future__ import annotations

import threading

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)


def _shorten_path(path: str, max_len: int = 64) -> str:
    if len(path) <= max_len:
        return path
    keep = max_len - 3
    if keep <= 0:
        return path[:max_len]
    head = keep // 2
    tail = keep - head
    return f"{path[:head]}...{path[-tail:]}"


class UploadProgressUI:
    """Rich progress bar fed by the sync engine's ``(current, total, path)`` callback."""

    def __init__(self, console: Console | None = None, *, transient: bool = False) -> None:
        self._lock = threading.Lock()
        self._task_id: TaskID | None = None
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]PUT"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[path]}"),
            console=console,
            transient=transient,
            expand=True,
        )

    def __enter__(self) -> "UploadProgressUI":
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.__exit__(exc_type, exc, tb)

    def __call__(self, current: int, total: int, path: str) -> None:
        with self._lock:
            if self._task_id is None:
                self._task_id = self._progress.add_task("upload", total=total, path="")
            self._progress.update(
                self._task_id,
                total=total,
                completed=min(current, total),
                path=_shorten_path(path),
            )
