from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from deltapush.config import APP_NAME


logger = logging.getLogger(APP_NAME)

ProgressCallback = Callable[[int, int, str], None]


class SyncState(str, enum.Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    READING_REMOTE = "reading-remote"
    DIFFING = "diffing"
    UPLOADING = "uploading"
    COMPOSING = "composing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SyncState.DONE, SyncState.FAILED, SyncState.CANCELLED})


@dataclass(slots=True)
class SyncSession:
    """Per-run coordination state handed to every component.

    Owns the cancellation flag, the progress sink and the pause function used
    between upload batches. A session is single-use.
    """

    progress: ProgressCallback | None = None
    sleep: Callable[[float], None] = time.sleep
    state: SyncState = SyncState.IDLE
    history: list[SyncState] = field(default_factory=lambda: [SyncState.IDLE])
    _cancel_event: threading.Event = field(default_factory=threading.Event)

    def transition(self, state: SyncState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Sync session already finished in state {self.state.value}")
        logger.debug("sync state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def report_progress(self, current: int, total: int, path: str) -> None:
        if self.progress is not None:
            self.progress(current, total, path)

    def pause(self, seconds: float) -> None:
        if seconds > 0:
            self.sleep(seconds)
