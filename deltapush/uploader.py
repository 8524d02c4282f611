from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterator, Protocol

from deltapush.config import APP_NAME
from deltapush.errors import FATAL_ERRORS, RateLimitError
from deltapush.models import (
    DEFAULT_FILE_MODE,
    EXECUTABLE_FILE_MODE,
    LocalFile,
    UploadedBlob,
    UploadFailure,
    UploadOutcome,
)
from deltapush.session import SyncSession


logger = logging.getLogger(APP_NAME)

DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY_MS = 100
MAX_BATCH_DELAY_MS = 5000
DEFAULT_UPLOAD_WORKERS = 8


class BlobWriter(Protocol):
    def create_blob(self, content: bytes, *, is_binary: bool) -> str: ...


@dataclass(slots=True)
class BatchUploadResult:
    total: int
    uploaded: list[UploadedBlob] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)
    batches: int = 0
    cancelled: bool = False

    @property
    def settled(self) -> int:
        return len(self.uploaded) + len(self.failed)


def _chunks(items: list[LocalFile], size: int) -> list[list[LocalFile]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


def mode_for(local: LocalFile, modes: dict[str, str]) -> str:
    """Tree mode for an upload: the local entry's own mode, else the remote file mode."""
    if local.mode:
        return local.mode
    remote_mode = modes.get(local.path)
    if remote_mode in (DEFAULT_FILE_MODE, EXECUTABLE_FILE_MODE):
        return remote_mode
    return DEFAULT_FILE_MODE


def upload_one(client: BlobWriter, local: LocalFile, mode: str = DEFAULT_FILE_MODE) -> UploadOutcome:
    """Create one blob; any non-fatal error becomes an ``UploadFailure`` value."""
    try:
        blob_sha = client.create_blob(local.content, is_binary=local.is_binary)
    except FATAL_ERRORS:
        raise
    except RateLimitError as exc:
        logger.warning("Upload rate limited for %s (reset at %s): %s", local.path, exc.reset_at, exc)
        return UploadFailure(path=local.path, error=str(exc), kind=exc.kind, reset_at=exc.reset_at)
    except Exception as exc:
        logger.warning("Upload failed for %s: %s", local.path, exc)
        return UploadFailure(path=local.path, error=str(exc), kind=getattr(exc, "kind", type(exc).__name__))
    return UploadedBlob(path=local.path, blob_sha=blob_sha, mode=mode)


def _run_batch(
    client: BlobWriter,
    batch: list[LocalFile],
    modes: dict[str, str],
    executor: ThreadPoolExecutor | None,
) -> Iterator[tuple[LocalFile, UploadOutcome | BaseException]]:
    """Yield each file's outcome as soon as it settles."""
    if executor is None or len(batch) == 1:
        for local in batch:
            try:
                yield local, upload_one(client, local, mode_for(local, modes))
            except FATAL_ERRORS as exc:
                yield local, exc
        return

    futures: dict[Future[UploadOutcome], LocalFile] = {
        executor.submit(upload_one, client, local, mode_for(local, modes)): local for local in batch
    }
    for future in as_completed(futures):
        local = futures[future]
        try:
            yield local, future.result()
        except FATAL_ERRORS as exc:
            yield local, exc


def upload_blobs(
    client: BlobWriter,
    files: list[LocalFile],
    *,
    session: SyncSession,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS,
    max_workers: int = DEFAULT_UPLOAD_WORKERS,
    modes: dict[str, str] | None = None,
) -> BatchUploadResult:
    """Create blobs in batches of ``batch_size``, pausing ``batch_delay_ms`` between batches.

    Each batch settles completely before the next starts. Cancellation is
    honoured only between batches. A fatal error (bad credentials, lost repo
    access) is raised once its batch has settled.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    modes = modes or {}
    result = BatchUploadResult(total=len(files))
    if not files:
        return result

    batches = _chunks(files, batch_size)
    workers = max(1, min(batch_size, max_workers))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deltapush-blob") if workers > 1 else None

    try:
        for index, batch in enumerate(batches):
            if session.cancelled:
                result.cancelled = True
                logger.info("Upload cancelled before batch %d/%d", index + 1, len(batches))
                break
            if index > 0:
                session.pause(batch_delay_ms / 1000.0)
                if session.cancelled:
                    result.cancelled = True
                    logger.info("Upload cancelled before batch %d/%d", index + 1, len(batches))
                    break

            fatal: BaseException | None = None
            for local, outcome in _run_batch(client, batch, modes, executor):
                if isinstance(outcome, UploadedBlob):
                    result.uploaded.append(outcome)
                elif isinstance(outcome, UploadFailure):
                    result.failed.append(outcome)
                else:
                    fatal = fatal or outcome
                    result.failed.append(
                        UploadFailure(path=local.path, error=str(outcome), kind=getattr(outcome, "kind", "error"))
                    )
                session.report_progress(result.settled, result.total, local.path)

            result.batches += 1
            logger.debug(
                "Batch %d/%d settled: %d uploaded, %d failed so far",
                index + 1,
                len(batches),
                len(result.uploaded),
                len(result.failed),
            )
            if fatal is not None:
                raise fatal
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    result.uploaded.sort(key=lambda item: item.path)
    result.failed.sort(key=lambda item: item.path)
    return result
