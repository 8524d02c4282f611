from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from deltapush.archive import build_zip_archive, default_archive_name
from deltapush.auth import missing_token_hint, resolve_github_token
from deltapush.composer import DEFAULT_MAX_REF_RETRIES, compose_commit, compose_per_file
from deltapush.config import APP_NAME, DeltaPushConfig
from deltapush.errors import (
    FATAL_ERRORS,
    AuthenticationError,
    ConfigurationError,
    DeltaPushError,
    EmptySourceError,
    GitHubAPIError,
    RemovalRejectedError,
    RetriesExhaustedError,
)
from deltapush.filters import ExclusionRules, build_exclusion_rules
from deltapush.github_api import GitHubClient
from deltapush.models import (
    DiffResult,
    LocalFile,
    SyncFailure,
    SyncPlan,
    SyncReport,
    UploadedBlob,
)
from deltapush.remote_tree import read_branch_base, read_remote_state
from deltapush.scanner import enumerate_local_files, enumerate_zip_files
from deltapush.session import SyncSession, SyncState
from deltapush.status_service import build_plan, diff_files
from deltapush.uploader import (
    DEFAULT_BATCH_DELAY_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_UPLOAD_WORKERS,
    MAX_BATCH_DELAY_MS,
    upload_blobs,
)


logger = logging.getLogger(APP_NAME)


@dataclass(slots=True)
class SyncOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS
    upload_workers: int = DEFAULT_UPLOAD_WORKERS
    delete_removed: bool = False
    archive_mode: bool = False
    archive_name: str | None = None
    replace_all: bool = False
    fallback_per_file: bool = False
    max_ref_retries: int = DEFAULT_MAX_REF_RETRIES
    commit_message: str | None = None
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    source_zip: str | None = None
    verify_access: bool = True

    @property
    def rules(self) -> ExclusionRules:
        return build_exclusion_rules(self.include_patterns, self.exclude_patterns)

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be at least 1, got {self.batch_size}")
        if not 0 <= self.batch_delay_ms <= MAX_BATCH_DELAY_MS:
            raise ConfigurationError(
                f"batch_delay_ms must be between 0 and {MAX_BATCH_DELAY_MS}, got {self.batch_delay_ms}"
            )
        if self.upload_workers < 1:
            raise ConfigurationError(f"upload_workers must be at least 1, got {self.upload_workers}")
        if self.max_ref_retries < 0:
            raise ConfigurationError(f"max_ref_retries must not be negative, got {self.max_ref_retries}")
        if self.archive_name is not None:
            name = self.archive_name.strip()
            if not name or "/" in name or "\\" in name or name in {".", ".."}:
                raise ConfigurationError(f"archive_name must be a plain file name, got {self.archive_name!r}")
        if self.archive_mode and self.replace_all:
            raise ConfigurationError("archive mode and replace-all cannot be combined")


@dataclass(slots=True)
class SyncPreview:
    diff: DiffResult
    plan: SyncPlan
    local_count: int
    branch_exists: bool


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def default_commit_message() -> str:
    return f"Update project from {APP_NAME} ({_timestamp()}) [skip ci]"


def archive_commit_message(archive_name: str) -> str:
    return f"chore: upload project archive {archive_name} ({_timestamp()}) [skip ci]"


def make_client(config: DeltaPushConfig) -> GitHubClient:
    token = resolve_github_token(config.token)
    if not token:
        raise AuthenticationError(missing_token_hint())
    return GitHubClient(token, config.repo, api_url=config.api_url)


def _enumerate(config: DeltaPushConfig, options: SyncOptions) -> list[LocalFile]:
    rules = options.rules
    if options.source_zip:
        files = enumerate_zip_files(Path(options.source_zip).expanduser(), rules)
        source = options.source_zip
    else:
        files = enumerate_local_files(config.local_root_path, rules)
        source = str(config.local_root_path)
    if not files:
        raise EmptySourceError(f"No files to publish under {source} after exclusions")
    logger.info("Enumerated %d file(s) from %s", len(files), source)
    return files


def _preflight(client: Any, options: SyncOptions) -> None:
    if not options.verify_access:
        return
    login = client.get_authenticated_user()
    client.get_repository()
    logger.debug("Authenticated as %s", login or "<unknown>")


def plan_sync(
    config: DeltaPushConfig,
    options: SyncOptions | None = None,
    *,
    client: Any | None = None,
) -> SyncPreview:
    """Compare-only: enumerate, read the remote and diff without writing anything."""
    options = options or SyncOptions()
    config.validate()
    options.validate()

    with nullcontext(client) if client is not None else make_client(config) as api:
        _preflight(api, options)
        files = _enumerate(config, options)
        remote = read_remote_state(api, config.branch)
        diff = diff_files(files, remote.entries)
        plan = build_plan(
            diff,
            remote,
            delete_removed=options.delete_removed,
            replace_all=options.replace_all,
            local_paths=[item.path for item in files],
        )
    return SyncPreview(diff=diff, plan=plan, local_count=len(files), branch_exists=remote.branch_exists)


def _compose_with_fallbacks(
    api: Any,
    config: DeltaPushConfig,
    options: SyncOptions,
    report: SyncReport,
    *,
    uploaded: list[UploadedBlob],
    removals: list[str],
    plan: SyncPlan,
    message: str,
    preserved: list[UploadedBlob] | None = None,
    remote_paths: set[str] | None = None,
) -> None:
    overlays = [*uploaded, *(preserved or [])]
    try:
        report.commit = compose_commit(
            api,
            config.branch,
            overlays=overlays,
            removals=removals,
            message=message,
            base_tree_sha=plan.base_tree_sha,
            parent_commit_sha=plan.parent_commit_sha,
            replace_all=options.replace_all,
            max_ref_retries=options.max_ref_retries,
        )
        if options.replace_all:
            kept = {blob.path for blob in overlays}
            report.deleted_paths = sorted(path for path in (remote_paths or ()) if path not in kept)
        else:
            report.deleted_paths = list(removals)
        report.deleted_count = len(report.deleted_paths)
        return
    except (RetriesExhaustedError, *FATAL_ERRORS):
        raise
    except RemovalRejectedError as exc:
        if not uploaded:
            raise
        # Deletions must not take the uploads down with them.
        logger.warning("Removing %d path(s) was rejected (%s); committing uploads only", len(removals), exc)
        report.deletion_error = str(exc)
        _compose_with_fallbacks(
            api, config, options, report, uploaded=uploaded, removals=[], plan=plan, message=message
        )
        return
    except GitHubAPIError as exc:
        if not options.fallback_per_file or not uploaded:
            raise
        logger.warning("Bulk commit failed (%s); falling back to one commit per file", exc)

    report.mode = "per-file"
    commits, failures = compose_per_file(
        api,
        config.branch,
        uploaded,
        max_ref_retries=options.max_ref_retries,
    )
    committed = {blob.path for blob in uploaded} - {failure.path for failure in failures}
    report.failed = sorted([*report.failed, *failures], key=lambda item: item.path)
    report.uploaded_count = len(committed)
    if not commits:
        raise GitHubAPIError("Per-file fallback could not commit any of the uploaded files")
    report.commit = commits[-1]
    report.extra_commits = commits[:-1]


def _run_incremental(
    api: Any,
    config: DeltaPushConfig,
    options: SyncOptions,
    session: SyncSession,
    report: SyncReport,
) -> None:
    session.transition(SyncState.ENUMERATING)
    files = _enumerate(config, options)
    by_path = {item.path: item for item in files}

    session.transition(SyncState.READING_REMOTE)
    remote = read_remote_state(api, config.branch)

    session.transition(SyncState.DIFFING)
    diff = diff_files(files, remote.entries)
    plan = build_plan(
        diff,
        remote,
        delete_removed=options.delete_removed,
        replace_all=options.replace_all,
        local_paths=list(by_path),
    )
    report.total_planned = len(plan.files_to_upload)
    report.skipped_unchanged = 0 if options.replace_all else len(diff.unchanged)
    logger.info(
        "Diff: %d new, %d changed, %d unchanged, %d deleted remotely",
        len(diff.new),
        len(diff.changed),
        len(diff.unchanged),
        len(diff.deleted),
    )

    session.transition(SyncState.UPLOADING)
    modes = {path: entry.mode for path, entry in remote.entries.items()}
    upload = upload_blobs(
        api,
        [by_path[path] for path in plan.files_to_upload],
        session=session,
        batch_size=options.batch_size,
        batch_delay_ms=options.batch_delay_ms,
        max_workers=options.upload_workers,
        modes=modes,
    )
    report.uploaded_count = len(upload.uploaded)
    report.failed = list(upload.failed)

    if upload.cancelled or session.cancelled:
        report.cancelled = True
        session.transition(SyncState.CANCELLED)
        logger.info("Sync cancelled; %d blob(s) uploaded but not committed", len(upload.uploaded))
        return

    preserved: list[UploadedBlob] = []
    if options.replace_all:
        # The rebuilt tree has no base, so a file that failed to upload keeps its current blob.
        for failure in upload.failed:
            entry = remote.entries.get(failure.path)
            if entry is not None:
                preserved.append(UploadedBlob(path=failure.path, blob_sha=entry.blob_sha, mode=entry.mode))

    removals = list(plan.files_to_delete) if options.delete_removed and not options.replace_all else []
    if not upload.uploaded and not removals and not (options.replace_all and plan.files_to_delete):
        if upload.failed:
            raise GitHubAPIError(f"All {len(upload.failed)} planned upload(s) failed; nothing to commit")
        logger.info("Remote branch %s already matches the local project", config.branch)
        session.transition(SyncState.DONE)
        return

    session.transition(SyncState.COMPOSING)
    _compose_with_fallbacks(
        api,
        config,
        options,
        report,
        uploaded=upload.uploaded,
        removals=removals,
        plan=plan,
        message=options.commit_message or default_commit_message(),
        preserved=preserved,
        remote_paths=set(remote.entries),
    )
    session.transition(SyncState.DONE)


def _run_archive(
    api: Any,
    config: DeltaPushConfig,
    options: SyncOptions,
    session: SyncSession,
    report: SyncReport,
) -> None:
    report.mode = "archive"
    archive_name = (options.archive_name or "").strip() or default_archive_name(config.repo.name)

    session.transition(SyncState.ENUMERATING)
    files = _enumerate(config, options)
    payload = build_zip_archive(files)
    logger.info("Packed %d file(s) into %s (%d bytes)", len(files), archive_name, len(payload))

    session.transition(SyncState.READING_REMOTE)
    base_tree_sha, parent_commit_sha = read_branch_base(api, config.branch)

    session.transition(SyncState.UPLOADING)
    report.total_planned = 1
    upload = upload_blobs(
        api,
        [LocalFile(path=archive_name, content=payload, is_binary=True)],
        session=session,
        batch_size=1,
        batch_delay_ms=0,
        max_workers=1,
    )
    report.uploaded_count = len(upload.uploaded)
    report.failed = list(upload.failed)
    if upload.cancelled or session.cancelled:
        report.cancelled = True
        session.transition(SyncState.CANCELLED)
        return
    if not upload.uploaded:
        raise GitHubAPIError(f"Archive upload failed: {upload.failed[0].error}")

    session.transition(SyncState.COMPOSING)
    report.commit = compose_commit(
        api,
        config.branch,
        overlays=upload.uploaded,
        message=options.commit_message or archive_commit_message(archive_name),
        base_tree_sha=base_tree_sha,
        parent_commit_sha=parent_commit_sha,
        max_ref_retries=options.max_ref_retries,
    )
    session.transition(SyncState.DONE)


def sync(
    config: DeltaPushConfig,
    options: SyncOptions | None = None,
    session: SyncSession | None = None,
    *,
    client: Any | None = None,
) -> SyncReport:
    """Mirror the project into the configured branch and report what happened.

    Errors that stop the run are returned as ``report.failure`` rather than
    raised, so callers always get counts for whatever did happen.
    """
    options = options or SyncOptions()
    session = session or SyncSession()
    report = SyncReport(mode="archive" if options.archive_mode else "incremental")

    try:
        config.validate()
        options.validate()
        with nullcontext(client) if client is not None else make_client(config) as api:
            _preflight(api, options)
            if options.archive_mode:
                _run_archive(api, config, options, session, report)
            else:
                _run_incremental(api, config, options, session, report)
    except (DeltaPushError, FileNotFoundError) as exc:
        failed_in = session.state
        kind = exc.kind if isinstance(exc, DeltaPushError) else "configuration"
        logger.error("Sync failed while %s: %s", failed_in.value, exc)
        report.failure = SyncFailure(kind=kind, message=str(exc), state=failed_in.value)
        if session.state not in (SyncState.DONE, SyncState.FAILED, SyncState.CANCELLED):
            session.transition(SyncState.FAILED)

    return report
