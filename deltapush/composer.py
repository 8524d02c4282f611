from __future__ import annotations

import logging
from typing import Any, Protocol

from deltapush.config import APP_NAME
from deltapush.errors import (
    FATAL_ERRORS,
    GitHubAPIError,
    RefConflictError,
    RemovalRejectedError,
    RetriesExhaustedError,
)
from deltapush.models import DEFAULT_FILE_MODE, CommitResult, UploadedBlob, UploadFailure
from deltapush.remote_tree import read_branch_base


logger = logging.getLogger(APP_NAME)

DEFAULT_MAX_REF_RETRIES = 3


class GitWriter(Protocol):
    def get_branch_head(self, branch: str) -> str | None: ...

    def get_commit_tree_sha(self, commit_sha: str) -> str: ...

    def create_tree(self, entries: list[dict[str, Any]], *, base_tree: str | None = None) -> str: ...

    def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitResult: ...

    def update_ref(self, branch: str, commit_sha: str) -> None: ...

    def create_ref(self, branch: str, commit_sha: str) -> None: ...


def tree_entries(overlays: list[UploadedBlob], removals: list[str] | tuple[str, ...] = ()) -> list[dict[str, Any]]:
    """Tree entries layered over a base tree; a null sha removes the path."""
    entries: list[dict[str, Any]] = [
        {"path": blob.path, "mode": blob.mode, "type": "blob", "sha": blob.blob_sha}
        for blob in overlays
    ]
    overlaid = {blob.path for blob in overlays}
    entries.extend(
        {"path": path, "mode": DEFAULT_FILE_MODE, "type": "blob", "sha": None}
        for path in removals
        if path not in overlaid
    )
    return entries


def compose_commit(
    client: GitWriter,
    branch: str,
    *,
    overlays: list[UploadedBlob],
    message: str,
    base_tree_sha: str | None,
    parent_commit_sha: str | None,
    removals: list[str] | tuple[str, ...] = (),
    replace_all: bool = False,
    max_ref_retries: int = DEFAULT_MAX_REF_RETRIES,
) -> CommitResult:
    """Build one tree and one commit, then move the branch to it.

    The ref is touched only after both objects exist. A rejected fast-forward
    re-reads the branch and rebuilds the tree and commit on the fresh head; the
    ref is never forced.
    """
    conflicts = 0
    while True:
        base = None if replace_all else base_tree_sha
        entries = tree_entries(overlays, () if replace_all else removals)
        try:
            tree_sha = client.create_tree(entries, base_tree=base)
        except GitHubAPIError as exc:
            if removals and not replace_all and exc.status == 422:
                raise RemovalRejectedError(str(exc), status=exc.status) from exc
            raise
        parents = [parent_commit_sha] if parent_commit_sha else []
        commit = client.create_commit(message, tree_sha, parents)

        try:
            if parent_commit_sha is None:
                client.create_ref(branch, commit.commit_sha)
            else:
                client.update_ref(branch, commit.commit_sha)
        except RefConflictError as exc:
            conflicts += 1
            if conflicts > max_ref_retries:
                raise RetriesExhaustedError(
                    f"Branch {branch} kept moving under us; gave up after {conflicts} attempt(s): {exc}"
                ) from exc
            logger.warning(
                "Ref update for %s was rejected (%s); re-reading branch (retry %d/%d)",
                branch,
                exc,
                conflicts,
                max_ref_retries,
            )
            base_tree_sha, parent_commit_sha = read_branch_base(client, branch)
            continue

        logger.info("Branch %s -> %s", branch, commit.commit_sha)
        return commit


def compose_per_file(
    client: GitWriter,
    branch: str,
    overlays: list[UploadedBlob],
    *,
    message_template: str = "Update {path} [skip ci]",
    max_ref_retries: int = DEFAULT_MAX_REF_RETRIES,
) -> tuple[list[CommitResult], list[UploadFailure]]:
    """Degraded mode: one small commit per blob, each on top of the latest head."""
    commits: list[CommitResult] = []
    failures: list[UploadFailure] = []
    for blob in overlays:
        base_tree_sha, parent_commit_sha = read_branch_base(client, branch)
        try:
            commits.append(
                compose_commit(
                    client,
                    branch,
                    overlays=[blob],
                    message=message_template.format(path=blob.path),
                    base_tree_sha=base_tree_sha,
                    parent_commit_sha=parent_commit_sha,
                    max_ref_retries=max_ref_retries,
                )
            )
        except FATAL_ERRORS:
            raise
        except Exception as exc:
            logger.warning("Per-file commit failed for %s: %s", blob.path, exc)
            failures.append(UploadFailure(path=blob.path, error=str(exc), kind=getattr(exc, "kind", "error")))
    return commits, failures
