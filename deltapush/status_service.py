from __future__ import annotations

from deltapush.hashing import git_blob_sha
from deltapush.models import SYMLINK_MODE, DiffResult, LocalFile, RemoteEntry, RemoteState, SyncPlan


def diff_files(local_files: list[LocalFile], remote_entries: dict[str, RemoteEntry]) -> DiffResult:
    local_paths: set[str] = set()

    new_paths: list[str] = []
    changed_paths: list[str] = []
    unchanged_paths: list[str] = []

    for local in local_files:
        local_paths.add(local.path)
        remote = remote_entries.get(local.path)
        if remote is None:
            new_paths.append(local.path)
        elif git_blob_sha(local.content) != remote.blob_sha or (
            (local.mode == SYMLINK_MODE) != (remote.mode == SYMLINK_MODE)
        ):
            # A link and a file with the same bytes are still different entries.
            changed_paths.append(local.path)
        else:
            unchanged_paths.append(local.path)

    deleted_paths = [path for path in remote_entries if path not in local_paths]

    return DiffResult(
        new=sorted(new_paths),
        changed=sorted(changed_paths),
        unchanged=sorted(unchanged_paths),
        deleted=sorted(deleted_paths),
    )


def build_plan(
    diff: DiffResult,
    remote: RemoteState,
    *,
    delete_removed: bool = False,
    replace_all: bool = False,
    local_paths: list[str] | None = None,
) -> SyncPlan:
    if replace_all:
        # A full replace drops the base tree, so every local file must be re-specified.
        return SyncPlan(
            files_to_upload=sorted(local_paths if local_paths is not None else diff.to_upload),
            files_to_delete=list(diff.deleted),
            base_tree_sha=None,
            parent_commit_sha=remote.commit_sha,
        )
    return SyncPlan(
        files_to_upload=diff.to_upload,
        files_to_delete=list(diff.deleted) if delete_removed else [],
        base_tree_sha=remote.tree_sha,
        parent_commit_sha=remote.commit_sha,
    )
