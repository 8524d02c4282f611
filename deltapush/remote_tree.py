from __future__ import annotations

import logging
from typing import Any, Protocol

from deltapush.config import APP_NAME
from deltapush.models import DEFAULT_FILE_MODE, RemoteEntry, RemoteState


logger = logging.getLogger(APP_NAME)


class TreeSource(Protocol):
    def get_branch_head(self, branch: str) -> str | None: ...

    def get_commit_tree_sha(self, commit_sha: str) -> str: ...

    def get_tree(self, tree_sha: str, *, recursive: bool = False) -> tuple[list[dict[str, Any]], bool]: ...


def _entry_from_item(item: dict[str, Any], prefix: str = "") -> RemoteEntry | None:
    if item.get("type") != "blob" or not item.get("path") or not item.get("sha"):
        return None
    path = f"{prefix}{item['path']}"
    return RemoteEntry(path=path, blob_sha=str(item["sha"]), mode=str(item.get("mode") or DEFAULT_FILE_MODE))


def _walk_tree_iteratively(client: TreeSource, root_tree_sha: str) -> dict[str, RemoteEntry]:
    entries: dict[str, RemoteEntry] = {}
    stack: list[tuple[str, str]] = [("", root_tree_sha)]
    visited: set[str] = set()

    while stack:
        prefix, tree_sha = stack.pop()
        # Identical subtrees share a sha but live at different prefixes.
        key = f"{prefix}\0{tree_sha}"
        if key in visited:
            continue
        visited.add(key)

        items, _ = client.get_tree(tree_sha, recursive=False)
        for item in items:
            if item.get("type") == "tree" and item.get("path") and item.get("sha"):
                stack.append((f"{prefix}{item['path']}/", str(item["sha"])))
                continue
            entry = _entry_from_item(item, prefix)
            if entry is not None:
                entries[entry.path] = entry

    return entries


def read_remote_state(client: TreeSource, branch: str) -> RemoteState:
    """Snapshot a branch as a flat ``path -> RemoteEntry`` map.

    A branch that does not exist yet is a valid first-sync target and yields an
    empty state with no commit.
    """
    commit_sha = client.get_branch_head(branch)
    if commit_sha is None:
        logger.info("Branch %s does not exist yet; treating remote as empty", branch)
        return RemoteState(entries={}, tree_sha=None, commit_sha=None)

    tree_sha = client.get_commit_tree_sha(commit_sha)
    items, truncated = client.get_tree(tree_sha, recursive=True)

    if truncated:
        logger.info("Recursive tree listing was truncated; walking %s directory by directory", tree_sha)
        entries = _walk_tree_iteratively(client, tree_sha)
    else:
        entries = {}
        for item in items:
            entry = _entry_from_item(item)
            if entry is not None:
                entries[entry.path] = entry

    logger.debug("Remote %s@%s has %d blob(s)", branch, commit_sha[:7], len(entries))
    return RemoteState(entries=entries, tree_sha=tree_sha, commit_sha=commit_sha)


def read_branch_base(client: TreeSource, branch: str) -> tuple[str | None, str | None]:
    """Return ``(base_tree_sha, parent_commit_sha)`` without listing the tree."""
    commit_sha = client.get_branch_head(branch)
    if commit_sha is None:
        return None, None
    return client.get_commit_tree_sha(commit_sha), commit_sha
