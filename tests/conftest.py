"""Shared fixtures: an in-memory Git object store that speaks the client's API."""

import hashlib
from pathlib import Path
from typing import Any

import pytest

from deltapush.config import DeltaPushConfig
from deltapush.errors import GitHubAPIError, NotFoundError, RefConflictError
from deltapush.hashing import git_blob_sha
from deltapush.models import CommitResult


class FakeGitHub:
    """Minimal Git Data API double with real blob hashing and fast-forward checks."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, dict[str, tuple[str, str]]] = {}
        self.commits: dict[str, dict[str, Any]] = {}
        self.refs: dict[str, str] = {}
        self.calls: list[str] = []
        self.fail_contents: set[bytes] = set()
        self.pending_ref_conflicts = 0
        self.fail_tree_creation = False
        self.truncated = False
        self._counter = 0

    # -- reads --------------------------------------------------------------

    def get_authenticated_user(self) -> str:
        self.calls.append("get_user")
        return "octocat"

    def get_repository(self) -> dict[str, Any]:
        self.calls.append("get_repository")
        return {"full_name": "octo/repo"}

    def get_branch_head(self, branch: str) -> str | None:
        self.calls.append(f"get_ref:{branch}")
        return self.refs.get(branch)

    def get_commit_tree_sha(self, commit_sha: str) -> str:
        self.calls.append("get_commit")
        return self.commits[commit_sha]["tree"]

    def get_tree(self, tree_sha: str, *, recursive: bool = False) -> tuple[list[dict[str, Any]], bool]:
        self.calls.append("get_tree")
        flat = self.trees[tree_sha]
        items = [
            {"path": path, "mode": mode, "type": "blob", "sha": sha}
            for path, (mode, sha) in sorted(flat.items())
        ]
        return items, self.truncated

    # -- writes -------------------------------------------------------------

    def create_blob(self, content: bytes, *, is_binary: bool) -> str:
        self.calls.append("create_blob")
        if content in self.fail_contents:
            raise GitHubAPIError("create_blob: HTTP 422 content too large", status=422)
        sha = git_blob_sha(content)
        self.blobs[sha] = content
        return sha

    def create_tree(self, entries: list[dict[str, Any]], *, base_tree: str | None = None) -> str:
        self.calls.append("create_tree")
        if self.fail_tree_creation:
            raise GitHubAPIError("create_tree: HTTP 422 tree rejected", status=422)
        flat = dict(self.trees[base_tree]) if base_tree else {}
        for entry in entries:
            if entry["sha"] is None:
                if entry["path"] not in flat:
                    raise GitHubAPIError(f"create_tree: path {entry['path']} not in base", status=422)
                del flat[entry["path"]]
            else:
                flat[entry["path"]] = (entry["mode"], entry["sha"])
        sha = hashlib.sha1(repr(sorted(flat.items())).encode()).hexdigest()
        self.trees[sha] = flat
        return sha

    def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitResult:
        self.calls.append("create_commit")
        self._counter += 1
        sha = hashlib.sha1(f"{message}|{tree_sha}|{parents}|{self._counter}".encode()).hexdigest()
        self.commits[sha] = {"tree": tree_sha, "parents": list(parents), "message": message}
        return CommitResult(commit_sha=sha, commit_url=f"https://github.com/octo/repo/commit/{sha}")

    def update_ref(self, branch: str, commit_sha: str) -> None:
        self.calls.append("update_ref")
        if self.pending_ref_conflicts:
            self.pending_ref_conflicts -= 1
            self._concurrent_push(branch)
            raise RefConflictError("update_ref: HTTP 422 Update is not a fast forward", status=422)
        current = self.refs.get(branch)
        if current is None:
            raise NotFoundError("update_ref: HTTP 404 Reference does not exist", status=404)
        if current not in self._ancestry(commit_sha):
            raise RefConflictError("update_ref: HTTP 422 Update is not a fast forward", status=422)
        self.refs[branch] = commit_sha

    def create_ref(self, branch: str, commit_sha: str) -> None:
        self.calls.append("create_ref")
        if branch in self.refs:
            raise RefConflictError("create_ref: HTTP 422 Reference already exists", status=422)
        self.refs[branch] = commit_sha

    # -- helpers ------------------------------------------------------------

    def _ancestry(self, commit_sha: str) -> set[str]:
        seen: set[str] = set()
        stack = [commit_sha]
        while stack:
            sha = stack.pop()
            if sha in seen:
                continue
            seen.add(sha)
            stack.extend(self.commits[sha]["parents"])
        return seen

    def _concurrent_push(self, branch: str) -> None:
        head = self.refs[branch]
        tree = self.commits[head]["tree"]
        blob = self.create_blob(b"someone else\n", is_binary=False)
        new_tree = self.create_tree(
            [{"path": "concurrent.txt", "mode": "100644", "type": "blob", "sha": blob}], base_tree=tree
        )
        commit = self.create_commit("concurrent", new_tree, [head])
        self.refs[branch] = commit.commit_sha

    def seed(self, branch: str, files: dict[str, bytes]) -> str:
        entries = [
            {"path": path, "mode": "100644", "type": "blob", "sha": self.create_blob(content, is_binary=False)}
            for path, content in files.items()
        ]
        tree = self.create_tree(entries)
        commit = self.create_commit("seed", tree, [])
        self.refs[branch] = commit.commit_sha
        self.calls.clear()
        return commit.commit_sha

    def files(self, branch: str) -> dict[str, bytes]:
        tree = self.commits[self.refs[branch]]["tree"]
        return {path: self.blobs[sha] for path, (_, sha) in self.trees[tree].items()}

    def count(self, call: str) -> int:
        return self.calls.count(call)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def config(project: Path) -> DeltaPushConfig:
    return DeltaPushConfig(repo_id="octo/repo", token="test-token", local_root=str(project), branch="main")


def write_files(root: Path, files: dict[str, str | bytes]) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
