from __future__ import annotations

from dataclasses import dataclass, field


DEFAULT_FILE_MODE = "100644"
EXECUTABLE_FILE_MODE = "100755"
SYMLINK_MODE = "120000"


@dataclass(slots=True, frozen=True)
class LocalFile:
    path: str
    content: bytes
    is_binary: bool
    # Set only when the local entry dictates the mode itself (symlinks).
    mode: str | None = None


@dataclass(slots=True, frozen=True)
class RemoteEntry:
    path: str
    blob_sha: str
    mode: str = DEFAULT_FILE_MODE


@dataclass(slots=True, frozen=True)
class RemoteState:
    entries: dict[str, RemoteEntry]
    tree_sha: str | None
    commit_sha: str | None

    @property
    def branch_exists(self) -> bool:
        return self.commit_sha is not None


@dataclass(slots=True)
class DiffResult:
    new: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.changed or self.deleted)

    @property
    def to_upload(self) -> list[str]:
        return sorted([*self.new, *self.changed])


@dataclass(slots=True)
class SyncPlan:
    files_to_upload: list[str]
    files_to_delete: list[str]
    base_tree_sha: str | None
    parent_commit_sha: str | None


@dataclass(slots=True, frozen=True)
class UploadedBlob:
    path: str
    blob_sha: str
    mode: str = DEFAULT_FILE_MODE


@dataclass(slots=True, frozen=True)
class UploadFailure:
    path: str
    error: str
    kind: str = "error"
    reset_at: int | None = None


UploadOutcome = UploadedBlob | UploadFailure


@dataclass(slots=True, frozen=True)
class CommitResult:
    commit_sha: str
    commit_url: str


@dataclass(slots=True, frozen=True)
class SyncFailure:
    kind: str
    message: str
    state: str


@dataclass(slots=True)
class SyncReport:
    uploaded_count: int = 0
    total_planned: int = 0
    skipped_unchanged: int = 0
    deleted_count: int = 0
    deleted_paths: list[str] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)
    commit: CommitResult | None = None
    extra_commits: list[CommitResult] = field(default_factory=list)
    deletion_error: str | None = None
    cancelled: bool = False
    mode: str = "incremental"
    failure: SyncFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.cancelled

    @property
    def commit_url(self) -> str | None:
        return self.commit.commit_url if self.commit is not None else None
