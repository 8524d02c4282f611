"""End-to-end tests for the sync orchestrator against an in-memory object store."""

import io
import sys
import zipfile
from pathlib import Path
from typing import Any

import pytest
from pytest_mock import MockerFixture

from conftest import FakeGitHub, write_files
from deltapush.config import DeltaPushConfig
from deltapush.errors import AuthenticationError, GitHubAPIError, TransientAPIError
from deltapush.session import SyncSession, SyncState
from deltapush.sync_engine import SyncOptions, plan_sync, sync


def _options(**overrides: Any) -> SyncOptions:
    overrides.setdefault("batch_delay_ms", 0)
    return SyncOptions(**overrides)


def test_first_sync_creates_branch(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that syncing to a missing branch creates it with a root commit."""
    write_files(project, {"a.txt": "x", "src/b.ts": "y"})
    session = SyncSession()

    report = sync(config, _options(), session, client=fake_github)

    assert report.ok
    assert report.uploaded_count == 2 and report.total_planned == 2
    assert report.commit is not None
    assert fake_github.refs["main"] == report.commit.commit_sha
    assert fake_github.count("create_ref") == 1
    assert fake_github.files("main") == {"a.txt": b"x", "src/b.ts": b"y"}
    assert session.history == [
        SyncState.IDLE,
        SyncState.ENUMERATING,
        SyncState.READING_REMOTE,
        SyncState.DIFFING,
        SyncState.UPLOADING,
        SyncState.COMPOSING,
        SyncState.DONE,
    ]


def test_second_run_without_changes_uploads_nothing(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies idempotence: an unchanged project produces no blobs and no commit."""
    write_files(project, {"a.txt": "x", "b.txt": "y"})
    sync(config, _options(), client=fake_github)
    head = fake_github.refs["main"]
    fake_github.calls.clear()

    report = sync(config, _options(), client=fake_github)

    assert report.ok
    assert report.uploaded_count == 0
    assert report.skipped_unchanged == 2
    assert report.commit is None
    assert fake_github.refs["main"] == head
    assert fake_github.count("create_blob") == 0
    assert fake_github.count("create_commit") == 0


def test_only_the_edited_file_is_uploaded(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that one local edit produces one blob on top of the previous commit."""
    write_files(project, {"a.txt": "x", "b.txt": "y", "c.txt": "z"})
    sync(config, _options(), client=fake_github)
    previous = fake_github.refs["main"]
    write_files(project, {"b.txt": "y2"})
    fake_github.calls.clear()

    report = sync(config, _options(), client=fake_github)

    assert report.uploaded_count == 1 and report.skipped_unchanged == 2
    assert fake_github.count("create_blob") == 1
    assert fake_github.commits[fake_github.refs["main"]]["parents"] == [previous]
    assert fake_github.files("main")["b.txt"] == b"y2"


def test_partial_upload_failure_still_commits(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that 2 of 3 files are committed when the third fails."""
    write_files(project, {"a.txt": "1", "b.txt": "2", "c.txt": "3"})
    fake_github.fail_contents.add(b"2")

    report = sync(config, _options(), client=fake_github)

    assert report.uploaded_count == 2 and report.total_planned == 3
    assert [failure.path for failure in report.failed] == ["b.txt"]
    assert report.commit is not None
    assert fake_github.files("main") == {"a.txt": b"1", "c.txt": b"3"}


def test_all_uploads_failing_creates_no_commit(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that nothing is composed when every upload failed."""
    write_files(project, {"a.txt": "1"})
    fake_github.fail_contents.add(b"1")

    report = sync(config, _options(), client=fake_github)

    assert report.failure is not None
    assert report.commit is None
    assert "main" not in fake_github.refs


def test_remote_only_files_survive_without_opt_in(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that deletion never happens unless explicitly enabled."""
    fake_github.seed("main", {"a.txt": b"x", "c.txt": b"z"})
    write_files(project, {"a.txt": "x", "b.txt": "y"})

    report = sync(config, _options(), client=fake_github)

    assert report.deleted_count == 0
    assert fake_github.files("main") == {"a.txt": b"x", "b.txt": b"y", "c.txt": b"z"}


def test_delete_removed_reports_exact_paths(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies the reference scenario with deletion enabled."""
    fake_github.seed("main", {"a.txt": b"x", "c.txt": b"z"})
    write_files(project, {"a.txt": "x", "b.txt": "y"})

    report = sync(config, _options(delete_removed=True), client=fake_github)

    assert report.uploaded_count == 1
    assert report.skipped_unchanged == 1
    assert report.deleted_paths == ["c.txt"] and report.deleted_count == 1
    assert fake_github.files("main") == {"a.txt": b"x", "b.txt": b"y"}


def test_deletion_only_run_commits(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that removals alone are enough to produce a commit."""
    fake_github.seed("main", {"a.txt": b"x", "old.txt": b"o"})
    write_files(project, {"a.txt": "x"})

    report = sync(config, _options(delete_removed=True), client=fake_github)

    assert report.uploaded_count == 0
    assert report.deleted_paths == ["old.txt"]
    assert fake_github.files("main") == {"a.txt": b"x"}


def test_failed_deletion_keeps_uploads(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path, mocker: MockerFixture
) -> None:
    """Verifies that a rejected removal is reported without dropping the uploads."""
    fake_github.seed("main", {"a.txt": b"x", "c.txt": b"z"})
    write_files(project, {"a.txt": "x", "b.txt": "y"})
    original = fake_github.create_tree

    def _reject_removals(entries, *, base_tree=None):
        if any(entry["sha"] is None for entry in entries):
            raise GitHubAPIError("create_tree: HTTP 422 cannot remove", status=422)
        return original(entries, base_tree=base_tree)

    mocker.patch.object(fake_github, "create_tree", side_effect=_reject_removals)

    report = sync(config, _options(delete_removed=True), client=fake_github)

    assert report.commit is not None
    assert report.deletion_error is not None
    assert report.deleted_count == 0
    assert fake_github.files("main") == {"a.txt": b"x", "b.txt": b"y", "c.txt": b"z"}


def test_replace_all_rebuilds_tree(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that a full replace uploads everything and drops remote-only files."""
    fake_github.seed("main", {"a.txt": b"x", "stale.txt": b"s"})
    write_files(project, {"a.txt": "x", "b.txt": "y"})

    report = sync(config, _options(replace_all=True), client=fake_github)

    assert report.uploaded_count == 2
    assert report.deleted_paths == ["stale.txt"]
    assert fake_github.files("main") == {"a.txt": b"x", "b.txt": b"y"}


def test_cancel_before_commit_leaves_branch_untouched(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that a stop between batches never moves the ref."""
    head = fake_github.seed("main", {"keep.txt": b"k"})
    write_files(project, {f"f{i}.txt": str(i) for i in range(6)})
    session = SyncSession()
    session.sleep = lambda _: session.cancel()

    report = sync(config, _options(batch_size=2, batch_delay_ms=50), session, client=fake_github)

    assert report.cancelled and not report.ok
    assert report.uploaded_count == 2
    assert report.commit is None
    assert fake_github.refs["main"] == head
    assert fake_github.count("create_commit") == 0
    assert session.state is SyncState.CANCELLED


def test_bad_credentials_abort_before_any_work(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path, mocker: MockerFixture
) -> None:
    """Verifies that auth failure is fatal and reported as a structured reason."""
    write_files(project, {"a.txt": "x"})
    mocker.patch.object(fake_github, "get_authenticated_user", side_effect=AuthenticationError("Bad credentials"))
    session = SyncSession()

    report = sync(config, _options(), session, client=fake_github)

    assert report.failure is not None
    assert report.failure.kind == "authentication"
    assert report.failure.state == "idle"
    assert session.state is SyncState.FAILED
    assert fake_github.count("create_blob") == 0


def test_empty_project_is_refused(fake_github: FakeGitHub, config: DeltaPushConfig) -> None:
    """Verifies that an empty enumeration never turns into a commit."""
    report = sync(config, _options(delete_removed=True), client=fake_github)

    assert report.failure is not None and report.failure.kind == "empty-source"
    assert report.failure.state == "enumerating"


@pytest.mark.parametrize(
    "overrides",
    [{"batch_size": 0}, {"batch_delay_ms": 5001}, {"batch_delay_ms": -1}, {"archive_name": "a/b.zip"}],
)
def test_malformed_options_are_fatal(fake_github: FakeGitHub, config: DeltaPushConfig, overrides: dict) -> None:
    """Verifies that bad knobs fail fast as configuration errors."""
    report = sync(config, SyncOptions(**overrides), client=fake_github)
    assert report.failure is not None and report.failure.kind == "configuration"
    assert fake_github.calls == []


def test_malformed_repo_is_fatal(fake_github: FakeGitHub, project: Path) -> None:
    """Verifies that a repository id without an owner is rejected."""
    config = DeltaPushConfig(repo_id="just-a-name", token="t", local_root=str(project))
    report = sync(config, _options(), client=fake_github)
    assert report.failure is not None and report.failure.kind == "configuration"


def test_progress_events_cover_every_upload(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that the caller sees one progress event per planned file."""
    write_files(project, {f"f{i}.txt": str(i) for i in range(5)})
    events: list[tuple[int, int, str]] = []

    sync(config, _options(batch_size=2), SyncSession(progress=lambda *e: events.append(e)), client=fake_github)

    assert [event[:2] for event in events] == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]


def test_executable_mode_is_preserved(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that a changed executable keeps its remote file mode."""
    fake_github.seed("main", {"run.sh": b"old"})
    head_tree = fake_github.commits[fake_github.refs["main"]]["tree"]
    fake_github.trees[head_tree]["run.sh"] = ("100755", fake_github.trees[head_tree]["run.sh"][1])
    write_files(project, {"run.sh": "new"})

    sync(config, _options(), client=fake_github)

    tree = fake_github.commits[fake_github.refs["main"]]["tree"]
    assert fake_github.trees[tree]["run.sh"][0] == "100755"


def test_archive_mode_commits_single_zip(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that archive mode uploads one zip at the repo root on top of the base tree."""
    fake_github.seed("main", {"README.md": b"hi"})
    write_files(project, {"a.txt": "x", "src/b.ts": "y", ".env": "SECRET=1"})

    report = sync(config, _options(archive_mode=True, archive_name="bundle.zip"), client=fake_github)

    assert report.mode == "archive"
    assert report.uploaded_count == 1 and report.total_planned == 1
    files = fake_github.files("main")
    assert set(files) == {"README.md", "bundle.zip"}
    with zipfile.ZipFile(io.BytesIO(files["bundle.zip"])) as archive:
        assert sorted(archive.namelist()) == ["a.txt", "src/b.ts"]
    assert fake_github.count("get_tree") == 0


def test_archive_default_name(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies the dated default archive name."""
    write_files(project, {"a.txt": "x"})

    sync(config, _options(archive_mode=True), client=fake_github)

    (name,) = fake_github.files("main")
    assert name.startswith("repo_") and name.endswith(".zip")


def test_per_file_fallback_when_bulk_commit_fails(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path, mocker: MockerFixture
) -> None:
    """Verifies the explicit degraded mode: one commit per file."""
    write_files(project, {"a.txt": "x", "b.txt": "y"})
    fake_github.seed("main", {"keep.txt": b"k"})
    original = fake_github.create_tree

    def _reject_bulk(entries, *, base_tree=None):
        if len(entries) > 1:
            raise GitHubAPIError("create_tree: HTTP 422 too big", status=422)
        return original(entries, base_tree=base_tree)

    mocker.patch.object(fake_github, "create_tree", side_effect=_reject_bulk)

    report = sync(config, _options(fallback_per_file=True), client=fake_github)

    assert report.mode == "per-file"
    assert report.ok
    assert len(report.extra_commits) == 1
    assert fake_github.files("main") == {"keep.txt": b"k", "a.txt": b"x", "b.txt": b"y"}


def test_bulk_failure_without_fallback_is_reported(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that without opt-in the bulk failure surfaces and the branch stays put."""
    head = fake_github.seed("main", {"keep.txt": b"k"})
    write_files(project, {"a.txt": "x"})
    fake_github.fail_tree_creation = True

    report = sync(config, _options(), client=fake_github)

    assert report.failure is not None and report.failure.state == "composing"
    assert fake_github.refs["main"] == head


def test_zip_source(fake_github: FakeGitHub, config: DeltaPushConfig, tmp_path: Path) -> None:
    """Verifies that a project archive can stand in for the directory."""
    zip_path = tmp_path / "upload.zip"
    with zipfile.ZipFile(zip_path, "w") as archive:
        archive.writestr("src/app.ts", "app")
        archive.writestr("node_modules/x.js", "x")

    report = sync(config, _options(source_zip=str(zip_path)), client=fake_github)

    assert report.ok
    assert fake_github.files("main") == {"src/app.ts": b"app"}


def test_plan_sync_is_read_only(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that compare-only mode reports the diff without writing."""
    fake_github.seed("main", {"a.txt": b"x", "c.txt": b"z"})
    write_files(project, {"a.txt": "x", "b.txt": "y"})

    preview = plan_sync(config, _options(), client=fake_github)

    assert preview.diff.new == ["b.txt"]
    assert preview.diff.unchanged == ["a.txt"]
    assert preview.diff.deleted == ["c.txt"]
    assert preview.plan.files_to_upload == ["b.txt"]
    assert preview.branch_exists
    assert not any(call.startswith(("create_", "update_")) for call in fake_github.calls)


def test_replace_all_keeps_files_that_failed_to_upload(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that a full replace never drops a remote file just because its upload failed."""
    fake_github.seed("main", {"keep.txt": b"k", "big.bin": b"B", "old.txt": b"o"})
    write_files(project, {"keep.txt": "k", "big.bin": b"B", "new.txt": b"N"})
    fake_github.fail_contents.update({b"B", b"N"})

    report = sync(config, _options(replace_all=True), client=fake_github)

    assert sorted(failure.path for failure in report.failed) == ["big.bin", "new.txt"]
    assert fake_github.files("main") == {"keep.txt": b"k", "big.bin": b"B"}
    assert report.deleted_paths == ["old.txt"]
    assert report.deleted_count == 1


def test_replace_all_reports_every_removed_path(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path
) -> None:
    """Verifies that deleted_paths lists exactly what is gone from the new tree."""
    before = {"a.txt": b"x", "b.txt": b"y", "c.txt": b"z"}
    fake_github.seed("main", before)
    write_files(project, {"a.txt": "x2"})

    report = sync(config, _options(replace_all=True), client=fake_github)

    after = fake_github.files("main")
    assert report.deleted_paths == sorted(set(before) - set(after)) == ["b.txt", "c.txt"]


def test_commit_failure_with_removals_is_not_blamed_on_deletion(
    fake_github: FakeGitHub, config: DeltaPushConfig, project: Path, mocker: MockerFixture
) -> None:
    """Verifies that a server error after the tree is built fails the run instead of dropping deletions."""
    head = fake_github.seed("main", {"a.txt": b"x", "c.txt": b"z"})
    write_files(project, {"a.txt": "x", "b.txt": "y"})
    mocker.patch.object(
        fake_github, "create_commit", side_effect=TransientAPIError("create_commit: HTTP 503", status=503)
    )

    report = sync(config, _options(delete_removed=True), client=fake_github)

    assert report.failure is not None and report.failure.kind == "transient"
    assert report.deletion_error is None
    assert report.commit is None
    assert fake_github.count("create_tree") == 1
    assert fake_github.refs["main"] == head


@pytest.mark.skipif(sys.platform == "win32", reason="symlinks")
def test_symlink_round_trip_is_idempotent(fake_github: FakeGitHub, config: DeltaPushConfig, project: Path) -> None:
    """Verifies that a local link is committed as a link and then left alone."""
    write_files(project, {"target.txt": "hello\n"})
    (project / "link.txt").symlink_to("target.txt")

    first = sync(config, _options(), client=fake_github)
    tree = fake_github.commits[fake_github.refs["main"]]["tree"]
    second = sync(config, _options(), client=fake_github)

    assert first.uploaded_count == 2
    assert fake_github.trees[tree]["link.txt"][0] == "120000"
    assert fake_github.files("main")["link.txt"] == b"target.txt"
    assert second.uploaded_count == 0
    assert second.commit is None
