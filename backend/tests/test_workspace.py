"""Tests for devserver/workspace.py -- per-session workspace directories."""

import os
import time
from pathlib import Path

import pytest

from devserver.errors import WorkspaceConflictError
from devserver.workspace import (
    INSTALL_STAMP_PATH,
    OWNER_STAMP_PATH,
    ProjectFile,
    WorkspaceStore,
)


@pytest.fixture()
def store(tmp_path: Path) -> WorkspaceStore:
    return WorkspaceStore(tmp_path, prefix="devserver-")


# =========================================================================
# Paths and ensure()
# =========================================================================


class TestEnsure:
    """Workspace creation, ownership and first-time detection."""

    def test_path_is_deterministic(self, store: WorkspaceStore, tmp_path: Path) -> None:
        assert store.path_for("doc_1") == tmp_path / "devserver-doc_1"
        assert store.path_for("doc_1") == store.path_for("doc_1")

    def test_invalid_session_id_rejected(self, store: WorkspaceStore) -> None:
        with pytest.raises(ValueError):
            store.path_for("../escape")

    def test_first_ensure_creates_directory(self, store: WorkspaceStore) -> None:
        path, is_first_time = store.ensure("doc_1")
        assert path.is_dir()
        assert is_first_time is True
        assert (path / OWNER_STAMP_PATH).read_text(encoding="utf-8") == "doc_1"

    def test_installed_workspace_is_not_first_time(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        (path / "node_modules").mkdir()
        store.mark_installed(path)
        _, is_first_time = store.ensure("doc_1")
        assert is_first_time is False

    def test_missing_dependencies_dir_means_first_time(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        store.mark_installed(path)
        _, is_first_time = store.ensure("doc_1")
        assert is_first_time is True

    def test_node_modules_without_stamp_means_first_time(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        (path / "node_modules").mkdir()
        _, is_first_time = store.ensure("doc_1")
        assert is_first_time is True

    def test_clear_install_stamp(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        (path / "node_modules").mkdir()
        store.mark_installed(path)
        store.clear_install_stamp(path)
        assert not (path / INSTALL_STAMP_PATH).exists()
        store.clear_install_stamp(path)  # missing stamp is fine

    def test_directory_owned_by_other_session_is_refused(
        self, store: WorkspaceStore
    ) -> None:
        path, _ = store.ensure("doc_1")
        (path / OWNER_STAMP_PATH).write_text("DOC_1", encoding="utf-8")
        with pytest.raises(WorkspaceConflictError) as exc_info:
            store.ensure("doc_1")
        assert exc_info.value.owner == "DOC_1"

    def test_unstamped_existing_directory_is_adopted(
        self, store: WorkspaceStore, tmp_path: Path
    ) -> None:
        existing = tmp_path / "devserver-doc_2"
        existing.mkdir()
        (existing / "index.html").write_text("<html></html>", encoding="utf-8")
        path, _ = store.ensure("doc_2")
        assert path == existing
        assert store.read_owner(path) == "doc_2"
        assert (path / "index.html").exists()

    def test_ensure_refreshes_mtime(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        old = time.time() - 10 * 24 * 3600
        os.utime(path, (old, old))
        store.ensure("doc_1")
        assert path.stat().st_mtime > old + 3600


# =========================================================================
# write()
# =========================================================================


class TestWrite:
    """File tree materialization."""

    def test_writes_nested_files(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        written = store.write(
            path,
            [
                ProjectFile("package.json", "{}"),
                ProjectFile("src/components/App.tsx", "export default 1"),
            ],
        )
        assert written == 2
        assert (path / "src" / "components" / "App.tsx").read_text() == "export default 1"

    def test_overwrites_changed_content(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        store.write(path, [ProjectFile("a.txt", "one")])
        assert store.write(path, [ProjectFile("a.txt", "two")]) == 1
        assert (path / "a.txt").read_text() == "two"

    def test_sync_is_additive(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        store.write(path, [ProjectFile("old.txt", "stale")])
        store.write(path, [ProjectFile("new.txt", "fresh")])
        assert (path / "old.txt").read_text() == "stale"
        assert (path / "new.txt").read_text() == "fresh"

    def test_unchanged_files_are_not_rewritten(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        files = [ProjectFile("a.txt", "same"), ProjectFile("b/c.txt", "line1\r\nline2")]
        store.write(path, files)
        old = time.time() - 3600
        for name in ("a.txt", "b/c.txt"):
            os.utime(path / name, (old, old))

        assert store.write(path, files) == 0
        assert (path / "a.txt").stat().st_mtime == pytest.approx(old, abs=1)
        assert (path / "b" / "c.txt").read_bytes() == b"line1\r\nline2"

    def test_invalid_path_writes_nothing(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        with pytest.raises(ValueError, match="traversal"):
            store.write(
                path,
                [ProjectFile("good.txt", "ok"), ProjectFile("../evil.txt", "bad")],
            )
        assert not (path / "good.txt").exists()
        assert not (path.parent / "evil.txt").exists()

    def test_reserved_path_rejected(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        with pytest.raises(ValueError, match="Reserved"):
            store.write(path, [ProjectFile(".devserver/session", "hijack")])
        assert store.read_owner(path) == "doc_1"


# =========================================================================
# Enumeration and removal
# =========================================================================


class TestListWorkspaces:
    def test_lists_only_prefixed_directories(
        self, store: WorkspaceStore, tmp_path: Path
    ) -> None:
        store.ensure("doc_1")
        (tmp_path / "unrelated").mkdir()
        (tmp_path / "devserver-file.txt").write_text("not a dir")
        names = {entry.name for entry in store.list_workspaces()}
        assert names == {"devserver-doc_1"}

    def test_legacy_timestamped_directory_detected(
        self, store: WorkspaceStore, tmp_path: Path
    ) -> None:
        (tmp_path / "devserver-doc_1-1700000000000").mkdir()
        entries = {entry.name: entry for entry in store.list_workspaces()}
        entry = entries["devserver-doc_1-1700000000000"]
        assert entry.legacy is True
        assert entry.owner is None

    def test_stamped_directory_with_numeric_suffix_is_not_legacy(
        self, store: WorkspaceStore
    ) -> None:
        store.ensure("doc-1700000000000")
        (entry,) = store.list_workspaces()
        assert entry.legacy is False
        assert entry.owner == "doc-1700000000000"

    def test_missing_root(self, tmp_path: Path) -> None:
        assert WorkspaceStore(tmp_path / "nope").list_workspaces() == []

    def test_remove(self, store: WorkspaceStore) -> None:
        path, _ = store.ensure("doc_1")
        store.write(path, [ProjectFile("a/b.txt", "x")])
        store.remove(path)
        assert not path.exists()
