"""Tests for refinery.store.yaml_store (YAML file issue store)."""

import fcntl
from pathlib import Path

import pytest
import yaml

from refinery.errors import NotFoundError, SchemaMismatchError, StoreUnavailableError
from refinery.store import TYPES_KEY, YamlIssueStore, open_store


@pytest.fixture
def store(tmp_path: Path) -> YamlIssueStore:
    s = YamlIssueStore(str(tmp_path / "store"), timeout=0.3)
    s.set_config("issue_prefix", "gt")
    s.set_config(TYPES_KEY, "merge-request")
    return s


class TestCreate:
    """create assigns ids and sequence numbers and validates the schema."""

    def test_create_and_show(self, store: YamlIssueStore) -> None:
        """Created record is persisted with prefix id, seq and timestamps."""
        record = store.create("Fix login", "task", priority=1, description="body", dependencies=["gt-1"])
        assert record.id.startswith("gt-")
        assert record.seq == 1
        assert record.status == "open"
        loaded = store.show(record.id)
        assert loaded == record

    def test_seq_increases(self, store: YamlIssueStore) -> None:
        """seq is strictly increasing within the store."""
        first = store.create("a", "task")
        second = store.create("b", "merge-request")
        assert second.seq == first.seq + 1

    def test_file_layout(self, store: YamlIssueStore, tmp_path: Path) -> None:
        """One YAML file per record under issues/."""
        record = store.create("a", "task")
        data = yaml.safe_load((tmp_path / "store" / "issues" / f"{record.id}.yaml").read_text(encoding="utf-8"))
        assert data["id"] == record.id
        assert data["type"] == "task"

    def test_type_not_allowed(self, store: YamlIssueStore) -> None:
        """Type outside built-in and custom types raises SchemaMismatchError."""
        with pytest.raises(SchemaMismatchError, match="convoy"):
            store.create("a", "convoy")

    def test_prefix_mismatch(self, store: YamlIssueStore) -> None:
        """Requested id prefix must match the configured one."""
        with pytest.raises(SchemaMismatchError, match="does not match"):
            store.create("a", "task", id_prefix="bd")

    def test_no_prefix_configured(self, tmp_path: Path) -> None:
        """A store without a prefix cannot create records."""
        bare = YamlIssueStore(str(tmp_path / "bare"))
        with pytest.raises(SchemaMismatchError, match="no issue prefix"):
            bare.create("a", "task")


class TestReadUpdate:
    """show, list, update, close and dependencies."""

    def test_show_missing(self, store: YamlIssueStore) -> None:
        """Unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.show("gt-nope")

    def test_show_rejects_path_ids(self, store: YamlIssueStore) -> None:
        """Ids that would escape the issues directory are not found."""
        with pytest.raises(NotFoundError):
            store.show("../config")

    def test_list_filters(self, store: YamlIssueStore) -> None:
        """list filters by type and status, in creation order."""
        a = store.create("a", "task")
        b = store.create("b", "merge-request")
        c = store.create("c", "merge-request")
        store.close(c.id)
        assert [r.id for r in store.list()] == [a.id, b.id, c.id]
        assert [r.id for r in store.list(issue_type="merge-request")] == [b.id, c.id]
        assert [r.id for r in store.list(issue_type="merge-request", status="open")] == [b.id]

    def test_invalid_file_skipped(self, store: YamlIssueStore, tmp_path: Path) -> None:
        """A corrupt record file is skipped by list."""
        a = store.create("a", "task")
        (tmp_path / "store" / "issues" / "gt-bad.yaml").write_text("id: [unclosed", encoding="utf-8")
        assert [r.id for r in store.list()] == [a.id]

    def test_update_status_transitions(self, store: YamlIssueStore) -> None:
        """Closing sets closed_at; reopening clears closed_at and close_reason."""
        record = store.create("a", "task")
        closed = store.close(record.id, reason="rejected")
        assert closed.closed_at is not None
        assert closed.close_reason == "rejected"
        reopened = store.update(record.id, status="open", description="again")
        assert reopened.closed_at is None
        assert reopened.close_reason is None
        assert store.show(record.id).description == "again"

    def test_update_unknown_status(self, store: YamlIssueStore) -> None:
        """Unknown status raises ValueError."""
        record = store.create("a", "task")
        with pytest.raises(ValueError, match="status"):
            store.update(record.id, status="done")

    def test_dependencies_and_dependents(self, store: YamlIssueStore) -> None:
        """add_dependency is idempotent; dependents finds waiting records."""
        a = store.create("a", "task")
        b = store.create("b", "merge-request")
        store.add_dependency(b.id, a.id)
        store.add_dependency(b.id, a.id)
        assert store.show(b.id).dependencies == [a.id]
        assert [r.id for r in store.dependents(a.id)] == [b.id]


class TestLocking:
    """Writes wait for the store lock up to the timeout."""

    def test_lock_timeout(self, store: YamlIssueStore, tmp_path: Path) -> None:
        """A held lock makes writes fail with StoreUnavailableError after the timeout."""
        with open(tmp_path / "store" / ".lock", "a+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                with pytest.raises(StoreUnavailableError, match="Timed out"):
                    store.create("a", "task")
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        assert store.create("a", "task").seq == 1


class TestOpenStore:
    """open_store picks the backend."""

    def test_unknown_backend(self, tmp_path: Path) -> None:
        """Unknown backend raises ValueError."""
        with pytest.raises(ValueError, match="backend"):
            open_store(str(tmp_path), backend="sqlite")

    def test_yaml_backend(self, tmp_path: Path) -> None:
        """yaml backend is YamlIssueStore bound to the locator."""
        s = open_store(str(tmp_path), timeout=5)
        assert isinstance(s, YamlIssueStore)
        assert s.locator == str(tmp_path)
        assert s.timeout == 5
