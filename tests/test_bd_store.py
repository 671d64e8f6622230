"""Tests for refinery.store.bd_store (bd CLI adapter, subprocess mocked)."""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from refinery.errors import NotFoundError, SchemaMismatchError, StoreUnavailableError
from refinery.store import BdIssueStore, open_store
from refinery.store.bd_store import record_from_payload

ISSUE = {
    "id": "gt-mr-abc12",
    "title": "Merge: gt-42",
    "issue_type": "merge-request",
    "status": "open",
    "priority": 1,
    "description": "branch: worker/nix/gt-42\ntarget: main",
    "created_at": "2026-01-05T10:00:00Z",
    "updated_at": "2026-01-05T10:00:00Z",
    "dependencies": [{"depends_on_id": "gt-mr-dep01", "type": "blocks"}],
}


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


@pytest.fixture
def store(tmp_path: Path) -> BdIssueStore:
    return BdIssueStore(str(tmp_path), timeout=5)


class TestPayload:
    """record_from_payload maps bd JSON onto IssueRecord."""

    def test_maps_type_and_dependencies(self) -> None:
        """issue_type becomes type; dependency objects become ids; Z timestamps parse."""
        record = record_from_payload(ISSUE)
        assert record.type == "merge-request"
        assert record.dependencies == ["gt-mr-dep01"]
        assert record.created_at.tzinfo is not None

    def test_null_description(self) -> None:
        """A null description becomes an empty string."""
        assert record_from_payload({**ISSUE, "description": None}).description == ""


class TestCommands:
    """Invocations and error mapping."""

    def test_show_passes_beads_dir_and_timeout(self, store: BdIssueStore, tmp_path: Path) -> None:
        """Every call targets the locator through BEADS_DIR with the store timeout."""
        with patch("refinery.store.bd_store.subprocess.run", return_value=_completed(json.dumps([ISSUE]))) as run:
            record = store.show("gt-mr-abc12")
        assert record.id == "gt-mr-abc12"
        args, kwargs = run.call_args
        assert args[0] == ["bd", "show", "gt-mr-abc12", "--json"]
        assert kwargs["env"]["BEADS_DIR"] == str(tmp_path)
        assert kwargs["timeout"] == 5
        assert kwargs["stdin"] is subprocess.DEVNULL

    def test_create_arguments(self, store: BdIssueStore) -> None:
        """create passes type, priority, description and dependencies."""
        with patch.object(store, "issue_prefix", return_value="gt-mr"):
            with patch("refinery.store.bd_store.subprocess.run", return_value=_completed(json.dumps(ISSUE))) as run:
                store.create("Merge: gt-42", "merge-request", priority=1, description="d", dependencies=["a", "b"], id_prefix="gt-mr")
        assert run.call_args[0][0] == [
            "bd", "create", "Merge: gt-42", "--type", "merge-request", "--priority", "1",
            "--description", "d", "--deps", "a,b", "--json",
        ]

    def test_create_prefix_mismatch(self, store: BdIssueStore) -> None:
        """Requested prefix must match the configured one."""
        with patch.object(store, "issue_prefix", return_value="gt"):
            with pytest.raises(SchemaMismatchError):
                store.create("x", "task", id_prefix="gt-mr")

    def test_get_config(self, store: BdIssueStore) -> None:
        """config get reads the value field; empty means unset."""
        payload = json.dumps({"key": "types.custom", "value": "merge-request"})
        with patch("refinery.store.bd_store.subprocess.run", return_value=_completed(payload)):
            assert store.get_config("types.custom") == "merge-request"
        with patch("refinery.store.bd_store.subprocess.run", return_value=_completed(json.dumps({"value": ""}))):
            assert store.get_config("types.custom") is None

    def test_not_found(self, store: BdIssueStore) -> None:
        """Not-found stderr maps to NotFoundError."""
        failed = _completed(returncode=1, stderr="Error: issue gt-x not found")
        with patch("refinery.store.bd_store.subprocess.run", return_value=failed):
            with pytest.raises(NotFoundError):
                store.show("gt-x")

    def test_schema_error(self, store: BdIssueStore) -> None:
        """Invalid type stderr maps to SchemaMismatchError."""
        failed = _completed(returncode=1, stderr="Error: invalid issue type: merge-request")
        with patch("refinery.store.bd_store.subprocess.run", return_value=failed):
            with pytest.raises(SchemaMismatchError):
                store.create("x", "merge-request")

    def test_timeout_is_unavailable(self, store: BdIssueStore) -> None:
        """A timed-out call raises StoreUnavailableError."""
        with patch("refinery.store.bd_store.subprocess.run", side_effect=subprocess.TimeoutExpired("bd", 5)):
            with pytest.raises(StoreUnavailableError, match="timed out"):
                store.list()

    def test_missing_binary(self, store: BdIssueStore) -> None:
        """Missing bd executable raises StoreUnavailableError."""
        with patch("refinery.store.bd_store.subprocess.run", side_effect=FileNotFoundError("bd")):
            with pytest.raises(StoreUnavailableError, match="not found"):
                store.list()

    def test_bad_json(self, store: BdIssueStore) -> None:
        """Unparseable output raises StoreUnavailableError."""
        with patch("refinery.store.bd_store.subprocess.run", return_value=_completed("not json")):
            with pytest.raises(StoreUnavailableError, match="parse"):
                store.list()

    def test_dependents(self, store: BdIssueStore) -> None:
        """dependents follows the dependents list of show."""
        parent = {**ISSUE, "id": "gt-mr-dep01", "dependents": [{"id": "gt-mr-abc12"}]}
        outputs = [_completed(json.dumps([parent])), _completed(json.dumps([ISSUE]))]
        with patch("refinery.store.bd_store.subprocess.run", side_effect=outputs):
            assert [r.id for r in store.dependents("gt-mr-dep01")] == ["gt-mr-abc12"]

    def test_open_store_bd(self, tmp_path: Path) -> None:
        """open_store builds a bd store with the configured command."""
        s = open_store(str(tmp_path), backend="bd", bd_command="/opt/bd")
        assert isinstance(s, BdIssueStore)
        with patch("refinery.store.bd_store.subprocess.run", return_value=_completed("[]")) as run:
            s.list(issue_type="merge-request", status="open")
        assert run.call_args[0][0] == ["/opt/bd", "list", "--type", "merge-request", "--status", "open", "--json"]
