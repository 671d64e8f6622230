"""Tests for refinery.bootstrap (store schema setup with read-back)."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from refinery.bootstrap import ConfigBootstrapper
from refinery.errors import ConfigWriteFailedError
from refinery.store import CONFIGURED_KEY, PREFIX_KEYS, TYPES_KEY, YamlIssueStore


def _store(tmp_path: Path) -> YamlIssueStore:
    return YamlIssueStore(str(tmp_path / "store"), timeout=2)


class TestEnsureConfigured:
    """ConfigBootstrapper.ensure_configured."""

    def test_fresh_store_configured(self, tmp_path: Path) -> None:
        """Empty store gets the custom type and every prefix key."""
        store = _store(tmp_path)
        assert ConfigBootstrapper().ensure_configured(store, ["merge-request"], "gt-mr") is True
        assert "merge-request" in store.allowed_types()
        assert all(store.get_config(key) == "gt-mr" for key in PREFIX_KEYS)
        assert store.get_config(CONFIGURED_KEY) == "true"

    def test_idempotent(self, tmp_path: Path) -> None:
        """Second call (even with a new bootstrapper) writes nothing."""
        store = _store(tmp_path)
        ConfigBootstrapper().ensure_configured(store, ["merge-request"], "gt-mr")
        assert ConfigBootstrapper().ensure_configured(store, ["merge-request"], "gt-mr") is False

    def test_keeps_existing_custom_types(self, tmp_path: Path) -> None:
        """Existing custom types are preserved when adding missing ones."""
        store = _store(tmp_path)
        store.set_config(TYPES_KEY, "agent,convoy")
        ConfigBootstrapper().ensure_configured(store, ["merge-request", "task"], "gt")
        assert store.custom_types() == ["agent", "convoy", "merge-request"]

    def test_stale_marker_repaired(self, tmp_path: Path) -> None:
        """A configured marker without the real schema is not trusted; the schema is written."""
        store = _store(tmp_path)
        store.set_config(CONFIGURED_KEY, "true")
        store.set_config("prefix", "old")

        assert ConfigBootstrapper().ensure_configured(store, ["merge-request"], "gt-mr") is True

        reread = _store(tmp_path)
        assert "merge-request" in reread.allowed_types()
        assert reread.issue_prefix() == "gt-mr"
        assert reread.get_config("prefix") == "gt-mr"

    def test_conflicting_synonym_repaired(self, tmp_path: Path) -> None:
        """A lower-priority synonym with a different prefix triggers a rewrite."""
        store = _store(tmp_path)
        store.set_config(TYPES_KEY, "merge-request")
        store.set_config("issue_prefix", "gt-mr")
        store.set_config("issue-prefix", "bd")
        assert ConfigBootstrapper().ensure_configured(store, ["merge-request"], "gt-mr") is True
        assert store.get_config("issue-prefix") == "gt-mr"

    def test_memo_skips_reads(self, tmp_path: Path) -> None:
        """After verification the same bootstrapper does not touch the store again."""
        bootstrapper = ConfigBootstrapper()
        store = _store(tmp_path)
        bootstrapper.ensure_configured(store, ["merge-request"], "gt-mr")
        assert bootstrapper.is_verified(store.locator)

        spy = MagicMock(wraps=store)
        spy.locator = store.locator
        assert bootstrapper.ensure_configured(spy, ["merge-request"], "gt-mr") is False
        spy.get_config.assert_not_called()

    def test_forget_rechecks(self, tmp_path: Path) -> None:
        """forget() makes the next call read the store again and repair drift."""
        bootstrapper = ConfigBootstrapper()
        store = _store(tmp_path)
        bootstrapper.ensure_configured(store, ["merge-request"], "gt-mr")
        store.set_config(TYPES_KEY, "")
        bootstrapper.forget(store.locator)
        assert bootstrapper.ensure_configured(store, ["merge-request"], "gt-mr") is True
        assert "merge-request" in store.custom_types()

    def test_write_not_persisted_raises(self) -> None:
        """A store that never keeps written config raises after two attempts."""
        store = MagicMock()
        store.locator = "/broken"
        store.get_config.return_value = None
        store.custom_types.return_value = []
        store.allowed_types.return_value = {"task"}
        store.issue_prefix.return_value = None

        with pytest.raises(ConfigWriteFailedError) as exc:
            ConfigBootstrapper().ensure_configured(store, ["merge-request"], "gt-mr")
        assert exc.value.kind == "config_write_failed"
        type_writes = [c for c in store.set_config.call_args_list if c.args[0] == TYPES_KEY]
        assert len(type_writes) == 2
        assert not any(c.args[0] == CONFIGURED_KEY for c in store.set_config.call_args_list)
