"""Ensure a store's schema (custom types, id prefix) before it is used.

The in-memory memo only skips repeated checks within one process. The first
check of each locator always reads the store's real configuration; a
"configured" marker left by earlier runs is never trusted. Every write is
read back, and a second disagreeing read-back raises ConfigWriteFailedError.
"""

import logging
import threading
from typing import Iterable

from refinery.errors import ConfigWriteFailedError
from refinery.store.base import BUILTIN_TYPES, CONFIGURED_KEY, PREFIX_KEYS, TYPES_KEY, IssueStore, parse_type_list

LOG = logging.getLogger("refinery.bootstrap")

WRITE_ATTEMPTS = 2


def _clean_types(required_types: Iterable[str]) -> list[str]:
    return parse_type_list(",".join(required_types))


def _prefix_ok(store: IssueStore, required_prefix: str) -> bool:
    """Every synonym key that holds a value must hold the required prefix."""
    if store.issue_prefix() != required_prefix:
        return False
    for key in PREFIX_KEYS:
        value = store.get_config(key)
        if value and value.strip() and value.strip() != required_prefix:
            return False
    return True


def _types_ok(store: IssueStore, required_types: list[str]) -> bool:
    allowed = store.allowed_types()
    return all(t in allowed for t in required_types)


class ConfigBootstrapper:
    """Per-process memo of verified store locators."""

    def __init__(self) -> None:
        self._verified: set[str] = set()
        self._lock = threading.Lock()

    def is_verified(self, locator: str) -> bool:
        with self._lock:
            return locator in self._verified

    def forget(self, locator: str) -> None:
        """Drop a locator from the memo so the next call re-reads the store."""
        with self._lock:
            self._verified.discard(locator)

    def reset(self) -> None:
        with self._lock:
            self._verified.clear()

    def _mark(self, locator: str) -> None:
        with self._lock:
            self._verified.add(locator)

    def _write(self, store: IssueStore, required_types: list[str], required_prefix: str) -> None:
        existing = store.custom_types()
        missing = [t for t in required_types if t not in existing and t not in BUILTIN_TYPES]
        if missing:
            store.set_config(TYPES_KEY, ",".join([*existing, *missing]))
        # Readers disagree on the key name; keep all of them in sync
        for key in PREFIX_KEYS:
            store.set_config(key, required_prefix)

    def ensure_configured(
        self,
        store: IssueStore,
        required_types: Iterable[str],
        required_prefix: str,
    ) -> bool:
        """Make sure ``store`` allows ``required_types`` and uses ``required_prefix``.

        Returns True if configuration was written, False if it already matched
        (or the locator was verified earlier in this process).

        Raises:
            ConfigWriteFailedError: Written configuration did not read back
                correctly twice in a row.
            StoreUnavailableError: The store could not be read or written.
        """
        locator = store.locator
        if self.is_verified(locator):
            return False
        types = _clean_types(required_types)
        prefix = required_prefix.strip()
        if _types_ok(store, types) and _prefix_ok(store, prefix):
            self._mark(locator)
            LOG.debug("Store %s already configured", locator)
            return False

        for attempt in range(1, WRITE_ATTEMPTS + 1):
            self._write(store, types, prefix)
            if _types_ok(store, types) and _prefix_ok(store, prefix):
                store.set_config(CONFIGURED_KEY, "true")
                self._mark(locator)
                LOG.info("Configured store %s (types=%s, prefix=%s)", locator, ",".join(types), prefix)
                return True
            LOG.warning("Store %s config read-back mismatch (attempt %d/%d)", locator, attempt, WRITE_ATTEMPTS)
        raise ConfigWriteFailedError(
            f"Store {locator} did not keep types={','.join(types)} prefix={prefix} after {WRITE_ATTEMPTS} writes"
        )


# Process-wide instance shared by every merge queue in this process
DEFAULT_BOOTSTRAPPER = ConfigBootstrapper()


def ensure_configured(store: IssueStore, required_types: Iterable[str], required_prefix: str) -> bool:
    """Module-level shortcut using the process-wide bootstrapper."""
    return DEFAULT_BOOTSTRAPPER.ensure_configured(store, required_types, required_prefix)
