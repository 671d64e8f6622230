"""Abstract issue store contract.

A store instance is bound to one explicit locator; nothing here looks at the
process working directory. Implementations raise errors from
``refinery.errors``: NotFoundError, SchemaMismatchError on create and
StoreUnavailableError for I/O failures and timeouts.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List

from refinery.store.schemas import IssueRecord

# Config key holding the comma-separated custom type list
TYPES_KEY = "types.custom"
# Synonymous keys for the id prefix, in read priority order
PREFIX_KEYS = ("issue_prefix", "issue-prefix", "prefix")
# Marker some tools write after setup; informational only
CONFIGURED_KEY = "refinery.configured"

BUILTIN_TYPES = frozenset({"task", "bug", "feature", "epic", "chore"})

STATUSES = ("open", "in_progress", "closed")


def parse_type_list(value: str | None) -> list[str]:
    """Split a comma-separated type list, dropping blanks and duplicates."""
    if not value:
        return []
    entries: list[str] = []
    for part in value.split(","):
        entry = part.strip()
        if entry and entry not in entries:
            entries.append(entry)
    return entries


class IssueStore(ABC):
    """CRUD over generic issue records plus per-store configuration."""

    def __init__(self, locator: str, timeout: float = 30.0) -> None:
        self.locator = locator
        self.timeout = timeout

    @abstractmethod
    def get_config(self, key: str) -> str | None:
        """Return the persisted value of ``key`` or None."""
        ...

    @abstractmethod
    def set_config(self, key: str, value: str) -> None:
        """Persist ``key = value``."""
        ...

    @abstractmethod
    def create(
        self,
        title: str,
        issue_type: str,
        priority: int = 2,
        description: str = "",
        assignee: str | None = None,
        dependencies: Iterable[str] = (),
        id_prefix: str | None = None,
    ) -> IssueRecord:
        """Create a record. Raises SchemaMismatchError for a disallowed type or prefix."""
        ...

    @abstractmethod
    def show(self, issue_id: str) -> IssueRecord:
        """Fetch one record. Raises NotFoundError."""
        ...

    @abstractmethod
    def list(self, issue_type: str | None = None, status: str | None = None) -> List[IssueRecord]:
        """List records, optionally filtered by type and status."""
        ...

    @abstractmethod
    def update(
        self,
        issue_id: str,
        *,
        title: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        description: str | None = None,
        assignee: str | None = None,
    ) -> IssueRecord:
        """Update the given fields. Raises NotFoundError."""
        ...

    @abstractmethod
    def close(self, issue_id: str, reason: str | None = None) -> IssueRecord:
        """Set status closed."""
        ...

    @abstractmethod
    def add_dependency(self, issue_id: str, depends_on: str) -> IssueRecord:
        """Record that ``issue_id`` waits on ``depends_on``."""
        ...

    @abstractmethod
    def dependents(self, issue_id: str) -> List[IssueRecord]:
        """Records in this store that wait on ``issue_id``."""
        ...

    def issue_prefix(self) -> str | None:
        """Configured id prefix, read through the synonym keys in priority order."""
        for key in PREFIX_KEYS:
            value = self.get_config(key)
            if value and value.strip():
                return value.strip()
        return None

    def custom_types(self) -> List[str]:
        return parse_type_list(self.get_config(TYPES_KEY))

    def allowed_types(self) -> set[str]:
        return set(BUILTIN_TYPES) | set(self.custom_types())
