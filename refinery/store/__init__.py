"""Issue store contract and backends (YAML files, bd CLI)."""

from refinery.store.base import (
    BUILTIN_TYPES,
    CONFIGURED_KEY,
    PREFIX_KEYS,
    TYPES_KEY,
    IssueStore,
    parse_type_list,
)
from refinery.store.bd_store import BdIssueStore
from refinery.store.schemas import IssueRecord
from refinery.store.yaml_store import YamlIssueStore

BACKENDS = ("yaml", "bd")


def open_store(locator: str, backend: str = "yaml", timeout: float = 30.0, bd_command: str = "bd") -> IssueStore:
    """Open the store at an explicit locator with the given backend."""
    if backend == "yaml":
        return YamlIssueStore(locator, timeout=timeout)
    if backend == "bd":
        return BdIssueStore(locator, timeout=timeout, command=bd_command)
    raise ValueError(f"Unknown store backend {backend!r} (expected one of {BACKENDS})")


__all__ = [
    "BACKENDS",
    "BUILTIN_TYPES",
    "CONFIGURED_KEY",
    "PREFIX_KEYS",
    "TYPES_KEY",
    "BdIssueStore",
    "IssueRecord",
    "IssueStore",
    "YamlIssueStore",
    "open_store",
    "parse_type_list",
]
