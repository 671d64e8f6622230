"""Issue store backed by YAML files in a store directory.

Layout under the locator directory::

    config.yaml         per-store configuration (types.custom, issue_prefix, ...)
    issues/{id}.yaml    one file per record
    .lock               writer lock (fcntl), acquired with the store timeout

Every write goes to a temporary file and is moved into place with
os.replace, so readers never see a partial record.
"""

import contextlib
import fcntl
import logging
import os
import secrets
import string
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, List

import yaml
from pydantic import ValidationError

from refinery.errors import NotFoundError, SchemaMismatchError, StoreUnavailableError
from refinery.store.base import STATUSES, IssueStore
from refinery.store.schemas import IssueRecord

CONFIG_FILE = "config.yaml"
ISSUES_DIR = "issues"
LOCK_FILE = ".lock"

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits

LOG = logging.getLogger("refinery.store.yaml_store")


def _dump_yaml(payload: Any) -> str:
    return yaml.dump(
        payload,
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
        width=1000,
    )


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class YamlIssueStore(IssueStore):
    """File-backed store: one YAML file per record."""

    def __init__(self, locator: str, timeout: float = 30.0) -> None:
        super().__init__(locator, timeout)
        self._root = Path(locator)

    def _issues_dir(self) -> Path:
        return self._root / ISSUES_DIR

    def _issue_path(self, issue_id: str) -> Path:
        if not issue_id or "/" in issue_id or issue_id.startswith("."):
            raise NotFoundError(f"Invalid issue id {issue_id!r}", mr_id=issue_id)
        return self._issues_dir() / f"{issue_id}.yaml"

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store's writer lock; give up after ``timeout`` seconds."""
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            handle = open(self._root / LOCK_FILE, "a+", encoding="utf-8")
        except OSError as e:
            raise StoreUnavailableError(f"Store {self.locator} not writable: {e}") from e
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StoreUnavailableError(
                            f"Timed out after {self.timeout}s waiting for store lock {self.locator}"
                        ) from None
                    time.sleep(0.05)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    # Configuration

    def _read_config(self) -> dict[str, Any]:
        path = self._root / CONFIG_FILE
        if not path.is_file():
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise StoreUnavailableError(f"Failed to read {path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def get_config(self, key: str) -> str | None:
        value = self._read_config().get(key)
        return None if value is None else str(value)

    def set_config(self, key: str, value: str) -> None:
        with self._locked():
            data = self._read_config()
            data[key] = value
            try:
                _atomic_write(self._root / CONFIG_FILE, _dump_yaml(data))
            except OSError as e:
                raise StoreUnavailableError(f"Failed to write config in {self.locator}: {e}") from e
        LOG.debug("Store %s config %s = %s", self.locator, key, value)

    # Records

    def _load(self, path: Path) -> IssueRecord | None:
        """Load one record file. Returns None if missing or invalid."""
        if not path.is_file():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if not data:
                return None
            data.setdefault("id", path.stem)
            return IssueRecord.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            LOG.warning("Failed to load issue %s: %s", path, e)
            return None

    def _save(self, record: IssueRecord) -> None:
        payload = record.model_dump(mode="json", exclude_none=True)
        try:
            _atomic_write(self._issue_path(record.id), _dump_yaml(payload))
        except OSError as e:
            raise StoreUnavailableError(f"Failed to write {record.id} in {self.locator}: {e}") from e
        LOG.debug("Saved %s to %s", record.id, self.locator)

    def _all(self) -> list[IssueRecord]:
        base = self._issues_dir()
        if not base.is_dir():
            return []
        records = []
        for f in base.glob("*.yaml"):
            record = self._load(f)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.seq)
        return records

    def _new_id(self, prefix: str) -> str:
        while True:
            token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(5))
            issue_id = f"{prefix}-{token}"
            if not self._issue_path(issue_id).exists():
                return issue_id

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
        with self._locked():
            configured = self.issue_prefix()
            if not configured:
                raise SchemaMismatchError(f"Store {self.locator} has no issue prefix configured")
            prefix = id_prefix or configured
            if prefix != configured:
                raise SchemaMismatchError(
                    f"Id prefix {prefix!r} does not match store prefix {configured!r} in {self.locator}"
                )
            if issue_type not in self.allowed_types():
                raise SchemaMismatchError(f"Issue type {issue_type!r} is not allowed in store {self.locator}")
            existing = self._all()
            now = datetime.now(UTC)
            record = IssueRecord(
                id=self._new_id(prefix),
                title=title,
                type=issue_type,
                status="open",
                priority=priority,
                description=description,
                assignee=assignee,
                created_at=now,
                updated_at=now,
                dependencies=list(dependencies),
                seq=(existing[-1].seq + 1) if existing else 1,
            )
            self._save(record)
        LOG.info("Created %s (%s) in %s", record.id, issue_type, self.locator)
        return record

    def show(self, issue_id: str) -> IssueRecord:
        record = self._load(self._issue_path(issue_id))
        if record is None:
            raise NotFoundError(f"Issue {issue_id!r} not found in {self.locator}", mr_id=issue_id)
        return record

    def list(self, issue_type: str | None = None, status: str | None = None) -> List[IssueRecord]:
        return [
            r
            for r in self._all()
            if (issue_type is None or r.type == issue_type) and (status is None or r.status == status)
        ]

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
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown status {status!r}")
        with self._locked():
            record = self.show(issue_id)
            now = datetime.now(UTC)
            if title is not None:
                record.title = title
            if priority is not None:
                record.priority = priority
            if description is not None:
                record.description = description
            if assignee is not None:
                record.assignee = assignee or None
            if status is not None and status != record.status:
                record.status = status
                if status == "closed":
                    record.closed_at = now
                else:
                    record.closed_at = None
                    record.close_reason = None
            record.updated_at = now
            self._save(record)
        LOG.debug("Updated %s in %s", issue_id, self.locator)
        return record

    def close(self, issue_id: str, reason: str | None = None) -> IssueRecord:
        with self._locked():
            record = self.show(issue_id)
            now = datetime.now(UTC)
            record.status = "closed"
            record.closed_at = now
            record.updated_at = now
            record.close_reason = reason
            self._save(record)
        LOG.info("Closed %s in %s (%s)", issue_id, self.locator, reason or "no reason")
        return record

    def add_dependency(self, issue_id: str, depends_on: str) -> IssueRecord:
        with self._locked():
            record = self.show(issue_id)
            if depends_on not in record.dependencies:
                record.dependencies.append(depends_on)
                record.updated_at = datetime.now(UTC)
                self._save(record)
        return record

    def dependents(self, issue_id: str) -> List[IssueRecord]:
        return [r for r in self._all() if issue_id in r.dependencies]
