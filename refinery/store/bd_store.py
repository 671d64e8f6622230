"""Issue store that shells out to the ``bd`` issue tracker CLI.

The store directory is passed to every invocation through ``BEADS_DIR`` so
bd never falls back to discovering a database from the working directory.
"""

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Iterable, List

from pydantic import ValidationError

from refinery.errors import NotFoundError, SchemaMismatchError, StoreUnavailableError
from refinery.store.base import IssueStore
from refinery.store.schemas import IssueRecord

LOG = logging.getLogger("refinery.store.bd_store")

_NOT_FOUND_MARKERS = ("not found", "no issue found", "no such issue")
_SCHEMA_MARKERS = ("invalid issue type", "invalid type", "prefix mismatch", "does not match configured prefix")


def _dependency_ids(raw: Any) -> list[str]:
    ids = []
    for entry in raw or []:
        if isinstance(entry, str):
            ids.append(entry)
        elif isinstance(entry, dict):
            dep_id = entry.get("depends_on_id") or entry.get("id")
            if dep_id:
                ids.append(str(dep_id))
    return ids


def record_from_payload(payload: dict[str, Any]) -> IssueRecord:
    """Map a ``bd --json`` issue object onto IssueRecord."""
    data = dict(payload)
    data["type"] = data.get("issue_type") or data.get("type") or "task"
    data["dependencies"] = _dependency_ids(data.get("dependencies"))
    data["description"] = data.get("description") or ""
    return IssueRecord.model_validate(data)


class BdIssueStore(IssueStore):
    """Store adapter over the bd CLI (``bd show``, ``bd create``, ``bd config``, ...)."""

    def __init__(self, locator: str, timeout: float = 30.0, command: str = "bd") -> None:
        super().__init__(locator, timeout)
        self._command = command

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["BEADS_DIR"] = str(self.locator)
        return env

    def _run(self, args: list[str]) -> str:
        """Run a bd command; map failures onto the store error taxonomy."""
        cmd = [self._command, *args]
        cwd = Path(self.locator)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd if cwd.is_dir() else None,
                env=self._env(),
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise StoreUnavailableError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise StoreUnavailableError(f"{self._command} not found") from e
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            lowered = detail.lower()
            LOG.warning("bd %s failed: %s", args, detail)
            if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
                raise NotFoundError(detail or f"bd {' '.join(args)}: not found")
            if any(marker in lowered for marker in _SCHEMA_MARKERS):
                raise SchemaMismatchError(detail)
            raise StoreUnavailableError(f"bd {' '.join(args)}: {detail}")
        return result.stdout or ""

    def _run_json(self, args: list[str]) -> list[dict[str, Any]]:
        raw = self._run([*args, "--json"]).strip()
        if not raw:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"Failed to parse bd json output: {e}") from e
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            return [payload]
        return []

    def _one(self, args: list[str], issue_id: str) -> IssueRecord:
        items = self._run_json(args)
        if not items:
            raise NotFoundError(f"Issue {issue_id!r} not found in {self.locator}", mr_id=issue_id)
        try:
            return record_from_payload(items[0])
        except ValidationError as e:
            raise StoreUnavailableError(f"Unexpected bd payload for {issue_id}: {e}") from e

    def get_config(self, key: str) -> str | None:
        items = self._run_json(["config", "get", key])
        if not items:
            return None
        value = items[0].get("value")
        if value is None or value == "":
            return None
        return str(value)

    def set_config(self, key: str, value: str) -> None:
        self._run(["config", "set", key, value])

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
        if id_prefix:
            configured = self.issue_prefix()
            if configured != id_prefix:
                raise SchemaMismatchError(
                    f"Id prefix {id_prefix!r} does not match store prefix {configured!r} in {self.locator}"
                )
        args = ["create", title, "--type", issue_type, "--priority", str(priority), "--description", description]
        if assignee:
            args += ["--assignee", assignee]
        deps = list(dependencies)
        if deps:
            args += ["--deps", ",".join(deps)]
        record = self._one(args, title)
        LOG.info("Created %s (%s) in %s", record.id, issue_type, self.locator)
        return record

    def show(self, issue_id: str) -> IssueRecord:
        return self._one(["show", issue_id], issue_id)

    def list(self, issue_type: str | None = None, status: str | None = None) -> List[IssueRecord]:
        args = ["list"]
        if issue_type:
            args += ["--type", issue_type]
        if status:
            args += ["--status", status]
        records = []
        for item in self._run_json(args):
            try:
                records.append(record_from_payload(item))
            except ValidationError as e:
                LOG.warning("Skip invalid bd record %s: %s", item.get("id"), e)
        return records

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
        args = ["update", issue_id]
        if title is not None:
            args += ["--title", title]
        if status is not None:
            args += ["--status", status]
        if priority is not None:
            args += ["--priority", str(priority)]
        if description is not None:
            args += ["--description", description]
        if assignee is not None:
            args += ["--assignee", assignee]
        self._run(args)
        return self.show(issue_id)

    def close(self, issue_id: str, reason: str | None = None) -> IssueRecord:
        args = ["close", issue_id]
        if reason:
            args += ["--reason", reason]
        self._run(args)
        return self.show(issue_id)

    def add_dependency(self, issue_id: str, depends_on: str) -> IssueRecord:
        self._run(["dep", "add", issue_id, depends_on])
        return self.show(issue_id)

    def dependents(self, issue_id: str) -> List[IssueRecord]:
        items = self._run_json(["show", issue_id])
        if not items:
            raise NotFoundError(f"Issue {issue_id!r} not found in {self.locator}", mr_id=issue_id)
        dependent_ids = _dependency_ids(items[0].get("dependents"))
        return [self.show(dep_id) for dep_id in dependent_ids]
