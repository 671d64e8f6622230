"""Merge queue: merge request lifecycle over the routed issue stores.

Every store access resolves the id (or the merge request prefix) through the
router and bootstraps the resolved store before use. Merge request metadata
lives in the record description, read and written through refinery.fields.

States::

    submit -> open (ready | blocked) -> in_progress -> closed (merged)
                 ^                          |
                 |                          v
               retry <---------- open + error (failed)
    open/in_progress -> closed (rejected)
"""

import logging
from typing import Callable, Iterable, List

from refinery import fields
from refinery.bootstrap import DEFAULT_BOOTSTRAPPER, ConfigBootstrapper
from refinery.config import AppConfig
from refinery.errors import (
    AlreadyClosedError,
    AmbiguousMatchError,
    InvalidBranchError,
    IssueRequiredError,
    NoRouteError,
    NotFailedError,
    NotFoundError,
    NotifyError,
    SchemaMismatchError,
    StoreUnavailableError,
)
from refinery.models import (
    DEFAULT_TARGET,
    MR_TYPE,
    AttemptResult,
    DependencyInfo,
    MergeRequest,
    MRStatus,
    RejectResult,
    integration_branch,
)
from refinery.routing import Route, Router
from refinery.services.git import DEFAULT_TRUNK_BRANCHES, DEFAULT_WORKER_PREFIXES, is_trunk_branch, parse_branch_name
from refinery.services.notify import LogNotifier, Notifier
from refinery.store import IssueRecord, IssueStore, open_store

LOG = logging.getLogger("refinery.queue")

Runner = Callable[[MergeRequest], AttemptResult]
StoreOpener = Callable[[str], IssueStore]


class MergeQueue:
    """Submit, list, inspect, retry and reject merge requests."""

    def __init__(
        self,
        router: Router,
        open_store_at: StoreOpener,
        *,
        mr_prefix: str,
        rig: str = "",
        trunk_branches: Iterable[str] = DEFAULT_TRUNK_BRANCHES,
        worker_prefixes: Iterable[str] = DEFAULT_WORKER_PREFIXES,
        default_priority: int = 2,
        required_types: Iterable[str] = (MR_TYPE,),
        bootstrapper: ConfigBootstrapper | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.router = router
        self.mr_prefix = mr_prefix
        self.rig = rig
        self.trunk_branches = tuple(trunk_branches)
        self.worker_prefixes = tuple(worker_prefixes)
        self.default_priority = default_priority
        self.required_types = tuple(dict.fromkeys([MR_TYPE, *required_types]))
        self.bootstrapper = bootstrapper or DEFAULT_BOOTSTRAPPER
        self.notifier = notifier or LogNotifier()
        self._open_store_at = open_store_at
        self._stores: dict[str, IssueStore] = {}

    @classmethod
    def from_config(cls, config: AppConfig, router: Router, notifier: Notifier | None = None) -> "MergeQueue":
        store_cfg = config.store

        def opener(locator: str) -> IssueStore:
            return open_store(
                locator,
                backend=store_cfg.backend,
                timeout=store_cfg.timeout_seconds,
                bd_command=store_cfg.bd_command,
            )

        return cls(
            router,
            opener,
            mr_prefix=config.refinery.mr_prefix,
            rig=config.refinery.rig,
            trunk_branches=config.refinery.trunk_branches,
            worker_prefixes=config.refinery.worker_branch_prefixes,
            default_priority=config.refinery.default_priority,
            required_types=store_cfg.required_types,
            notifier=notifier,
        )

    # Store access

    def _store_for_route(self, route: Route) -> IssueStore:
        store = self._stores.get(route.locator)
        if store is None:
            store = self._open_store_at(route.locator)
            self._stores[route.locator] = store
        self.bootstrapper.ensure_configured(store, self.required_types, route.id_prefix)
        return store

    def store_for(self, entity_id: str) -> IssueStore:
        """Resolved and bootstrapped store owning ``entity_id``."""
        return self._store_for_route(self.router.route_for(entity_id))

    def _mr_route(self) -> Route:
        return self.router.route_for(self.mr_prefix)

    def mr_store(self) -> IssueStore:
        """Store holding merge requests (routed by mr_prefix)."""
        return self._store_for_route(self._mr_route())

    def _show_any(self, entity_id: str) -> IssueRecord:
        return self.store_for(entity_id).show(entity_id)

    # Views

    def _blockers(self, record: IssueRecord, cache: dict[str, str]) -> List[str]:
        """Dependencies of ``record`` that are not closed, in dependency order."""
        blockers = []
        for dep_id in record.dependencies:
            status = cache.get(dep_id)
            if status is None:
                try:
                    status = self._show_any(dep_id).status
                except (NoRouteError, NotFoundError) as e:
                    LOG.warning("Dependency %s of %s unresolvable, treating as blocking: %s", dep_id, record.id, e)
                    status = "unknown"
                cache[dep_id] = status
            if status != "closed":
                blockers.append(dep_id)
        return blockers

    def _to_mr(self, record: IssueRecord, cache: dict[str, str] | None = None) -> MergeRequest:
        blocked_by = self._blockers(record, cache if cache is not None else {}) if record.status == "open" else []
        return MergeRequest.from_record(record, blocked_by=blocked_by)

    def get(self, mr_id: str) -> MergeRequest:
        """Load one merge request. Raises NotFoundError (also for non-MR records)."""
        record = self.store_for(mr_id).show(mr_id)
        if record.type != MR_TYPE:
            raise NotFoundError(f"{mr_id} is a {record.type}, not a merge request", mr_id=mr_id)
        return self._to_mr(record)

    def list(
        self,
        status: str | None = None,
        ready: bool = False,
        worker: str | None = None,
        epic: str | None = None,
    ) -> List[MergeRequest]:
        """List merge requests in queue order.

        Args:
            status: open, in_progress, closed or all. Defaults to open.
            ready: Only open merge requests with no blockers and no error.
            worker: Case-insensitive exact worker match.
            epic: Only merge requests targeting integration/<epic>.
        """
        if ready:
            status = "open"
        elif not status:
            status = "open"
        store = self.mr_store()
        records = store.list(issue_type=MR_TYPE, status=None if status == "all" else status)
        cache: dict[str, str] = {}
        mrs = [self._to_mr(r, cache) for r in records]
        if ready:
            mrs = [m for m in mrs if m.is_ready]
        if worker:
            wanted = worker.casefold()
            mrs = [m for m in mrs if (m.worker or "").casefold() == wanted]
        if epic:
            expected = integration_branch(epic)
            mrs = [m for m in mrs if m.target == expected]
        mrs.sort(key=MergeRequest.queue_key)
        return mrs

    def status(self, mr_id: str) -> MRStatus:
        """Merge request with what it waits on and what waits on it."""
        mr = self.get(mr_id)
        depends_on = []
        for dep_id in mr.dependencies:
            try:
                depends_on.append(DependencyInfo.from_record(self._show_any(dep_id)))
            except (NoRouteError, NotFoundError):
                depends_on.append(DependencyInfo(id=dep_id, status="unknown"))
        blocks = [DependencyInfo.from_record(r) for r in self.store_for(mr_id).dependents(mr_id)]
        return MRStatus(mr=mr, depends_on=depends_on, blocks=blocks)

    # Submission

    def _inherit_priority(self, issue_id: str) -> int:
        try:
            return self._show_any(issue_id).priority
        except (NoRouteError, NotFoundError, StoreUnavailableError) as e:
            LOG.info("Source issue %s unavailable (%s), using priority %s", issue_id, e, self.default_priority)
            return self.default_priority

    def submit(
        self,
        branch: str,
        target: str | None = None,
        source_issue: str | None = None,
        priority: int | None = None,
        worker: str | None = None,
        rig: str | None = None,
        epic: str | None = None,
        depends_on: Iterable[str] = (),
    ) -> MergeRequest:
        """Create a merge request for ``branch``.

        Source issue and worker are parsed from the branch name when not
        given. Priority is inherited from the source issue when not given.

        Raises:
            InvalidBranchError: ``branch`` is a trunk branch.
            IssueRequiredError: No source issue given or parseable.
        """
        branch = branch.strip()
        if not branch or is_trunk_branch(branch, self.trunk_branches):
            raise InvalidBranchError(f"Cannot submit {branch or 'empty branch'!r} to the merge queue")
        if priority is not None and not 0 <= priority <= 4:
            raise ValueError(f"Priority must be 0-4, got {priority}")
        info = parse_branch_name(branch, self.worker_prefixes)
        issue_id = source_issue or info.issue
        if not issue_id:
            raise IssueRequiredError(f"Cannot determine source issue from branch {branch!r}; pass it explicitly")
        worker = worker or info.worker
        if epic:
            target = integration_branch(epic)
        target = target or DEFAULT_TARGET
        if priority is None:
            priority = self._inherit_priority(issue_id)

        description = fields.encode(
            fields.MRFields(
                branch=branch,
                target=target,
                source_issue=issue_id,
                worker=worker,
                rig=rig or self.rig or None,
            )
        )
        route = self._mr_route()
        store = self._store_for_route(route)
        create_kwargs = dict(
            title=f"Merge: {issue_id}",
            issue_type=MR_TYPE,
            priority=priority,
            description=description,
            dependencies=list(depends_on),
            id_prefix=route.id_prefix,
        )
        try:
            record = store.create(**create_kwargs)
        except SchemaMismatchError as e:
            # Schema changed under us since it was verified; re-check once
            LOG.warning("Store %s rejected merge request (%s), re-bootstrapping", route.locator, e)
            self.bootstrapper.forget(route.locator)
            store = self._store_for_route(route)
            record = store.create(**create_kwargs)
        LOG.info("Submitted %s: %s -> %s (issue %s, P%d)", record.id, branch, target, issue_id, priority)
        return self._to_mr(record)

    # Transitions

    def _write(self, mr_id: str, status: str | None = None, **changes: str | None) -> MergeRequest:
        """Re-read the record, rewrite the given fields and status in one store update."""
        store = self.store_for(mr_id)
        record = store.show(mr_id)
        description = fields.update(record.description, **changes) if changes else None
        updated = store.update(mr_id, status=status, description=description)
        return self._to_mr(updated)

    def claim(self, mr_id: str) -> MergeRequest | None:
        """Move a ready merge request to in_progress. Returns None if it is no longer ready."""
        mr = self.get(mr_id)
        if not mr.is_ready:
            LOG.info("%s no longer ready (%s), skipping", mr_id, mr.display_status)
            return None
        return self._write(mr_id, status="in_progress", error=None)

    def mark_merged(self, mr_id: str, merge_commit: str) -> MergeRequest:
        mr = self._write(mr_id, status="closed", merge_commit=merge_commit, close_reason="merged", error=None)
        LOG.info("%s merged at %s", mr_id, merge_commit[:12])
        return mr

    def mark_failed(self, mr_id: str, error: str) -> MergeRequest:
        """Back to open with ``error`` recorded (failed substate)."""
        mr = self._write(mr_id, status="open", error=error or "merge failed")
        LOG.warning("%s failed: %s", mr_id, error)
        return mr

    def release(self, mr_id: str) -> MergeRequest:
        """Back to open without an error (transient failure, retried next cycle)."""
        return self._write(mr_id, status="open", error=None)

    def released_dependents(self, mr_id: str) -> List[str]:
        """Open dependents of ``mr_id`` that have no remaining blockers."""
        cache: dict[str, str] = {}
        released = []
        for record in self.store_for(mr_id).dependents(mr_id):
            if record.status == "open" and not self._blockers(record, cache):
                released.append(record.id)
        return released

    def retry(self, mr_id: str, run_now: bool = False, runner: Runner | None = None) -> AttemptResult | None:
        """Clear the error of a failed merge request so it is ready again.

        With ``run_now`` the merge is attempted immediately through ``runner``
        (the refinery's single-attempt entry point) and its result returned.

        Raises:
            NotFoundError: No such merge request.
            NotFailedError: The merge request is not open with an error.
        """
        mr = self.get(mr_id)
        if not mr.is_failed:
            raise NotFailedError(f"Merge request {mr_id} has not failed (status: {mr.display_status})", mr_id=mr_id)
        if run_now and runner is None:
            raise ValueError("run_now requires a runner")
        mr = self._write(mr_id, error=None)
        LOG.info("%s queued for retry", mr_id)
        if run_now:
            return runner(mr)
        return None

    def _find(self, id_or_branch: str) -> MergeRequest:
        try:
            return self.get(id_or_branch)
        except (NoRouteError, NotFoundError):
            pass
        matches = [m for m in self.list(status="all") if m.branch == id_or_branch]
        if not matches:
            raise NotFoundError(f"No merge request with id or branch {id_or_branch!r}", mr_id=id_or_branch)
        active = [m for m in matches if m.status != "closed"]
        if len(active) > 1:
            ids = ", ".join(m.id for m in active)
            raise AmbiguousMatchError(f"Branch {id_or_branch!r} matches several merge requests: {ids}")
        if active:
            return active[0]
        return max(matches, key=lambda m: (m.created_at, m.seq))

    def reject(self, id_or_branch: str, reason: str, notify: bool = False) -> RejectResult:
        """Close a merge request as rejected. The source issue is left open.

        Raises:
            NotFoundError: Nothing matches ``id_or_branch``.
            AlreadyClosedError: The merge request is closed.
        """
        mr = self._find(id_or_branch)
        if mr.status == "closed":
            raise AlreadyClosedError(
                f"Merge request {mr.id} is already closed ({mr.close_reason or 'closed'})", mr_id=mr.id
            )
        store = self.store_for(mr.id)
        record = store.show(mr.id)
        description = fields.update(record.description, close_reason="rejected", error=None)
        description = fields.append_note(description, f"Rejected: {reason}")
        store.update(mr.id, status="closed", description=description)
        LOG.info("%s rejected: %s", mr.id, reason)

        result = RejectResult(mr_id=mr.id, branch=mr.branch, worker=mr.worker, source_issue=mr.source_issue)
        if notify:
            if not mr.worker:
                result.notify_error = "no worker recorded on merge request"
            else:
                message = f"Merge request {mr.id} ({mr.branch}) was rejected: {reason}"
                try:
                    self.notifier.send(mr.worker, message)
                    result.notified = True
                except NotifyError as e:
                    LOG.warning("Rejection of %s not delivered to %s: %s", mr.id, mr.worker, e)
                    result.notify_error = str(e)
        return result
