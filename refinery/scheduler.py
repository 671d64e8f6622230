"""Refinery: every interval, merge the next ready merge request of each target.

At most one merge attempt runs per target branch at a time. Targets are
independent and processed concurrently.
"""

import contextlib
import fcntl
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterator, List

from refinery.errors import LockTimeoutError, MergeFailedError, StoreUnavailableError, VcsUnavailableError
from refinery.models import AttemptResult, MergeRequest
from refinery.queue import MergeQueue
from refinery.services.git import Vcs

LOG = logging.getLogger("refinery.scheduler")

_POLL_SECONDS = 0.05
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class TargetLock:
    """Mutual exclusion for one target branch.

    Always a thread lock; with ``path`` also an fcntl lock on that file, so
    a CLI ``retry --now`` and a running refinery exclude each other.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._path = path
        self._handle = None

    def acquire(self, timeout: float = 0) -> bool:
        """Acquire within ``timeout`` seconds (0: try once). Returns False when busy."""
        deadline = time.monotonic() + timeout
        got = self._lock.acquire(timeout=timeout) if timeout > 0 else self._lock.acquire(blocking=False)
        if not got:
            return False
        if self._path is None:
            return True
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self._path, "a+", encoding="utf-8")
        except OSError:
            self._lock.release()
            raise
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._handle = handle
                return True
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    self._lock.release()
                    return False
                time.sleep(_POLL_SECONDS)

    def release(self) -> None:
        if self._handle is not None:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None
        self._lock.release()

    @contextlib.contextmanager
    def held(self, timeout: float = 0) -> Iterator[bool]:
        """Context manager yielding whether the lock was acquired."""
        acquired = self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


class Refinery:
    """Drains the ready set of the merge queue into the target branches.

    Target locks are files under ``lock_dir`` (default: ``locks/`` in the
    merge request store), so every refinery and CLI process sharing that
    store excludes the others per target.
    """

    def __init__(
        self,
        queue: MergeQueue,
        vcs: Vcs,
        max_parallel_targets: int = 4,
        lock_timeout: float = 30.0,
        lock_dir: Path | None = None,
    ) -> None:
        self.queue = queue
        self.vcs = vcs
        self.max_parallel_targets = max(1, max_parallel_targets)
        self.lock_timeout = lock_timeout
        if lock_dir is None:
            lock_dir = Path(queue.router.route_for(queue.mr_prefix).locator) / "locks"
        self.lock_dir = Path(lock_dir)
        self._locks: dict[str, TargetLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, target: str) -> TargetLock:
        """Per-target lock, created on first use."""
        with self._guard:
            lock = self._locks.get(target)
            if lock is None:
                lock = TargetLock(self.lock_dir / f"{_UNSAFE.sub('_', target)}.lock")
                self._locks[target] = lock
            return lock

    def next_for(self, target: str) -> MergeRequest | None:
        """Ready merge request for ``target`` with the lowest priority value, oldest first."""
        ready = [mr for mr in self.queue.list(ready=True) if mr.target == target]
        return min(ready, key=MergeRequest.queue_key) if ready else None

    def process(self, mr: MergeRequest) -> AttemptResult:
        """One merge attempt. Caller holds the target lock.

        MergeFailedError is recorded on the merge request; store and VCS
        timeouts put it back in the ready set unchanged. Any other error
        releases the claim and propagates.
        """
        target = mr.target
        try:
            claimed = self.queue.claim(mr.id)
        except StoreUnavailableError as e:
            LOG.warning("Cannot claim %s: %s", mr.id, e)
            return AttemptResult(mr_id=mr.id, target=target, outcome="deferred", error=str(e))
        if claimed is None:
            return AttemptResult(mr_id=mr.id, target=target, outcome="skipped")

        LOG.info("Merging %s: %s -> %s", mr.id, claimed.branch, target)
        try:
            if not claimed.branch:
                raise MergeFailedError("Merge request has no branch", mr_id=mr.id)
            sha = self.vcs.merge(claimed.branch, target)
        except MergeFailedError as e:
            self.queue.mark_failed(mr.id, str(e))
            return AttemptResult(mr_id=mr.id, target=target, outcome="failed", error=str(e))
        except VcsUnavailableError as e:
            LOG.warning("VCS unavailable while merging %s, will retry: %s", mr.id, e)
            self.queue.release(mr.id)
            return AttemptResult(mr_id=mr.id, target=target, outcome="deferred", error=str(e))
        except Exception:
            self._abandon(mr.id)
            raise

        try:
            self.queue.mark_merged(mr.id, sha)
        except StoreUnavailableError:
            LOG.error("%s merged at %s but the store was not updated; close it by hand", mr.id, sha)
            raise
        released = self.queue.released_dependents(mr.id)
        if released:
            LOG.info("Merging %s released: %s", mr.id, ", ".join(released))
        return AttemptResult(mr_id=mr.id, target=target, outcome="merged", merge_commit=sha, released=released)

    def _abandon(self, mr_id: str) -> None:
        """Put a claimed merge request back to open after an unexpected error."""
        try:
            self.queue.release(mr_id)
        except StoreUnavailableError as e:
            LOG.warning("Cannot release %s, left for the next cycle's recovery: %s", mr_id, e)

    def process_now(self, mr: MergeRequest) -> AttemptResult:
        """Attempt ``mr`` immediately, waiting up to lock_timeout for its target.

        Raises:
            LockTimeoutError: Another attempt on the same target did not finish in time.
        """
        with self.lock_for(mr.target).held(self.lock_timeout) as acquired:
            if not acquired:
                raise LockTimeoutError(
                    f"Target {mr.target} busy for more than {self.lock_timeout}s", mr_id=mr.id
                )
            return self.process(mr)

    def _attempt_target(self, target: str) -> AttemptResult | None:
        with self.lock_for(target).held() as acquired:
            if not acquired:
                LOG.debug("Target %s busy, skipping this cycle", target)
                return None
            mr = self.next_for(target)
            if mr is None:
                return None
            return self.process(mr)

    def run_cycle(self) -> List[AttemptResult]:
        """One pass: at most one attempt per target with ready merge requests.

        Starts with recover_stale, so a claim stranded by a failed store
        write is back in the ready set by the next cycle.
        """
        self.recover_stale()
        targets = sorted({mr.target for mr in self.queue.list(ready=True)})
        if not targets:
            return []
        results: List[AttemptResult] = []
        workers = min(self.max_parallel_targets, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="refinery") as pool:
            futures = {pool.submit(self._attempt_target, t): t for t in targets}
            for future, target in futures.items():
                try:
                    result = future.result()
                except Exception as e:
                    LOG.exception("Refinery: attempt on %s failed: %s", target, e)
                    continue
                if result is not None:
                    results.append(result)
        return results

    def recover_stale(self) -> List[str]:
        """Put in_progress merge requests back to open when no attempt holds their target.

        Covers a refinery that stopped mid-attempt.
        """
        recovered = []
        for mr in self.queue.list(status="in_progress"):
            with self.lock_for(mr.target).held() as acquired:
                if not acquired or self.queue.get(mr.id).status != "in_progress":
                    continue
                self.queue.release(mr.id)
                recovered.append(mr.id)
        if recovered:
            LOG.info("Recovered interrupted merge requests: %s", ", ".join(recovered))
        return recovered


def run_refinery_loop(refinery: Refinery, interval_seconds: int = 60, once: bool = False) -> None:
    """Loop: every interval_seconds run one refinery cycle. Tick errors are logged, not raised."""
    log = logging.getLogger("refinery.scheduler")
    while True:
        try:
            results = refinery.run_cycle()
            for r in results:
                log.info("Refinery: %s %s (%s)", r.mr_id, r.outcome, r.merge_commit or r.error or r.target)
        except Exception as e:
            log.exception("Refinery tick error: %s", e)
        if once:
            return
        time.sleep(interval_seconds)


def start_refinery_thread(refinery: Refinery, interval_seconds: int = 60) -> threading.Thread:
    """Start the refinery loop in a daemon thread."""
    thread = threading.Thread(
        target=run_refinery_loop,
        args=(refinery,),
        kwargs={"interval_seconds": interval_seconds},
        daemon=True,
        name="refinery",
    )
    thread.start()
    return thread
