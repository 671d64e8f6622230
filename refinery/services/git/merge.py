"""Merge a work branch into its target branch in a local clone."""

import logging
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from refinery.errors import MergeFailedError, VcsUnavailableError
from refinery.services.git._run import DEFAULT_TIMEOUT, GitRunnerError, GitUnavailableError, _run_git


class Vcs(ABC):
    """What the merge queue needs from version control."""

    @abstractmethod
    def current_branch(self) -> str:
        """Name of the checked-out branch."""
        ...

    @abstractmethod
    def merge(self, branch: str, target: str) -> str:
        """Merge ``branch`` into ``target`` and return the merge commit sha.

        Raises:
            MergeFailedError: Conflict, failed pre-merge check or rejected push.
            VcsUnavailableError: Git timed out or could not run.
        """
        ...


class GitVcs(Vcs):
    """Git implementation: checkout target, merge --no-ff, optional check and push.

    All targets share one working tree, so merges in one clone are serialized.
    """

    def __init__(
        self,
        repo_dir: Path,
        remote: str | None = "origin",
        push: bool = False,
        check_command: str | None = None,
        check_timeout: float = 600,
        timeout: float = DEFAULT_TIMEOUT,
        log: logging.Logger | None = None,
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.remote = remote or None
        self.push = push
        self.check_command = check_command or None
        self.check_timeout = check_timeout
        self.timeout = timeout
        self.log = log or logging.getLogger("refinery.services.git.merge")
        self._tree_lock = threading.Lock()

    def _git(self, args: list[str]) -> str:
        try:
            return _run_git(args, cwd=self.repo_dir, log=self.log, timeout=self.timeout)
        except GitUnavailableError as e:
            raise VcsUnavailableError(str(e)) from e

    def current_branch(self) -> str:
        try:
            return self._git(["rev-parse", "--abbrev-ref", "HEAD"]).strip()
        except GitRunnerError as e:
            raise VcsUnavailableError(f"Cannot read current branch: {e}") from e

    def _undo(self, args: list[str]) -> None:
        try:
            self._git(args)
        except (GitRunnerError, VcsUnavailableError) as e:
            self.log.warning("Cleanup git %s failed: %s", args, e)

    def _run_check(self) -> None:
        """Run the pre-merge check in the repo; raise MergeFailedError on failure."""
        if not self.check_command:
            return
        self.log.info("Running pre-merge check: %s", self.check_command)
        try:
            result = subprocess.run(
                shlex.split(self.check_command),
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                timeout=self.check_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise MergeFailedError(f"Check timed out after {self.check_timeout}s: {self.check_command}") from e
        except FileNotFoundError as e:
            raise MergeFailedError(f"Check command not found: {self.check_command}") from e
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip().splitlines()
            detail = f"Check failed ({result.returncode}): {self.check_command}"
            if output:
                detail = f"{detail}: {output[-1]}"
            raise MergeFailedError(detail)

    def merge(self, branch: str, target: str) -> str:
        with self._tree_lock:
            return self._merge(branch, target)

    def _merge(self, branch: str, target: str) -> str:
        source = branch
        try:
            if self.remote:
                self._git(["fetch", self.remote])
                source = f"{self.remote}/{branch}"
            self._git(["checkout", target])
            if self.remote:
                self._git(["merge", "--ff-only", f"{self.remote}/{target}"])
        except GitRunnerError as e:
            raise MergeFailedError(f"Cannot prepare {target} for merging {branch}: {e}") from e

        try:
            self._git(["merge", "--no-ff", "--no-edit", "-m", f"Merge {branch} into {target}", source])
        except GitRunnerError as e:
            self._undo(["merge", "--abort"])
            raise MergeFailedError(f"Merge conflict merging {branch} into {target}: {e}") from e

        try:
            self._run_check()
        except MergeFailedError:
            self._undo(["reset", "--hard", "ORIG_HEAD"])
            raise

        try:
            sha = self._git(["rev-parse", "HEAD"]).strip()
        except GitRunnerError as e:
            self._undo(["reset", "--hard", "ORIG_HEAD"])
            raise MergeFailedError(f"Cannot read merge commit of {branch} into {target}: {e}") from e
        if self.push and self.remote:
            try:
                self._git(["push", self.remote, target])
            except GitRunnerError as e:
                self._undo(["reset", "--hard", "ORIG_HEAD"])
                raise MergeFailedError(f"Push of {target} rejected: {e}") from e
        self.log.info("Merged %s into %s at %s", branch, target, sha[:12])
        return sha
