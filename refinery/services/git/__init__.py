"""Git operations: branch name parsing and merging."""

from refinery.services.git._run import GitRunnerError, GitTimeoutError, GitUnavailableError
from refinery.services.git.branches import (
    DEFAULT_TRUNK_BRANCHES,
    DEFAULT_WORKER_PREFIXES,
    BranchInfo,
    is_trunk_branch,
    parse_branch_name,
)
from refinery.services.git.merge import GitVcs, Vcs

__all__ = [
    "DEFAULT_TRUNK_BRANCHES",
    "DEFAULT_WORKER_PREFIXES",
    "BranchInfo",
    "GitRunnerError",
    "GitTimeoutError",
    "GitUnavailableError",
    "GitVcs",
    "Vcs",
    "is_trunk_branch",
    "parse_branch_name",
]
