"""Branch name parsing: worker and source issue from a work branch name."""

import re
from typing import Iterable, NamedTuple

DEFAULT_WORKER_PREFIXES = ("worker/", "polecat/")
DEFAULT_TRUNK_BRANCHES = ("main", "master")

# prefix-token, optionally with a numeric subtask suffix (gt-abc, gt-abc.2)
_ISSUE_ID_RE = re.compile(r"([a-z]+-[a-z0-9]+(?:\.[0-9]+)?)")


class BranchInfo(NamedTuple):
    """Parts of a work branch name."""

    branch: str
    issue: str | None
    worker: str | None


def parse_branch_name(branch: str, worker_prefixes: Iterable[str] = DEFAULT_WORKER_PREFIXES) -> BranchInfo:
    """Extract source issue and worker from a branch name.

    Supports ``<prefix><worker>/<issue>`` (e.g. ``worker/nix/gt-42``) and
    any name containing an issue id (e.g. ``gt-42`` or ``fix/gt-42.1``).

    Args:
        branch: Branch name.
        worker_prefixes: Prefixes that introduce ``<worker>/<issue>``.

    Returns:
        BranchInfo; issue and worker are None when not found.
    """
    for prefix in worker_prefixes:
        if branch.startswith(prefix):
            parts = branch[len(prefix) :].split("/", 1)
            if len(parts) == 2 and parts[0] and parts[1]:
                return BranchInfo(branch=branch, issue=parts[1], worker=parts[0])
    match = _ISSUE_ID_RE.search(branch)
    return BranchInfo(branch=branch, issue=match.group(1) if match else None, worker=None)


def is_trunk_branch(branch: str, trunk_branches: Iterable[str] = DEFAULT_TRUNK_BRANCHES) -> bool:
    """True if ``branch`` is one of the designated trunk branches."""
    return branch.strip() in set(trunk_branches)
