"""Error taxonomy for the merge queue.

Every error carries a stable ``kind`` string (used by structured CLI output)
and, when known, the id of the merge request it concerns.
"""


class RefineryError(Exception):
    """Base class for merge queue errors."""

    kind = "error"

    def __init__(self, message: str, mr_id: str | None = None) -> None:
        super().__init__(message)
        self.mr_id = mr_id

    def to_dict(self) -> dict[str, str | None]:
        """Machine-readable form: kind, message, mr_id."""
        return {"kind": self.kind, "message": str(self), "mr_id": self.mr_id}


class NotFoundError(RefineryError):
    """Id or branch match resolves to nothing."""

    kind = "not_found"


class NotFailedError(RefineryError):
    """Retry requested for a merge request that is not in the failed substate."""

    kind = "not_failed"


class AlreadyClosedError(RefineryError):
    """Reject requested for a merge request that is already closed."""

    kind = "already_closed"


class IssueRequiredError(RefineryError):
    """Submit could not determine the source issue."""

    kind = "issue_required"


class InvalidBranchError(RefineryError):
    """Branch may not be submitted (e.g. a trunk branch)."""

    kind = "invalid_branch"


class AmbiguousMatchError(RefineryError):
    """A branch name matched more than one open merge request."""

    kind = "ambiguous"


class NoRouteError(RefineryError):
    """No routing entry matches the identifier."""

    kind = "no_route"


class SchemaMismatchError(RefineryError):
    """Store rejected a record: type not allowed or id prefix mismatch."""

    kind = "schema_mismatch"


class ConfigWriteFailedError(RefineryError):
    """Store configuration did not read back as written (twice in a row)."""

    kind = "config_write_failed"


class MergeFailedError(RefineryError):
    """VCS reported a conflict or the pre-merge check failed. Recoverable via retry."""

    kind = "merge_failed"


class StoreUnavailableError(RefineryError):
    """Transient store I/O failure or timeout."""

    kind = "store_unavailable"


class LockTimeoutError(StoreUnavailableError):
    """Another attempt holds the target branch."""

    kind = "busy"


class VcsUnavailableError(RefineryError):
    """VCS command timed out or could not run. Transient: the attempt is deferred."""

    kind = "vcs_unavailable"


class NotifyError(RefineryError):
    """Notification transport failed."""

    kind = "notify_failed"
