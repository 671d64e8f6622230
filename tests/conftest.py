"""Shared fixtures: routed YAML stores in tmp_path, fake VCS and notifier."""

from pathlib import Path

import pytest

from refinery.bootstrap import ConfigBootstrapper
from refinery.errors import MergeFailedError, NotifyError
from refinery.queue import MergeQueue
from refinery.routing import Route, Router
from refinery.services.git import Vcs
from refinery.services.notify import Notifier
from refinery.store import YamlIssueStore


class FakeVcs(Vcs):
    """Records merges; branches listed in ``fail`` raise the given error."""

    def __init__(self) -> None:
        self.merges: list[tuple[str, str]] = []
        self.fail: dict[str, Exception] = {}
        self.branch = "worker/nix/gt-42"

    def current_branch(self) -> str:
        return self.branch

    def merge(self, branch: str, target: str) -> str:
        self.merges.append((branch, target))
        error = self.fail.get(branch)
        if error is not None:
            raise error
        return f"{len(self.merges):040x}"


class FakeNotifier(Notifier):
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    def send(self, recipient: str, message: str) -> None:
        if self.fail:
            raise NotifyError("mailbox unavailable")
        self.sent.append((recipient, message))


@pytest.fixture
def router(tmp_path: Path) -> Router:
    """gt- issues and gt-mr- merge requests in separate stores."""
    return Router(
        [
            Route(prefix="gt-", locator=str(tmp_path / "gastown")),
            Route(prefix="gt-mr-", locator=str(tmp_path / "merge-requests")),
        ]
    )


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def queue(router: Router, notifier: FakeNotifier) -> MergeQueue:
    return MergeQueue(
        router,
        lambda locator: YamlIssueStore(locator, timeout=2),
        mr_prefix="gt-mr-",
        rig="gastown",
        bootstrapper=ConfigBootstrapper(),
        notifier=notifier,
    )


@pytest.fixture
def make_issue(queue: MergeQueue):
    """Create a source issue in the gt- store and return its id."""

    def _make(title: str = "Fix login", priority: int = 2) -> str:
        store = queue.store_for("gt-")
        return store.create(title, "task", priority=priority, id_prefix="gt").id

    return _make


@pytest.fixture
def failing_merge() -> MergeFailedError:
    return MergeFailedError("Merge conflict merging worker/nix/gt-42 into main: CONFLICT (content)")
