"""Refinery entry point.

Merge queue CLI: refinery submit | list | status | retry | reject | run.
Global options (--config, --check) go before the subcommand.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, NamedTuple

from refinery.config import AppConfig, load_config
from refinery.errors import RefineryError
from refinery.logging import RefineryLogging
from refinery.queue import MergeQueue
from refinery.render import (
    render_attempt,
    render_list,
    render_reject,
    render_status,
    render_submitted,
    to_json,
)
from refinery.routing import Route, Router, load_routes, routes_from_entries
from refinery.scheduler import Refinery, run_refinery_loop
from refinery.services.git import GitVcs
from refinery.services.notify import LogNotifier, Notifier, WebhookNotifier

LOG = logging.getLogger("refinery.main")


class Services(NamedTuple):
    router: Router
    queue: MergeQueue
    refinery: Refinery
    vcs: GitVcs


def build_router(config: AppConfig) -> Router:
    """Routes from store.routes_file plus inline store.routes."""
    routes: list[Route] = []
    if config.store.routes_file:
        routes += load_routes(config.resolve_path(config.store.routes_file))
    if config.store.routes:
        routes += routes_from_entries(config.store.routes, Path(config.base_dir))
    if not routes:
        raise ValueError("No routes configured (set store.routes_file or store.routes)")
    return Router(routes)


def build_notifier(config: AppConfig) -> Notifier:
    if config.notify.webhook_url:
        return WebhookNotifier(
            config.notify.webhook_url,
            token=config.notify_token_resolved,
            timeout=config.notify.timeout,
        )
    return LogNotifier()


def build_services(config: AppConfig) -> Services:
    """Wire router, queue, VCS and refinery from config."""
    router = build_router(config)
    queue = MergeQueue.from_config(config, router, notifier=build_notifier(config))
    vcs = GitVcs(
        config.resolve_path(config.git.repo_dir),
        remote=config.git.remote,
        push=config.git.push,
        check_command=config.git.check_command,
        check_timeout=config.git.check_timeout,
        timeout=config.git.timeout,
    )
    lock_dir = config.resolve_path(config.refinery.lock_dir) if config.refinery.lock_dir else None
    refinery = Refinery(
        queue,
        vcs,
        max_parallel_targets=config.refinery.max_parallel_targets,
        lock_timeout=config.refinery.lock_timeout_seconds,
        lock_dir=lock_dir,
    )
    return Services(router=router, queue=queue, refinery=refinery, vcs=vcs)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="refinery",
        description="Refinery - merge queue for worker branches",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only load and validate config and routes, then exit",
    )

    output = argparse.ArgumentParser(add_help=False)
    output.add_argument("--json", action="store_true", help="Machine-readable output")

    sub = parser.add_subparsers(dest="command")

    submit = sub.add_parser("submit", parents=[output], help="Submit a branch to the merge queue")
    submit.add_argument("--branch", help="Branch to merge (default: current branch)")
    submit.add_argument("--issue", help="Source issue (default: parsed from branch name)")
    submit.add_argument("--target", help="Target branch (default: main)")
    submit.add_argument("--epic", help="Target integration/<epic> instead")
    submit.add_argument("--priority", "-p", type=int, help="0 (urgent) to 4 (backlog); default from source issue")
    submit.add_argument("--worker", help="Worker name (default: parsed from branch name)")
    submit.add_argument("--depends-on", action="append", default=[], metavar="ID", help="Merge only after ID closes")

    lst = sub.add_parser("list", parents=[output], help="Show the merge queue")
    lst.add_argument("--ready", action="store_true", help="Only merge requests ready to merge")
    lst.add_argument("--status", choices=["open", "in_progress", "closed", "all"], help="Filter by status")
    lst.add_argument("--worker", help="Filter by worker")
    lst.add_argument("--epic", help="Filter by integration/<epic> target")

    status = sub.add_parser("status", parents=[output], help="Detailed status of a merge request")
    status.add_argument("mr_id")

    retry = sub.add_parser("retry", parents=[output], help="Retry a failed merge request")
    retry.add_argument("mr_id")
    retry.add_argument("--now", action="store_true", help="Attempt the merge immediately")

    reject = sub.add_parser("reject", parents=[output], help="Reject a merge request (source issue stays open)")
    reject.add_argument("mr_id_or_branch")
    reject.add_argument("--reason", "-r", required=True, help="Why the merge request is rejected")
    reject.add_argument("--notify", action="store_true", help="Notify the worker")

    run = sub.add_parser("run", help="Run the refinery loop")
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    run.add_argument("--interval", type=int, help="Seconds between cycles (default from config)")

    return parser


def _emit(args: argparse.Namespace, data: object, text: str) -> None:
    print(to_json(data) if getattr(args, "json", False) else text)


def cmd_submit(args: argparse.Namespace, services: Services, config: AppConfig) -> int:
    branch = args.branch or services.vcs.current_branch()
    mr = services.queue.submit(
        branch,
        target=args.target,
        source_issue=args.issue,
        priority=args.priority,
        worker=args.worker,
        epic=args.epic,
        depends_on=args.depends_on,
    )
    _emit(args, mr, render_submitted(mr))
    return 0


def cmd_list(args: argparse.Namespace, services: Services, config: AppConfig) -> int:
    mrs = services.queue.list(status=args.status, ready=args.ready, worker=args.worker, epic=args.epic)
    _emit(args, mrs, render_list(mrs, config.refinery.rig or "default"))
    return 0


def cmd_status(args: argparse.Namespace, services: Services, config: AppConfig) -> int:
    status = services.queue.status(args.mr_id)
    _emit(args, status, render_status(status))
    return 0


def cmd_retry(args: argparse.Namespace, services: Services, config: AppConfig) -> int:
    before = services.queue.get(args.mr_id)
    result = services.queue.retry(args.mr_id, run_now=args.now, runner=services.refinery.process_now)
    if result is None:
        text = "\n".join(
            [
                f"Retrying merge request: {before.id}",
                f"  Branch: {before.branch}",
                f"  Previous error: {before.error}",
                "Queued for retry; will be processed on the next refinery cycle",
            ]
        )
        _emit(args, {"mr_id": before.id, "queued": True, "previous_error": before.error}, text)
        return 0
    _emit(args, result, render_attempt(result))
    return 0 if result.outcome == "merged" else 1


def cmd_reject(args: argparse.Namespace, services: Services, config: AppConfig) -> int:
    result = services.queue.reject(args.mr_id_or_branch, args.reason, notify=args.notify)
    _emit(args, result, render_reject(result, args.reason))
    return 0


def cmd_run(args: argparse.Namespace, services: Services, config: AppConfig) -> int:
    interval = args.interval or config.refinery.interval_seconds
    LOG.info(
        "Refinery started | rig=%s | interval=%ss | repo=%s",
        config.refinery.rig or "-",
        interval,
        services.vcs.repo_dir,
    )
    run_refinery_loop(services.refinery, interval_seconds=interval, once=args.once)
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace, Services, AppConfig], int]] = {
    "submit": cmd_submit,
    "list": cmd_list,
    "status": cmd_status,
    "retry": cmd_retry,
    "reject": cmd_reject,
    "run": cmd_run,
}


def main(argv: list[str] | None = None) -> int:
    """Entry point: parse args, load config, dispatch the subcommand."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config_path = args.config
    if not config_path.is_file() and config_path == Path("config.yaml"):
        if Path("config.example.yaml").is_file():
            config_path = Path("config.example.yaml")
            logging.getLogger("refinery").warning("config.yaml not found, using config.example.yaml")

    config = load_config(config_path)
    RefineryLogging(config.logging).setup()

    try:
        services = build_services(config)
    except (OSError, ValueError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    if args.check:
        print(
            "Config OK:",
            config.refinery.rig or "-",
            config.store.backend,
            ", ".join(f"{r.prefix}={r.locator}" for r in services.router.routes),
        )
        return 0

    if not args.command:
        parser.print_help()
        return 1

    try:
        return COMMANDS[args.command](args, services, config)
    except RefineryError as e:
        if getattr(args, "json", False):
            print(to_json({"error": e.to_dict()}))
        else:
            print(f"Error ({e.kind}): {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        if getattr(args, "json", False):
            print(to_json({"error": {"kind": "invalid_argument", "message": str(e), "mr_id": None}}))
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        LOG.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
