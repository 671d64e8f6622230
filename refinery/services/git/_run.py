"""Internal helpers: run git commands, GitRunnerError."""

import logging
import subprocess
from pathlib import Path

DEFAULT_TIMEOUT = 60


class GitRunnerError(Exception):
    """Raised when a git command fails."""

    pass


class GitUnavailableError(GitRunnerError):
    """Git could not run at all (missing binary, timeout)."""

    pass


class GitTimeoutError(GitUnavailableError):
    """Raised when a git command does not finish within its timeout."""

    pass


def _run_git(
    args: list[str],
    cwd: Path,
    log: logging.Logger | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Run git command and return stdout; raise GitRunnerError on non-zero exit."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(cmd, cwd=cwd, check=True, capture_output=True, text=True, timeout=timeout)
    except subprocess.CalledProcessError as e:
        err = (e.stderr or e.stdout or "").strip()
        if log:
            log.warning("Git %s failed: %s", args, err)
        raise GitRunnerError(f"git {' '.join(args)}: {err}") from e
    except subprocess.TimeoutExpired as e:
        raise GitTimeoutError(f"git {' '.join(args)}: timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GitUnavailableError("git not found") from e
    return result.stdout or ""
