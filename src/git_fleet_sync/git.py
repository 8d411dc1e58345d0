"""
Git capability used by the executors and the diagnostic engine.

Everything here shells out to the ``git`` binary; nothing reimplements
repository internals. Environment overrides (e.g. GIT_SSH_COMMAND) are applied
to the child process only, never to ``os.environ``.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from .auth import mask_token_in_url
from .errors import GitCommandError

logger = logging.getLogger(__name__)

GIT_MARKER = ".git"

_PERCENT_RE = re.compile(r"(\d{1,3})%")


class UpdateStrategy(StrEnum):
    """Strategy understood by :meth:`GitClient.clone_or_update`."""

    CLONE = "clone"
    RESET = "reset"
    PULL = "pull"
    FETCH = "fetch"


@dataclass
class CloneOrUpdateResult:
    """What clone-or-update actually did."""

    action: str  # "cloned", "reset", "pulled", "fetched"
    strategy: UpdateStrategy
    message: str = ""


@dataclass
class BranchInfo:
    """Current branch, upstream and ahead/behind counts."""

    branch: str = ""
    upstream: str = ""
    ahead: int = 0
    behind: int = 0


@dataclass
class WorkTreeCounts:
    """File counts from ``git status``."""

    staged: int = 0
    unstaged: int = 0
    untracked: int = 0
    conflicts: int = 0
    changed: int = 0  # distinct tracked files with staged or unstaged changes


class CloneProgress:
    """Callback bundle for clone progress. Subclass or pass callables."""

    def __init__(
        self,
        on_start: Callable[[], None] | None = None,
        on_update: Callable[[float], None] | None = None,
        on_done: Callable[[], None] | None = None,
    ):
        self._on_start = on_start
        self._on_update = on_update
        self._on_done = on_done

    def start(self) -> None:
        if self._on_start:
            self._on_start()

    def update(self, fraction: float) -> None:
        if self._on_update:
            self._on_update(fraction)

    def done(self) -> None:
        if self._on_done:
            self._on_done()


def has_git_marker(path: str | Path) -> bool:
    """Check whether a directory contains a ``.git`` entry (dir or gitfile)."""
    return os.path.exists(os.path.join(path, GIT_MARKER))


def _child_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


# =============================================================================
# Git Operations (Low-level)
# =============================================================================


class GitOperations:
    """Low-level Git operations for a single repository."""

    def __init__(self, repo_path: str | Path, env: dict[str, str] | None = None):
        self.repo_path = Path(repo_path)
        self.env = env or {}

    def _run(
        self,
        *args: str,
        check: bool = True,
        timeout: float | None = None,
        remote: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run a git command in the repository.

        ``remote`` marks commands that talk to a remote and therefore need the
        auth environment overrides.
        """
        result = subprocess.run(
            ["git", *args],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            env=_child_env(self.env) if remote else None,
        )
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stderr, result.stdout)
        return result

    def is_repository(self) -> bool:
        """Check if the path is inside a git work tree."""
        if not self.repo_path.is_dir():
            return False
        try:
            result = self._run("rev-parse", "--git-dir", check=False)
        except OSError:
            return False
        return result.returncode == 0

    def fetch_all(self, timeout: float | None = None) -> subprocess.CompletedProcess:
        """Fetch all remotes. Raises ``subprocess.TimeoutExpired`` on timeout."""
        return self._run("fetch", "--all", "--prune", check=False, timeout=timeout, remote=True)

    def fetch_origin(self) -> None:
        self._run("fetch", "origin", remote=True)

    def pull_origin(self) -> None:
        self._run("pull", "origin", remote=True)

    def reset_hard(self, target: str) -> None:
        self._run("reset", "--hard", target)

    def get_status_porcelain(self, include_untracked: bool = True) -> dict:
        """Get branch, ahead/behind and file counts in one command.

        Uses 'git status --porcelain=v2 --branch' to minimize subprocess calls.
        Raises GitCommandError if git fails.
        """
        info: dict = {
            "branch": "",
            "remote_branch": "",
            "ahead": 0,
            "behind": 0,
            "staged_count": 0,
            "unstaged_count": 0,
            "untracked_count": 0,
            "conflict_count": 0,
            "changed_count": 0,
        }
        args = ["status", "--porcelain=v2", "--branch"]
        if not include_untracked:
            args.append("--untracked-files=no")
        result = self._run(*args)
        for line in result.stdout.splitlines():
            if line.startswith("# branch.head "):
                info["branch"] = line[len("# branch.head ") :]
            elif line.startswith("# branch.upstream "):
                info["remote_branch"] = line[len("# branch.upstream ") :]
            elif line.startswith("# branch.ab "):
                # Format: # branch.ab +<ahead> -<behind>
                parts = line.split()
                if len(parts) == 4:
                    info["ahead"] = abs(int(parts[2]))
                    info["behind"] = abs(int(parts[3]))
            elif line.startswith("1 ") or line.startswith("2 "):
                # Changed entry: XY sub mH mI mW hH hI path
                xy = line[2:4]
                if xy[0] != ".":
                    info["staged_count"] += 1
                if xy[1] != ".":
                    info["unstaged_count"] += 1
                info["changed_count"] += 1
            elif line.startswith("u "):
                info["conflict_count"] += 1
            elif line.startswith("? "):
                info["untracked_count"] += 1
        return info

    def branch_exists(self, branch: str) -> bool:
        """Check for a local branch or an origin remote-tracking branch."""
        for ref in (branch, f"origin/{branch}"):
            result = self._run("rev-parse", "--verify", "--quiet", ref, check=False)
            if result.returncode == 0:
                return True
        return False

    def checkout(self, branch: str) -> str:
        result = self._run("checkout", branch)
        return (result.stdout or result.stderr).strip()

    def get_remote_url(self, name: str) -> str:
        """Get a remote's fetch URL, empty if the remote does not exist."""
        result = self._run("remote", "get-url", name, check=False)
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    def add_remote(self, name: str, url: str) -> None:
        self._run("remote", "add", name, url)

    def set_remote_url(self, name: str, url: str) -> None:
        self._run("remote", "set-url", name, url)


# =============================================================================
# Git Client (capability used by the core)
# =============================================================================


class GitClient:
    """Clone/update/checkout/remote/fetch capability backed by the git CLI."""

    def clone_or_update(
        self,
        url: str,
        destination: str,
        strategy: UpdateStrategy,
        env: dict[str, str] | None = None,
        progress: CloneProgress | None = None,
    ) -> CloneOrUpdateResult:
        """Clone ``url`` into ``destination`` or update the existing checkout.

        The clone strategy replaces whatever is at the destination. The other
        strategies require an existing repository; a missing destination is
        cloned regardless of strategy.
        """
        destination = os.path.abspath(destination)
        exists = os.path.lexists(destination)
        is_repo = exists and os.path.isdir(destination) and has_git_marker(destination)

        if not exists:
            return self._clone(url, destination, env, progress)

        if strategy == UpdateStrategy.CLONE:
            logger.debug("removing %s before fresh clone", destination)
            _remove_path(destination)
            return self._clone(url, destination, env, progress)

        if not is_repo:
            raise GitCommandError(
                ["clone", mask_token_in_url(url), destination],
                1,
                f"target '{destination}' exists but is not a git repository",
            )

        ops = GitOperations(destination, env=env)
        match strategy:
            case UpdateStrategy.FETCH:
                ops.fetch_origin()
                return CloneOrUpdateResult(
                    "fetched", strategy, f"fetched updates for {destination}"
                )
            case UpdateStrategy.PULL:
                ops.pull_origin()
                return CloneOrUpdateResult("pulled", strategy, f"pulled updates for {destination}")
            case _:
                ops.fetch_origin()
                ops.reset_hard("origin/HEAD")
                return CloneOrUpdateResult(
                    "reset", UpdateStrategy.RESET, f"reset {destination} to origin/HEAD"
                )

    def _clone(
        self,
        url: str,
        destination: str,
        env: dict[str, str] | None,
        progress: CloneProgress | None,
    ) -> CloneOrUpdateResult:
        args = ["clone", "--progress", url, destination]
        if progress:
            progress.start()

        proc = subprocess.Popen(
            ["git", *args],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            env=_child_env(env),
        )
        stderr_lines: list[str] = []
        buffer = ""
        # git rewrites progress lines with \r, so split on both terminators
        while chunk := proc.stderr.read(256):
            buffer += chunk
            *lines, buffer = re.split(r"[\r\n]", buffer)
            for line in lines:
                if not line:
                    continue
                stderr_lines.append(line)
                if progress:
                    match = _PERCENT_RE.search(line)
                    if match:
                        progress.update(min(int(match.group(1)), 100) / 100.0)
        if buffer:
            stderr_lines.append(buffer)
        returncode = proc.wait()

        if returncode != 0:
            masked = ["clone", "--progress", mask_token_in_url(url), destination]
            raise GitCommandError(masked, returncode, "\n".join(stderr_lines[-5:]))

        if progress:
            progress.done()
        return CloneOrUpdateResult(
            "cloned",
            UpdateStrategy.CLONE,
            f"cloned {mask_token_in_url(url)} to {destination}",
        )

    def branch_exists(self, repo_path: str, branch: str) -> bool:
        return GitOperations(repo_path).branch_exists(branch)

    def checkout(self, repo_path: str, branch: str) -> str:
        return GitOperations(repo_path).checkout(branch)

    def configure_remote(self, repo_path: str, name: str, url: str) -> bool:
        """Add or update a named remote. Returns True if anything changed."""
        ops = GitOperations(repo_path)
        current = ops.get_remote_url(name)
        if not current:
            ops.add_remote(name, url)
            return True
        if current != url:
            ops.set_remote_url(name, url)
            return True
        return False

    # Diagnostic helpers

    def open(self, repo_path: str) -> GitOperations:
        """Open an existing repository, raising GitCommandError if it is not one."""
        ops = GitOperations(repo_path)
        if not ops.is_repository():
            raise GitCommandError(
                ["rev-parse", "--git-dir"], 128, f"not a git repository: {repo_path}"
            )
        return ops

    def get_info(self, ops: GitOperations) -> BranchInfo:
        info = ops.get_status_porcelain(include_untracked=False)
        return BranchInfo(
            branch=info["branch"],
            upstream=info["remote_branch"],
            ahead=info["ahead"],
            behind=info["behind"],
        )

    def fetch_all(self, ops: GitOperations, timeout: float | None) -> subprocess.CompletedProcess:
        return ops.fetch_all(timeout=timeout)

    def get_work_tree(self, ops: GitOperations) -> WorkTreeCounts:
        info = ops.get_status_porcelain()
        return WorkTreeCounts(
            staged=info["staged_count"],
            unstaged=info["unstaged_count"],
            untracked=info["untracked_count"],
            conflicts=info["conflict_count"],
            changed=info["changed_count"],
        )


def _remove_path(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)
