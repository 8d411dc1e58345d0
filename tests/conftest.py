import subprocess
import threading
from pathlib import Path

import pytest

from git_fleet_sync.errors import GitCommandError, StateStoreError
from git_fleet_sync.git import BranchInfo, CloneOrUpdateResult, UpdateStrategy, WorkTreeCounts
from git_fleet_sync.models import Action, ActionType, RepoSpec


def make_git_repo(path: Path) -> Path:
    """Create a directory that planners recognize as a repository."""
    (path / ".git").mkdir(parents=True)
    return path


def make_action(tmp_path: Path, name: str, action_type=ActionType.CLONE, **repo_fields) -> Action:
    repo_fields.setdefault("clone_url", f"https://example.com/org/{name}.git")
    repo_fields.setdefault("target_path", str(tmp_path / name))
    return Action(repo=RepoSpec(name=name, **repo_fields), type=action_type)


class FakeGitClient:
    """In-process stand-in for GitClient used by executor tests."""

    def __init__(
        self,
        fail_times=0,
        fail_always=False,
        exception=None,
        branches=(),
        checkout_failures=(),
        remote_error=None,
    ):
        self.fail_times = fail_times
        self.fail_always = fail_always
        self.exception = exception
        self.branches = set(branches)
        self.checkout_failures = set(checkout_failures)
        self.remote_error = remote_error
        self.calls = []
        self.checked_out = []
        self.remotes = {}
        self._lock = threading.Lock()

    def clone_or_update(self, url, destination, strategy, env=None, progress=None):
        with self._lock:
            self.calls.append({"url": url, "destination": destination, "strategy": strategy, "env": env})
            attempt = len([c for c in self.calls if c["destination"] == destination])
        if self.exception is not None:
            raise self.exception
        if self.fail_always or attempt <= self.fail_times:
            raise GitCommandError(["clone", url, destination], 128, "fatal: unable to access remote")
        if progress:
            progress.start()
            progress.update(0.5)
            progress.done()
        action = "cloned" if strategy == UpdateStrategy.CLONE else str(strategy)
        return CloneOrUpdateResult(action, strategy, f"{action} {destination}")

    def branch_exists(self, repo_path, branch):
        return branch in self.branches

    def checkout(self, repo_path, branch):
        if branch in self.checkout_failures:
            raise GitCommandError(["checkout", branch], 1, f"error: pathspec '{branch}' did not match")
        with self._lock:
            self.checked_out.append(branch)
        return f"Switched to branch '{branch}'"

    def configure_remote(self, repo_path, name, url):
        if self.remote_error is not None:
            raise self.remote_error
        key = (repo_path, name)
        if self.remotes.get(key) == url:
            return False
        self.remotes[key] = url
        return True


class FakeDiagnosticClient:
    """Scripted answers for DiagnosticExecutor, keyed by target path."""

    def __init__(self):
        self.missing = set()
        self.info = {}
        self.info_after_fetch = {}
        self.fetch = {}
        self.work_tree = {}
        self.fetch_calls = []
        self._fetched = set()
        self._lock = threading.Lock()

    def open(self, repo_path):
        if repo_path in self.missing:
            raise GitCommandError(["rev-parse", "--git-dir"], 128, f"not a git repository: {repo_path}")
        return repo_path

    def get_info(self, ops):
        if ops in self._fetched and ops in self.info_after_fetch:
            return self.info_after_fetch[ops]
        return self.info.get(ops, BranchInfo(branch="main", upstream="origin/main"))

    def fetch_all(self, ops, timeout):
        with self._lock:
            self.fetch_calls.append((ops, timeout))
            self._fetched.add(ops)
        outcome = self.fetch.get(ops)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return subprocess.CompletedProcess(["git", "fetch"], 0, "", "")
        returncode, stderr = outcome
        return subprocess.CompletedProcess(["git", "fetch"], returncode, "", stderr)

    def get_work_tree(self, ops):
        counts = self.work_tree.get(ops, WorkTreeCounts())
        if isinstance(counts, BaseException):
            raise counts
        return counts


class RecordingSink:
    """Progress sink that remembers every event."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def on_start(self, action):
        with self._lock:
            self.events.append(("start", action.repo.name))

    def on_progress(self, action, message, fraction):
        with self._lock:
            self.events.append(("progress", action.repo.name, message, fraction))

    def on_complete(self, result):
        with self._lock:
            self.events.append(("complete", result.action.repo.name, result.failed))

    def for_repo(self, name):
        return [e for e in self.events if e[1] == name]


class FailingStateStore:
    def save(self, state):
        raise StateStoreError("disk full")

    def load(self):
        raise StateStoreError("disk full")


@pytest.fixture
def fake_client():
    return FakeGitClient()


@pytest.fixture
def sink():
    return RecordingSink()
