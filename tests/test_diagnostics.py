import subprocess
import threading

import pytest
from conftest import FakeDiagnosticClient

from git_fleet_sync.diagnostics import (
    DiagnosticExecutor,
    DiagnosticOptions,
    DivergenceType,
    HealthStatus,
    NetworkStatus,
    RepoHealth,
    WorkTreeStatus,
    calculate_summary,
    classify_divergence,
    classify_health,
    classify_network_status,
    generate_recommendation,
)
from git_fleet_sync.errors import GitCommandError, OperationCancelled
from git_fleet_sync.git import BranchInfo, WorkTreeCounts
from git_fleet_sync.models import RepoSpec


@pytest.mark.parametrize(
    "upstream, ahead, behind, conflicts, expected",
    [
        ("", 3, 3, 1, DivergenceType.NO_UPSTREAM),
        ("origin/main", 1, 1, 2, DivergenceType.CONFLICT),
        ("origin/main", 2, 5, 0, DivergenceType.DIVERGED),
        ("origin/main", 0, 5, 0, DivergenceType.FAST_FORWARD),
        ("origin/main", 2, 0, 0, DivergenceType.AHEAD),
        ("origin/main", 0, 0, 0, DivergenceType.NONE),
    ],
)
def test_classify_divergence(upstream, ahead, behind, conflicts, expected):
    assert classify_divergence(upstream, ahead, behind, conflicts) == expected


@pytest.mark.parametrize(
    "network, work_tree, divergence, behind, expected",
    [
        (NetworkStatus.TIMEOUT, WorkTreeStatus.CLEAN, DivergenceType.NONE, 0, HealthStatus.UNREACHABLE),
        (NetworkStatus.UNREACHABLE, WorkTreeStatus.CONFLICT, DivergenceType.NONE, 0, HealthStatus.UNREACHABLE),
        (NetworkStatus.OK, WorkTreeStatus.CONFLICT, DivergenceType.CONFLICT, 0, HealthStatus.ERROR),
        (NetworkStatus.OK, WorkTreeStatus.DIRTY, DivergenceType.FAST_FORWARD, 2, HealthStatus.ERROR),
        (NetworkStatus.OK, WorkTreeStatus.CLEAN, DivergenceType.DIVERGED, 2, HealthStatus.WARNING),
        (NetworkStatus.OK, WorkTreeStatus.CLEAN, DivergenceType.FAST_FORWARD, 2, HealthStatus.WARNING),
        (NetworkStatus.OK, WorkTreeStatus.CLEAN, DivergenceType.AHEAD, 0, HealthStatus.WARNING),
        (NetworkStatus.OK, WorkTreeStatus.DIRTY, DivergenceType.NONE, 0, HealthStatus.WARNING),
        (NetworkStatus.OK, WorkTreeStatus.CLEAN, DivergenceType.NONE, 0, HealthStatus.HEALTHY),
        (NetworkStatus.OK, WorkTreeStatus.CLEAN, DivergenceType.NO_UPSTREAM, 0, HealthStatus.HEALTHY),
        (NetworkStatus.AUTH_FAILED, WorkTreeStatus.CLEAN, DivergenceType.NONE, 0, HealthStatus.HEALTHY),
        (None, None, DivergenceType.NONE, 0, HealthStatus.HEALTHY),
    ],
)
def test_classify_health(network, work_tree, divergence, behind, expected):
    assert classify_health(network, work_tree, divergence, behind) == expected


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("fatal: unable to access: Could not resolve host: github.com", NetworkStatus.UNREACHABLE),
        ("ssh: connect to host x port 22: Connection refused", NetworkStatus.UNREACHABLE),
        ("connect: Network is unreachable", NetworkStatus.UNREACHABLE),
        ("remote: HTTP Basic: Authentication failed", NetworkStatus.AUTH_FAILED),
        ("git@github.com: Permission denied (publickey).", NetworkStatus.AUTH_FAILED),
        ("fatal: Could not read from remote repository.", NetworkStatus.AUTH_FAILED),
        ("fatal: something else entirely", NetworkStatus.UNREACHABLE),
    ],
)
def test_classify_network_status_from_stderr(stderr, expected):
    error = GitCommandError(["fetch"], 128, stderr)
    assert classify_network_status(error, stderr) == expected


def test_classify_network_status_success_and_timeout():
    assert classify_network_status(None) == NetworkStatus.OK
    assert classify_network_status(subprocess.TimeoutExpired(["git", "fetch"], 1)) == NetworkStatus.TIMEOUT


def _health(**fields):
    return RepoHealth(repo=RepoSpec(name="r"), **fields)


@pytest.mark.parametrize(
    "fields, expected",
    [
        ({"health_status": HealthStatus.UNREACHABLE}, "Check network connection and verify remote URL is accessible"),
        (
            {"health_status": HealthStatus.ERROR, "work_tree_status": WorkTreeStatus.CONFLICT},
            "Resolve merge conflicts, then commit or reset",
        ),
        (
            {
                "health_status": HealthStatus.ERROR,
                "work_tree_status": WorkTreeStatus.DIRTY,
                "modified_files": 3,
                "behind_by": 2,
            },
            "Commit or stash 3 modified files, then pull 2 commits from upstream",
        ),
        (
            {"health_status": HealthStatus.WARNING, "divergence": DivergenceType.FAST_FORWARD, "behind_by": 4},
            "Pull 4 commits from upstream (fast-forward): git pull --ff-only",
        ),
        (
            {"health_status": HealthStatus.WARNING, "divergence": DivergenceType.AHEAD, "ahead_by": 1},
            "Push 1 local commits to upstream: git push",
        ),
        (
            {
                "health_status": HealthStatus.WARNING,
                "divergence": DivergenceType.NONE,
                "work_tree_status": WorkTreeStatus.DIRTY,
                "modified_files": 2,
            },
            "Uncommitted changes: 2 modified files. Commit or stash before syncing",
        ),
        (
            {"health_status": HealthStatus.HEALTHY, "divergence": DivergenceType.NO_UPSTREAM, "current_branch": "dev"},
            "No upstream branch configured. Set upstream with: git branch --set-upstream-to=origin/dev",
        ),
        (
            {"health_status": HealthStatus.HEALTHY, "divergence": DivergenceType.NONE},
            "No action needed, repository is up-to-date",
        ),
    ],
)
def test_generate_recommendation(fields, expected):
    assert generate_recommendation(_health(**fields)) == expected


def test_diverged_recommendation_mentions_both_counts():
    text = generate_recommendation(
        _health(health_status=HealthStatus.WARNING, divergence=DivergenceType.DIVERGED, ahead_by=2, behind_by=5)
    )
    assert "2 ahead, 5 behind" in text


def test_calculate_summary():
    statuses = [HealthStatus.HEALTHY, HealthStatus.HEALTHY, HealthStatus.WARNING, HealthStatus.UNREACHABLE]
    summary = calculate_summary([_health(health_status=s) for s in statuses])
    assert (summary.healthy, summary.warning, summary.error, summary.unreachable, summary.total) == (2, 1, 0, 1, 4)


# =============================================================================
# Executor
# =============================================================================


def _repos(*names):
    return [RepoSpec(name=n, target_path=f"/fleet/{n}") for n in names]


class RecordingProgress:
    def __init__(self):
        self.started = []
        self.completed = []
        self._lock = threading.Lock()

    def on_repo_start(self, repo):
        with self._lock:
            self.started.append(repo.name)

    def on_repo_complete(self, health):
        with self._lock:
            self.completed.append(health.repo.name)


def test_healthy_repository():
    client = FakeDiagnosticClient()
    report = DiagnosticExecutor(client).check_health(_repos("a"))

    (health,) = report.results
    assert health.health_status == HealthStatus.HEALTHY
    assert health.network_status == NetworkStatus.OK
    assert health.divergence == DivergenceType.NONE
    assert health.work_tree_status == WorkTreeStatus.CLEAN
    assert health.current_branch == "main"
    assert health.upstream_branch == "origin/main"
    assert health.recommendation == "No action needed, repository is up-to-date"
    assert not report.has_problems
    assert report.checked_at is not None


def test_counts_are_read_after_fetch():
    client = FakeDiagnosticClient()
    client.info["/fleet/a"] = BranchInfo(branch="main", upstream="origin/main")
    client.info_after_fetch["/fleet/a"] = BranchInfo(branch="main", upstream="origin/main", behind=3)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.behind_by == 3
    assert health.divergence == DivergenceType.FAST_FORWARD
    assert health.health_status == HealthStatus.WARNING
    assert health.recommendation.endswith("git pull --ff-only")


def test_dirty_and_behind_is_an_error():
    client = FakeDiagnosticClient()
    client.info["/fleet/a"] = BranchInfo(branch="main", upstream="origin/main", behind=2)
    client.work_tree["/fleet/a"] = WorkTreeCounts(unstaged=1, changed=1)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.work_tree_status == WorkTreeStatus.DIRTY
    assert health.health_status == HealthStatus.ERROR
    assert health.modified_files == 1


def test_untracked_files_alone_keep_tree_clean():
    client = FakeDiagnosticClient()
    client.work_tree["/fleet/a"] = WorkTreeCounts(untracked=4)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.work_tree_status == WorkTreeStatus.CLEAN
    assert health.untracked_files == 4
    assert health.health_status == HealthStatus.HEALTHY


def test_conflicts_are_an_error():
    client = FakeDiagnosticClient()
    client.work_tree["/fleet/a"] = WorkTreeCounts(conflicts=1, changed=1)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.work_tree_status == WorkTreeStatus.CONFLICT
    assert health.divergence == DivergenceType.CONFLICT
    assert health.health_status == HealthStatus.ERROR


def test_missing_repository_is_unreachable_with_error():
    client = FakeDiagnosticClient()
    client.missing.add("/fleet/gone")

    report = DiagnosticExecutor(client).check_health(_repos("gone"))

    (health,) = report.results
    assert health.health_status == HealthStatus.UNREACHABLE
    assert "failed to open repository" in str(health.error)
    assert report.has_problems
    assert client.fetch_calls == []


def test_fetch_timeout_short_circuits():
    client = FakeDiagnosticClient()
    client.fetch["/fleet/a"] = subprocess.TimeoutExpired(["git", "fetch"], 5)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a"), DiagnosticOptions(fetch_timeout=5)).results

    assert health.network_status == NetworkStatus.TIMEOUT
    assert health.health_status == HealthStatus.UNREACHABLE
    assert health.recommendation == "Check network connection and remote URL"
    assert "fetch timeout after 5s" in str(health.error)
    assert health.work_tree_status is None


def test_unreachable_remote():
    client = FakeDiagnosticClient()
    client.fetch["/fleet/a"] = (128, "fatal: unable to access 'https://x/': Could not resolve host: x")

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.network_status == NetworkStatus.UNREACHABLE
    assert health.health_status == HealthStatus.UNREACHABLE


def test_auth_failure_continues_with_local_data():
    client = FakeDiagnosticClient()
    client.fetch["/fleet/a"] = (128, "remote: HTTP Basic: Authentication failed")
    client.info["/fleet/a"] = BranchInfo(branch="main", upstream="origin/main", ahead=2)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.network_status == NetworkStatus.AUTH_FAILED
    assert health.divergence == DivergenceType.AHEAD
    assert health.health_status == HealthStatus.WARNING
    assert health.error is None


def test_skip_fetch_assumes_network_ok():
    client = FakeDiagnosticClient()
    (health,) = DiagnosticExecutor(client).check_health(_repos("a"), DiagnosticOptions(skip_fetch=True)).results
    assert client.fetch_calls == []
    assert health.network_status == NetworkStatus.OK


def test_non_positive_timeout_uses_default():
    client = FakeDiagnosticClient()
    DiagnosticExecutor(client).check_health(_repos("a"), DiagnosticOptions(fetch_timeout=0))
    assert client.fetch_calls == [("/fleet/a", 30.0)]


def test_work_tree_error_falls_back_to_clean():
    client = FakeDiagnosticClient()
    client.work_tree["/fleet/a"] = GitCommandError(["status"], 128, "fatal: index file corrupt")

    (health,) = DiagnosticExecutor(client).check_health(_repos("a")).results

    assert health.work_tree_status == WorkTreeStatus.CLEAN
    assert health.health_status == HealthStatus.HEALTHY


def test_options_can_disable_work_tree_and_recommendations():
    client = FakeDiagnosticClient()
    client.work_tree["/fleet/a"] = WorkTreeCounts(conflicts=2)
    options = DiagnosticOptions(check_work_tree=False, include_recommendations=False)

    (health,) = DiagnosticExecutor(client).check_health(_repos("a"), options).results

    assert health.work_tree_status is None
    assert health.recommendation == ""
    assert health.health_status == HealthStatus.HEALTHY


def test_results_keep_input_order_and_report_progress():
    names = [f"r{i}" for i in range(10)]
    client = FakeDiagnosticClient()
    client.missing.add("/fleet/r3")
    progress = RecordingProgress()

    report = DiagnosticExecutor(client).check_health(_repos(*names), DiagnosticOptions(parallel=4, progress=progress))

    assert [h.repo.name for h in report.results] == names
    assert sorted(progress.started) == sorted(names)
    assert sorted(progress.completed) == sorted(names)
    assert report.summary.total == 10
    assert report.summary.unreachable == 1
    assert report.summary.healthy == 9


def test_cancelled_check_marks_everything_unreachable():
    cancel = threading.Event()
    cancel.set()
    client = FakeDiagnosticClient()

    report = DiagnosticExecutor(client).check_health(_repos("a", "b"), cancel=cancel)

    assert [h.health_status for h in report.results] == [HealthStatus.UNREACHABLE] * 2
    assert all(isinstance(h.error, OperationCancelled) for h in report.results)
    assert client.fetch_calls == []


def test_empty_fleet():
    report = DiagnosticExecutor(FakeDiagnosticClient()).check_health([])
    assert report.results == []
    assert report.summary.total == 0
    assert not report.has_problems


def test_report_to_dict():
    report = DiagnosticExecutor(FakeDiagnosticClient()).check_health(_repos("a"))
    data = report.to_dict()
    assert data["summary"]["healthy"] == 1
    assert data["results"][0]["health_status"] == "healthy"
    assert data["results"][0]["network_status"] == "ok"
