"""
Fleet health diagnostics.

DiagnosticExecutor opens every repository, optionally fetches, and classifies
divergence, working-tree state and network reachability into a HealthStatus
with a human-readable recommendation. Diagnostics never modify repositories
beyond ``git fetch``.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Protocol

from .errors import FleetSyncError, GitCommandError, OperationCancelled
from .git import GitClient, GitOperations
from .models import DEFAULT_PARALLEL, RepoSpec

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0

# =============================================================================
# Enumerations
# =============================================================================


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNREACHABLE = "unreachable"


class DivergenceType(StrEnum):
    """How the local branch relates to its upstream."""

    NONE = "none"
    FAST_FORWARD = "fast-forward"
    DIVERGED = "diverged"
    AHEAD = "ahead"
    CONFLICT = "conflict"
    NO_UPSTREAM = "no-upstream"


class NetworkStatus(StrEnum):
    OK = "ok"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth-failed"


class WorkTreeStatus(StrEnum):
    CLEAN = "clean"
    DIRTY = "dirty"
    CONFLICT = "conflict"
    REBASE_IN_PROGRESS = "rebase-in-progress"
    MERGE_IN_PROGRESS = "merge-in-progress"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class RepoHealth:
    """Diagnostic result for one repository."""

    repo: RepoSpec
    health_status: HealthStatus = HealthStatus.UNREACHABLE
    network_status: NetworkStatus | None = None
    divergence: DivergenceType | None = None
    work_tree_status: WorkTreeStatus | None = None
    current_branch: str = ""
    upstream_branch: str = ""
    ahead_by: int = 0
    behind_by: int = 0
    modified_files: int = 0
    untracked_files: int = 0
    conflict_files: int = 0
    recommendation: str = ""
    error: BaseException | None = None
    duration: float = 0.0
    fetch_duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.repo.name,
            "target_path": self.repo.target_path,
            "health_status": self.health_status.value,
            "network_status": self.network_status.value if self.network_status else None,
            "divergence": self.divergence.value if self.divergence else None,
            "work_tree_status": self.work_tree_status.value if self.work_tree_status else None,
            "current_branch": self.current_branch,
            "upstream_branch": self.upstream_branch,
            "ahead_by": self.ahead_by,
            "behind_by": self.behind_by,
            "modified_files": self.modified_files,
            "untracked_files": self.untracked_files,
            "conflict_files": self.conflict_files,
            "recommendation": self.recommendation,
            "error": str(self.error) if self.error else "",
            "duration": round(self.duration, 3),
            "fetch_duration": round(self.fetch_duration, 3),
        }


@dataclass
class HealthSummary:
    healthy: int = 0
    warning: int = 0
    error: int = 0
    unreachable: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "warning": self.warning,
            "error": self.error,
            "unreachable": self.unreachable,
            "total": self.total,
        }


@dataclass
class HealthReport:
    """One RepoHealth per input repository, in input order."""

    results: list[RepoHealth] = field(default_factory=list)
    summary: HealthSummary = field(default_factory=HealthSummary)
    total_duration: float = 0.0
    checked_at: datetime | None = None

    @property
    def has_problems(self) -> bool:
        return self.summary.error > 0 or self.summary.unreachable > 0

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "total_duration": round(self.total_duration, 3),
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }


class DiagnosticProgress(Protocol):
    def on_repo_start(self, repo: RepoSpec) -> None: ...

    def on_repo_complete(self, health: RepoHealth) -> None: ...


@dataclass
class DiagnosticOptions:
    skip_fetch: bool = False
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT  # seconds, per repository
    parallel: int = DEFAULT_PARALLEL
    check_work_tree: bool = True
    include_recommendations: bool = True
    progress: DiagnosticProgress | None = None


# =============================================================================
# Classification
# =============================================================================

_UNREACHABLE_MARKERS = ("could not resolve host", "connection refused", "network is unreachable")
_AUTH_MARKERS = ("authentication failed", "permission denied", "could not read from remote")


def classify_network_status(error: BaseException | None, stderr: str = "") -> NetworkStatus:
    """Classify a fetch outcome from its exception and git's stderr.

    This is a substring heuristic over git's English diagnostics. Any failure
    that matches nothing is treated as unreachable.
    """
    if error is None:
        return NetworkStatus.OK
    if isinstance(error, subprocess.TimeoutExpired):
        return NetworkStatus.TIMEOUT

    text = f"{stderr}\n{error}".lower()
    if any(marker in text for marker in _UNREACHABLE_MARKERS):
        return NetworkStatus.UNREACHABLE
    if any(marker in text for marker in _AUTH_MARKERS):
        return NetworkStatus.AUTH_FAILED
    return NetworkStatus.UNREACHABLE


def classify_divergence(
    upstream: str, ahead: int, behind: int, conflict_files: int = 0
) -> DivergenceType:
    if not upstream:
        return DivergenceType.NO_UPSTREAM
    if conflict_files > 0:
        return DivergenceType.CONFLICT
    if ahead > 0 and behind > 0:
        return DivergenceType.DIVERGED
    if behind > 0:
        return DivergenceType.FAST_FORWARD
    if ahead > 0:
        return DivergenceType.AHEAD
    return DivergenceType.NONE


def classify_health(
    network_status: NetworkStatus | None,
    work_tree_status: WorkTreeStatus | None,
    divergence: DivergenceType | None,
    behind: int = 0,
) -> HealthStatus:
    """Overall health. Rules are checked in order and the first match wins."""
    if network_status in (NetworkStatus.TIMEOUT, NetworkStatus.UNREACHABLE):
        return HealthStatus.UNREACHABLE
    if work_tree_status == WorkTreeStatus.CONFLICT:
        return HealthStatus.ERROR
    if work_tree_status == WorkTreeStatus.DIRTY and behind > 0:
        return HealthStatus.ERROR
    if divergence in (DivergenceType.DIVERGED, DivergenceType.FAST_FORWARD):
        return HealthStatus.WARNING
    if divergence == DivergenceType.AHEAD:
        return HealthStatus.WARNING
    if work_tree_status == WorkTreeStatus.DIRTY:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def generate_recommendation(health: RepoHealth) -> str:
    """Actionable guidance for a classified repository."""
    match health.health_status:
        case HealthStatus.UNREACHABLE:
            return "Check network connection and verify remote URL is accessible"

        case HealthStatus.ERROR:
            if health.work_tree_status == WorkTreeStatus.CONFLICT:
                return "Resolve merge conflicts, then commit or reset"
            if health.work_tree_status == WorkTreeStatus.DIRTY and health.behind_by > 0:
                return (
                    f"Commit or stash {health.modified_files} modified files, "
                    f"then pull {health.behind_by} commits from upstream"
                )
            return "Manual intervention required"

        case HealthStatus.WARNING:
            match health.divergence:
                case DivergenceType.FAST_FORWARD:
                    return f"Pull {health.behind_by} commits from upstream (fast-forward): git pull --ff-only"
                case DivergenceType.DIVERGED:
                    return (
                        f"Diverged: {health.ahead_by} ahead, {health.behind_by} behind. "
                        "Use 'git pull --rebase' or 'git merge' to reconcile"
                    )
                case DivergenceType.AHEAD:
                    return f"Push {health.ahead_by} local commits to upstream: git push"
            if health.work_tree_status == WorkTreeStatus.DIRTY:
                if health.modified_files > 0 and health.untracked_files > 0:
                    return (
                        f"Uncommitted changes: {health.modified_files} modified, "
                        f"{health.untracked_files} untracked files. Commit or stash before syncing"
                    )
                if health.modified_files > 0:
                    return (
                        f"Uncommitted changes: {health.modified_files} modified files. "
                        "Commit or stash before syncing"
                    )
                return "Uncommitted changes detected. Commit or stash before syncing"
            return ""

        case HealthStatus.HEALTHY:
            if health.divergence == DivergenceType.NO_UPSTREAM:
                branch = health.current_branch or "<branch>"
                return (
                    "No upstream branch configured. Set upstream with: "
                    f"git branch --set-upstream-to=origin/{branch}"
                )
            return "No action needed, repository is up-to-date"

    return ""


def calculate_summary(results: list[RepoHealth]) -> HealthSummary:
    summary = HealthSummary(total=len(results))
    for r in results:
        match r.health_status:
            case HealthStatus.HEALTHY:
                summary.healthy += 1
            case HealthStatus.WARNING:
                summary.warning += 1
            case HealthStatus.ERROR:
                summary.error += 1
            case HealthStatus.UNREACHABLE:
                summary.unreachable += 1
    return summary


# =============================================================================
# Diagnostic Executor
# =============================================================================


class DiagnosticExecutor:
    """Run health checks over a fleet on a bounded worker pool."""

    def __init__(self, client: GitClient | None = None):
        self.client = client or GitClient()

    def check_health(
        self,
        repos: list[RepoSpec],
        options: DiagnosticOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> HealthReport:
        options = options or DiagnosticOptions()
        cancel = cancel or threading.Event()
        parallel = options.parallel if options.parallel > 0 else DEFAULT_PARALLEL
        started = time.monotonic()

        results: list[RepoHealth | None] = [None] * len(repos)
        if repos:
            with ThreadPoolExecutor(max_workers=parallel) as pool:
                futures = {}
                for index, repo in enumerate(repos):
                    if cancel.is_set():
                        results[index] = _cancelled_health(repo)
                        continue
                    futures[pool.submit(self._run_one, repo, options, cancel)] = index
                for future in as_completed(futures):
                    results[futures[future]] = future.result()

        health_results = [r for r in results if r is not None]
        return HealthReport(
            results=health_results,
            summary=calculate_summary(health_results),
            total_duration=time.monotonic() - started,
            checked_at=datetime.now(timezone.utc),
        )

    def _run_one(
        self, repo: RepoSpec, options: DiagnosticOptions, cancel: threading.Event
    ) -> RepoHealth:
        if cancel.is_set():
            return _cancelled_health(repo)
        if options.progress:
            options.progress.on_repo_start(repo)
        health = self.check_one(repo, options)
        if options.progress:
            options.progress.on_repo_complete(health)
        return health

    def check_one(self, repo: RepoSpec, options: DiagnosticOptions) -> RepoHealth:
        started = time.monotonic()
        health = RepoHealth(repo=repo)

        def finish() -> RepoHealth:
            health.duration = time.monotonic() - started
            return health

        try:
            ops = self.client.open(repo.target_path)
        except (FleetSyncError, OSError) as e:
            health.error = FleetSyncError(f"failed to open repository: {e}")
            return finish()

        try:
            info = self.client.get_info(ops)
        except (FleetSyncError, OSError) as e:
            health.error = FleetSyncError(f"failed to get repository info: {e}")
            return finish()
        health.current_branch = info.branch
        health.upstream_branch = info.upstream

        if options.skip_fetch:
            health.network_status = NetworkStatus.OK
        else:
            fetch_started = time.monotonic()
            status, fetch_error = self._fetch(ops, options.fetch_timeout)
            health.fetch_duration = time.monotonic() - fetch_started
            health.network_status = status
            if fetch_error is not None:
                logger.warning("remote fetch failed for %s: %s", repo.target_path, fetch_error)
                if status in (NetworkStatus.TIMEOUT, NetworkStatus.UNREACHABLE):
                    health.health_status = HealthStatus.UNREACHABLE
                    health.error = fetch_error
                    health.recommendation = "Check network connection and remote URL"
                    return finish()
                # auth failures continue with possibly stale local data

        try:
            info = self.client.get_info(ops)
        except (FleetSyncError, OSError) as e:
            health.error = FleetSyncError(f"failed to refresh repository info: {e}")
            return finish()
        health.ahead_by = info.ahead
        health.behind_by = info.behind

        if options.check_work_tree:
            try:
                counts = self.client.get_work_tree(ops)
            except (FleetSyncError, OSError) as e:
                logger.warning("failed to check working tree for %s: %s", repo.target_path, e)
                health.work_tree_status = WorkTreeStatus.CLEAN
            else:
                health.modified_files = counts.changed
                health.untracked_files = counts.untracked
                health.conflict_files = counts.conflicts
                if counts.conflicts > 0:
                    health.work_tree_status = WorkTreeStatus.CONFLICT
                elif counts.changed > 0:
                    health.work_tree_status = WorkTreeStatus.DIRTY
                else:
                    health.work_tree_status = WorkTreeStatus.CLEAN

        health.divergence = classify_divergence(
            health.upstream_branch, health.ahead_by, health.behind_by, health.conflict_files
        )
        health.health_status = classify_health(
            health.network_status, health.work_tree_status, health.divergence, health.behind_by
        )
        if options.include_recommendations:
            health.recommendation = generate_recommendation(health)
        return finish()

    def _fetch(
        self, ops: GitOperations, timeout: float
    ) -> tuple[NetworkStatus, FleetSyncError | None]:
        if timeout <= 0:
            timeout = DEFAULT_FETCH_TIMEOUT
        try:
            result = self.client.fetch_all(ops, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            return classify_network_status(e), FleetSyncError(f"fetch timeout after {timeout:g}s")
        except OSError as e:
            return classify_network_status(e), FleetSyncError(f"fetch failed: {e}")

        if result.returncode == 0:
            return NetworkStatus.OK, None

        error = GitCommandError(["fetch", "--all", "--prune"], result.returncode, result.stderr)
        status = classify_network_status(error, result.stderr)
        if status == NetworkStatus.AUTH_FAILED:
            return status, FleetSyncError(f"authentication failed: {error}")
        return status, FleetSyncError(f"fetch failed: {error}")


def _cancelled_health(repo: RepoSpec) -> RepoHealth:
    return RepoHealth(repo=repo, health_status=HealthStatus.UNREACHABLE, error=OperationCancelled())
