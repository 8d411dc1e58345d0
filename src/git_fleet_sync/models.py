"""
Domain models for fleet synchronization.

Desired repositories (RepoSpec) are turned into a Plan of Actions by a
planner, executed into an ExecutionResult, and mirrored into a RunState for
resume and audit.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import StrEnum

from .auth import AuthConfig
from .errors import InvalidStrategyError

# =============================================================================
# Enumerations
# =============================================================================


class Strategy(StrEnum):
    """How an existing checkout is brought up to date."""

    RESET = "reset"
    PULL = "pull"
    FETCH = "fetch"


_STRATEGY_ALIASES = {
    "reset": Strategy.RESET,
    "hard": Strategy.RESET,
    "pull": Strategy.PULL,
    "fetch": Strategy.FETCH,
}


def parse_strategy(value: str | None) -> Strategy:
    """Convert a user-supplied string into a Strategy.

    An empty value means the default (reset). Unknown values raise
    InvalidStrategyError instead of silently falling back.
    """
    if not value:
        return Strategy.RESET
    try:
        return _STRATEGY_ALIASES[value.strip().lower()]
    except KeyError:
        raise InvalidStrategyError(value) from None


class ActionType(StrEnum):
    """Planned operation on one repository."""

    CLONE = "clone"
    UPDATE = "update"
    SKIP = "skip"
    DELETE = "delete"


class RunStatus(StrEnum):
    """Last known state of a repository in a run."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Desired state
# =============================================================================


@dataclass
class RepoSpec:
    """One desired repository."""

    name: str
    clone_url: str = ""
    target_path: str = ""
    additional_remotes: dict[str, str] = field(default_factory=dict)
    branch: str = ""  # comma-separated fallback list, e.g. "develop,main"
    strict_branch_checkout: bool = False
    strategy: Strategy | None = None
    enabled: bool | None = None
    assume_present: bool = False
    provider: str = ""
    description: str = ""
    auth: AuthConfig = field(default_factory=AuthConfig)

    @property
    def is_enabled(self) -> bool:
        """Repos are enabled unless explicitly disabled."""
        return self.enabled is None or self.enabled

    @property
    def branches(self) -> list[str]:
        """Branch fallback list in priority order."""
        return [b.strip() for b in self.branch.split(",") if b.strip()]

    def to_dict(self, include_secrets: bool = False) -> dict:
        return {
            "name": self.name,
            "clone_url": self.clone_url,
            "target_path": self.target_path,
            "additional_remotes": dict(self.additional_remotes),
            "branch": self.branch,
            "strict_branch_checkout": self.strict_branch_checkout,
            "strategy": self.strategy.value if self.strategy else None,
            "enabled": self.enabled,
            "assume_present": self.assume_present,
            "provider": self.provider,
            "description": self.description,
            "auth": self.auth.to_dict(include_secrets=include_secrets),
        }

    @classmethod
    def from_dict(cls, data: dict) -> RepoSpec:
        strategy = data.get("strategy")
        return cls(
            name=data.get("name", ""),
            clone_url=data.get("clone_url", ""),
            target_path=data.get("target_path", ""),
            additional_remotes=dict(data.get("additional_remotes") or {}),
            branch=data.get("branch", "") or "",
            strict_branch_checkout=bool(data.get("strict_branch_checkout", False)),
            strategy=parse_strategy(strategy) if strategy else None,
            enabled=data.get("enabled"),
            assume_present=bool(data.get("assume_present", False)),
            provider=data.get("provider", "") or "",
            description=data.get("description", "") or "",
            auth=AuthConfig.from_dict(data.get("auth")),
        )


def normalize_path(path: str) -> str:
    """Normalize a target path for comparisons and resume matching."""
    if not path:
        return path
    return os.path.normpath(path)


# =============================================================================
# Planning
# =============================================================================


@dataclass
class Action:
    """One planned operation against one repository."""

    repo: RepoSpec
    type: ActionType
    strategy: Strategy | None = None
    reason: str = ""
    planned_by: str = ""

    def to_dict(self) -> dict:
        return {
            "repo": self.repo.to_dict(),
            "type": self.type.value,
            "strategy": self.strategy.value if self.strategy else None,
            "reason": self.reason,
            "planned_by": self.planned_by,
        }


@dataclass
class Plan:
    """Ordered list of actions produced by a planner."""

    actions: list[Action] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.actions)

    def count(self, action_type: ActionType) -> int:
        return sum(1 for a in self.actions if a.type == action_type)

    def to_dict(self) -> dict:
        return {"actions": [a.to_dict() for a in self.actions]}


@dataclass
class PlanOptions:
    """Planning-time options."""

    default_strategy: Strategy | None = None
    cleanup_orphans: bool = False
    roots: list[str] = field(default_factory=list)


@dataclass
class PlanRequest:
    """Desired repositories plus planning options."""

    repos: list[RepoSpec] = field(default_factory=list)
    options: PlanOptions = field(default_factory=PlanOptions)


# =============================================================================
# Execution
# =============================================================================

DEFAULT_PARALLEL = 4


@dataclass
class RunOptions:
    """Execution behaviour."""

    parallel: int = DEFAULT_PARALLEL
    max_retries: int = 0
    resume: bool = False
    dry_run: bool = False

    @property
    def effective_parallel(self) -> int:
        return self.parallel if self.parallel > 0 else DEFAULT_PARALLEL


@dataclass
class ActionResult:
    """Outcome of one action. ``error`` is set if and only if it failed."""

    action: Action
    message: str = ""
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "name": self.action.repo.name,
            "target_path": self.action.repo.target_path,
            "type": self.action.type.value,
            "success": not self.failed,
            "message": self.message,
            "error": str(self.error) if self.error else "",
        }


@dataclass
class ExecutionResult:
    """Aggregated outcome of running a plan."""

    succeeded: list[ActionResult] = field(default_factory=list)
    failed: list[ActionResult] = field(default_factory=list)
    skipped: list[ActionResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped)

    @property
    def all_results(self) -> list[ActionResult]:
        return [*self.succeeded, *self.failed, *self.skipped]

    def add(self, result: ActionResult) -> RunStatus:
        """File a result into the right bucket and return its run status."""
        if result.failed:
            self.failed.append(result)
            return RunStatus.FAILED
        if result.action.type == ActionType.SKIP:
            self.skipped.append(result)
        else:
            self.succeeded.append(result)
        return RunStatus.DONE

    def to_dict(self) -> dict:
        return {
            "succeeded": [r.to_dict() for r in self.succeeded],
            "failed": [r.to_dict() for r in self.failed],
            "skipped": [r.to_dict() for r in self.skipped],
            "summary": {
                "total": self.total,
                "succeeded": len(self.succeeded),
                "failed": len(self.failed),
                "skipped": len(self.skipped),
            },
        }


# =============================================================================
# Persisted state
# =============================================================================


@dataclass
class RunStateItem:
    """Per-repo progress entry."""

    repo: RepoSpec
    status: RunStatus
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "repo": self.repo.to_dict(),
            "status": self.status.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RunStateItem:
        return cls(
            repo=RepoSpec.from_dict(data.get("repo") or {}),
            status=RunStatus(data.get("status", RunStatus.PENDING)),
            message=data.get("message", ""),
        )


@dataclass
class RunState:
    """Progress of a run, keyed by target path for resume matching."""

    items: list[RunStateItem] = field(default_factory=list)

    def status_by_path(self) -> dict[str, RunStatus]:
        return {normalize_path(item.repo.target_path): item.status for item in self.items}

    def to_dict(self) -> dict:
        return {"items": [item.to_dict() for item in self.items]}

    @classmethod
    def from_dict(cls, data: dict | None) -> RunState:
        data = data or {}
        return cls(items=[RunStateItem.from_dict(i) for i in data.get("items") or []])
