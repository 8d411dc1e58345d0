"""
Planners turn desired repositories into a Plan of actions.

All planners are read-only: they stat and list directories but never modify
the filesystem or the RepoSpecs they are given.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from .auth import AuthConfig
from .errors import ConfigurationError, InvalidSeparatorError, NoRepositoriesError, OperationCancelled
from .forge import ForgeProvider, ForgeRepository
from .git import has_git_marker
from .models import Action, ActionType, Plan, PlanRequest, RepoSpec, Strategy, normalize_path

logger = logging.getLogger(__name__)


class Planner(Protocol):
    def plan(self, request: PlanRequest, cancel: threading.Event | None = None) -> Plan: ...


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled()


def _default_strategy(request: PlanRequest) -> Strategy:
    return request.options.default_strategy or Strategy.RESET


# =============================================================================
# Filesystem planner
# =============================================================================


class FilesystemPlanner:
    """Decide clone/update/delete by inspecting target paths on disk."""

    name = "fs"

    def plan(self, request: PlanRequest, cancel: threading.Event | None = None) -> Plan:
        if not request.repos:
            raise NoRepositoriesError()

        default_strategy = _default_strategy(request)
        actions: list[Action] = []
        desired: dict[str, RepoSpec] = {}

        for spec in request.repos:
            _check_cancel(cancel)
            repo = dataclasses.replace(
                spec,
                strategy=spec.strategy or default_strategy,
                target_path=normalize_path(spec.target_path),
            )
            key = _absolute(repo.target_path)
            if key in desired:
                raise ConfigurationError(f"duplicate path detected: {repo.target_path}")
            desired[key] = repo
            action = self._plan_repo(repo)
            logger.debug("%s: %s (%s)", repo.name, action.type, action.reason)
            actions.append(action)

        options = request.options
        if options.cleanup_orphans and options.roots:
            actions.extend(self._find_orphans(options.roots, desired, cancel))

        return Plan(actions=actions)

    def _plan_repo(self, repo: RepoSpec) -> Action:
        def make(action_type: ActionType, reason: str) -> Action:
            return Action(
                repo=repo,
                type=action_type,
                strategy=repo.strategy,
                reason=reason,
                planned_by=self.name,
            )

        if not repo.is_enabled:
            return make(ActionType.SKIP, "disabled")

        path = repo.target_path
        try:
            is_dir = os.path.isdir(path)
            exists = is_dir or os.path.lexists(path)
        except OSError as e:
            return make(ActionType.CLONE, f"stat error: {e}")

        if not exists:
            return make(ActionType.CLONE, "target missing")
        if not is_dir:
            return make(ActionType.CLONE, "target exists but is not a directory")
        if has_git_marker(path):
            return make(ActionType.UPDATE, "git repository detected")
        return make(ActionType.CLONE, "non-git directory, will replace with fresh clone")

    def _find_orphans(
        self,
        roots: list[str],
        desired: dict[str, RepoSpec],
        cancel: threading.Event | None,
    ) -> list[Action]:
        desired_paths = {_absolute(path) for path in desired}
        protected = protected_ancestors(desired_paths)
        actions: list[Action] = []

        for root in map(_absolute, roots):
            _check_cancel(cancel)
            try:
                entries = sorted(os.scandir(root), key=lambda e: e.name)
            except OSError as e:
                logger.debug("skipping unreadable root %s: %s", root, e)
                continue

            for entry in entries:
                if entry.name.startswith(".") or not entry.is_dir():
                    continue
                path = normalize_path(os.path.join(root, entry.name))
                if path in desired_paths or path in protected:
                    continue
                actions.append(
                    Action(
                        repo=RepoSpec(name=entry.name, target_path=path),
                        type=ActionType.DELETE,
                        reason="orphan directory",
                        planned_by=self.name,
                    )
                )

        return actions

    def describe(self, request: PlanRequest) -> str:
        return (
            f"filesystem plan for {len(request.repos)} repositories "
            f"(default strategy={_default_strategy(request)})"
        )


def _absolute(path: str) -> str:
    return normalize_path(os.path.abspath(path))


def protected_ancestors(desired: dict[str, RepoSpec] | list[str]) -> set[str]:
    """Every ancestor directory of every desired target path."""
    protected: set[str] = set()
    for target in desired:
        directory = os.path.dirname(target)
        while directory and directory not in (os.sep, ".") and directory != target:
            if directory in protected:
                break
            protected.add(directory)
            parent = os.path.dirname(directory)
            if parent == directory:
                break
            directory = parent
    return protected


# =============================================================================
# Static planner
# =============================================================================


class StaticPlanner:
    """One action per repo: clone, or update when the repo declares itself present."""

    name = "static"

    def plan(self, request: PlanRequest, cancel: threading.Event | None = None) -> Plan:
        if not request.repos:
            raise NoRepositoriesError()

        default_strategy = _default_strategy(request)
        actions = []
        for repo in request.repos:
            _check_cancel(cancel)
            if not repo.is_enabled:
                action_type, reason = ActionType.SKIP, "disabled"
            elif repo.assume_present:
                action_type, reason = ActionType.UPDATE, "static planner"
            else:
                action_type, reason = ActionType.CLONE, "static planner"
            actions.append(
                Action(
                    repo=repo,
                    type=action_type,
                    strategy=repo.strategy or default_strategy,
                    reason=reason,
                    planned_by=self.name,
                )
            )
        return Plan(actions=actions)

    def describe(self, request: PlanRequest) -> str:
        return (
            f"static plan for {len(request.repos)} repositories "
            f"(default strategy={_default_strategy(request)})"
        )


# =============================================================================
# Forge planner
# =============================================================================


class SubgroupMode(StrEnum):
    """How subgroup hierarchies map to local directories."""

    FLAT = "flat"  # parent/sub/repo -> sub-repo
    NESTED = "nested"  # parent/sub/repo -> sub/repo


_INVALID_SEPARATOR_CHARS = set('/\\:*?"<>|')


def is_valid_flat_separator(separator: str) -> bool:
    """Check that a separator is safe inside a single directory name."""
    return not any(ch in _INVALID_SEPARATOR_CHARS for ch in separator)


@dataclass
class ForgePlannerConfig:
    """Which remote repositories to sync and where to put them."""

    target_path: str
    organization: str
    is_user: bool = False
    include_archived: bool = False
    include_forks: bool = False
    include_private: bool = False
    clone_proto: str = "https"  # or "ssh"
    ssh_port: int = 0
    include_subgroups: bool = False
    subgroup_mode: SubgroupMode | None = None
    flat_separator: str = "-"
    auth: AuthConfig = field(default_factory=AuthConfig)
    languages: list[str] = field(default_factory=list)
    min_stars: int = 0
    max_stars: int = 0  # 0 = unlimited
    pushed_after: datetime | None = None


class ForgePlanner:
    """Plan from a hosting platform's repository listing."""

    def __init__(self, provider: ForgeProvider, config: ForgePlannerConfig):
        if config.subgroup_mode == SubgroupMode.FLAT and not is_valid_flat_separator(
            config.flat_separator
        ):
            raise InvalidSeparatorError(config.flat_separator)
        self.provider = provider
        self.config = config

    @property
    def name(self) -> str:
        return f"forge:{self.provider.name}"

    def plan(self, request: PlanRequest, cancel: threading.Event | None = None) -> Plan:
        _check_cancel(cancel)
        config = self.config
        if config.is_user:
            remote_repos = self.provider.list_user_repos(config.organization)
        else:
            remote_repos = self.provider.list_organization_repos(config.organization)

        repos = self.filter_repos(remote_repos)
        logger.info(
            "%s: %d of %d repositories match filters",
            self.name,
            len(repos),
            len(remote_repos),
        )
        if not repos:
            return Plan()

        default_strategy = _default_strategy(request)
        actions: list[Action] = []
        for remote in repos:
            _check_cancel(cancel)
            spec = self.to_repo_spec(remote)
            if has_git_marker(spec.target_path):
                action_type, reason = ActionType.UPDATE, "repository exists, will update"
            else:
                action_type, reason = ActionType.CLONE, "repository not present locally"
            actions.append(
                Action(
                    repo=spec,
                    type=action_type,
                    strategy=spec.strategy or default_strategy,
                    reason=reason,
                    planned_by=self.name,
                )
            )

        options = request.options
        if options.cleanup_orphans and options.roots:
            expected = [a.repo.target_path for a in actions]
            actions.extend(self._plan_orphan_cleanup(repos, expected, options.roots, cancel))

        return Plan(actions=actions)

    def filter_repos(self, repos: list[ForgeRepository]) -> list[ForgeRepository]:
        config = self.config
        languages = {lang.lower() for lang in config.languages}
        filtered = []
        for repo in repos:
            if repo.archived and not config.include_archived:
                continue
            if repo.fork and not config.include_forks:
                continue
            if repo.private and not config.include_private:
                continue
            if languages and (repo.language or "").lower() not in languages:
                continue
            if config.min_stars > 0 and repo.stars < config.min_stars:
                continue
            if config.max_stars > 0 and repo.stars > config.max_stars:
                continue
            if config.pushed_after is not None and (
                repo.pushed_at is None or repo.pushed_at < config.pushed_after
            ):
                continue
            filtered.append(repo)
        return filtered

    def to_repo_spec(self, repo: ForgeRepository) -> RepoSpec:
        config = self.config
        clone_url = repo.clone_url
        if config.clone_proto == "ssh" and repo.ssh_url:
            clone_url = repo.ssh_url

        auth = dataclasses.replace(
            config.auth, provider=self.provider.name, ssh_port=config.ssh_port
        )
        return RepoSpec(
            name=repo.name,
            clone_url=clone_url,
            target_path=self.build_target_path(repo),
            provider=self.provider.name,
            description=repo.description,
            auth=auth,
        )

    def build_target_path(self, repo: ForgeRepository) -> str:
        config = self.config
        base = config.target_path
        if not config.include_subgroups or config.subgroup_mode is None:
            return normalize_path(os.path.join(base, repo.name))

        sub_path = self._strip_org_prefix(repo.full_name or repo.name)
        if config.subgroup_mode == SubgroupMode.FLAT:
            return normalize_path(os.path.join(base, sub_path.replace("/", config.flat_separator)))
        return normalize_path(os.path.join(base, *sub_path.split("/")))

    def _strip_org_prefix(self, full_name: str) -> str:
        org = self.config.organization.strip("/")
        if org and full_name.startswith(org + "/"):
            return full_name[len(org) + 1 :]
        parts = full_name.split("/")
        if len(parts) <= 1:
            return full_name
        return "/".join(parts[1:])

    def _plan_orphan_cleanup(
        self,
        repos: list[ForgeRepository],
        expected_paths: list[str],
        roots: list[str],
        cancel: threading.Event | None,
    ) -> list[Action]:
        expected_names = {repo.name for repo in repos}
        expected_set = {_absolute(path) for path in expected_paths}
        protected = protected_ancestors(expected_set)

        actions = []
        for root in map(_absolute, roots):
            _check_cancel(cancel)
            try:
                entries = sorted(os.scandir(root), key=lambda e: e.name)
            except OSError:
                continue
            for entry in entries:
                if entry.name.startswith(".") or not entry.is_dir():
                    continue
                path = normalize_path(os.path.join(root, entry.name))
                if entry.name in expected_names or path in expected_set or path in protected:
                    continue
                # never delete a plain directory as an orphan
                if not has_git_marker(path):
                    continue
                actions.append(
                    Action(
                        repo=RepoSpec(name=entry.name, target_path=path),
                        type=ActionType.DELETE,
                        reason="orphan: not in organization repository list",
                        planned_by=self.name,
                    )
                )
        return actions

    def describe(self, request: PlanRequest) -> str:
        kind = "user" if self.config.is_user else "organization"
        return (
            f"forge plan for {self.provider.name} {kind}/{self.config.organization} "
            f"(target={self.config.target_path}, strategy={_default_strategy(request)})"
        )
