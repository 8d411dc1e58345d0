"""
Executors carry out a Plan.

GitExecutor runs actions on a bounded thread pool, retries transient
clone/update failures, and mirrors every outcome into a RunState that is saved
once all workers have finished. NoopExecutor reports success for every action
without touching disk.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Protocol

from .auth import mask_token_in_url, prepared_auth
from .errors import FleetSyncError, OperationCancelled, StateSaveError, StateStoreError
from .git import CloneProgress, GitClient, UpdateStrategy
from .models import (
    Action,
    ActionResult,
    ActionType,
    ExecutionResult,
    Plan,
    RunOptions,
    RunState,
    RunStateItem,
    RunStatus,
    Strategy,
)
from .progress import NoopProgressSink, ProgressSink
from .state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BACKOFF = 0.3  # seconds, multiplied by the attempt number


class Executor(Protocol):
    def execute(
        self,
        plan: Plan,
        options: RunOptions | None = None,
        sink: ProgressSink | None = None,
        store: StateStore | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult: ...


def _save_state(store: StateStore | None, items: list[RunStateItem], result: ExecutionResult) -> None:
    if store is None:
        return
    try:
        store.save(RunState(items=items))
    except (StateStoreError, OSError) as e:
        raise StateSaveError(f"save state: {e}", result) from e
    logger.info("saved run state (%d item(s))", len(items))


def _state_item(result: ActionResult, status: RunStatus) -> RunStateItem:
    message = result.message
    if result.error is not None and not message:
        message = str(result.error)
    return RunStateItem(repo=result.action.repo, status=status, message=message)


def to_update_strategy(action: Action) -> UpdateStrategy:
    """Map an action to the git-level strategy. Clone actions always clone."""
    if action.type == ActionType.CLONE:
        return UpdateStrategy.CLONE
    match action.strategy:
        case Strategy.PULL:
            return UpdateStrategy.PULL
        case Strategy.FETCH:
            return UpdateStrategy.FETCH
        case _:
            return UpdateStrategy.RESET


# =============================================================================
# Git Executor
# =============================================================================


class GitExecutor:
    """Execute actions with the git CLI on a bounded worker pool."""

    def __init__(self, client: GitClient | None = None, retry_backoff: float = DEFAULT_RETRY_BACKOFF):
        self.client = client or GitClient()
        self.retry_backoff = retry_backoff

    def execute(
        self,
        plan: Plan,
        options: RunOptions | None = None,
        sink: ProgressSink | None = None,
        store: StateStore | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run every action in the plan.

        Per-action failures land in ``ExecutionResult.failed``; they never
        raise. The only error of the call itself is StateSaveError, which
        carries the finished result.
        """
        options = options or RunOptions()
        sink = sink or NoopProgressSink()
        cancel = cancel or threading.Event()

        result = ExecutionResult()
        items: list[RunStateItem] = []

        def record(action_result: ActionResult) -> None:
            status = result.add(action_result)
            if isinstance(action_result.error, OperationCancelled):
                status = RunStatus.PENDING
            items.append(_state_item(action_result, status))

        if plan.actions:
            with ThreadPoolExecutor(max_workers=options.effective_parallel) as pool:
                futures = {}
                for action in plan.actions:
                    if cancel.is_set():
                        # never submitted; still reported so every action is accounted for
                        record(self._cancelled(action, sink))
                        continue
                    future = pool.submit(self._run_action, action, options, sink, cancel)
                    futures[future] = action

                for future in as_completed(futures):
                    record(future.result())

        _save_state(store, items, result)
        return result

    def _cancelled(self, action: Action, sink: ProgressSink) -> ActionResult:
        sink.on_start(action)
        action_result = ActionResult(action=action, message="cancelled", error=OperationCancelled())
        sink.on_complete(action_result)
        return action_result

    def _run_action(
        self,
        action: Action,
        options: RunOptions,
        sink: ProgressSink,
        cancel: threading.Event,
    ) -> ActionResult:
        """Worker entry point: exactly one on_start and one on_complete."""
        if cancel.is_set():
            return self._cancelled(action, sink)

        sink.on_start(action)
        try:
            action_result = self._perform(action, options, sink, cancel)
        except Exception as e:
            logger.warning("%s: unexpected error: %s", action.repo.name, e)
            action_result = ActionResult(action=action, message="unexpected error", error=e)
        sink.on_complete(action_result)
        return action_result

    def _perform(
        self,
        action: Action,
        options: RunOptions,
        sink: ProgressSink,
        cancel: threading.Event,
    ) -> ActionResult:
        repo = action.repo

        if options.dry_run:
            message = f"dry-run: would {action.type} {repo.target_path}"
            sink.on_progress(action, message, 1.0)
            return ActionResult(action=action, message=message)

        match action.type:
            case ActionType.CLONE | ActionType.UPDATE:
                if not repo.clone_url or not repo.target_path:
                    return ActionResult(
                        action=action,
                        message="invalid action parameters",
                        error=FleetSyncError("missing clone url or target path"),
                    )
                try:
                    _ensure_parent_dir(repo.target_path)
                except OSError as e:
                    return ActionResult(
                        action=action, message="failed to prepare target directory", error=e
                    )
                return self._clone_or_update(action, options, sink, cancel)
            case ActionType.DELETE:
                return self._delete(action)
            case ActionType.SKIP:
                return ActionResult(action=action, message="skipped")
            case _:
                return ActionResult(
                    action=action,
                    message="unsupported action",
                    error=FleetSyncError(f"unsupported action type: {action.type}"),
                )

    def _delete(self, action: Action) -> ActionResult:
        target = action.repo.target_path
        if not target:
            return ActionResult(
                action=action,
                message="invalid delete target",
                error=FleetSyncError("missing target path for delete"),
            )
        try:
            if os.path.isdir(target) and not os.path.islink(target):
                shutil.rmtree(target)
            elif os.path.lexists(target):
                os.remove(target)
        except OSError as e:
            return ActionResult(action=action, message="failed to delete", error=e)
        return ActionResult(action=action, message=f"deleted {target}")

    def _clone_or_update(
        self,
        action: Action,
        options: RunOptions,
        sink: ProgressSink,
        cancel: threading.Event,
    ) -> ActionResult:
        repo = action.repo
        strategy = to_update_strategy(action)
        progress = CloneProgress(
            on_start=lambda: sink.on_progress(action, "start", 0.0),
            on_update=lambda fraction: sink.on_progress(action, "update", fraction),
            on_done=lambda: sink.on_progress(action, "done", 1.0),
        )
        attempts = max(options.max_retries + 1, 1)

        try:
            with prepared_auth(repo.clone_url, repo.auth) as auth:
                for warning in auth.warnings:
                    logger.warning(warning)

                outcome = None
                error: BaseException | None = None
                for attempt in range(attempts):
                    if cancel.is_set():
                        error = OperationCancelled()
                        break
                    try:
                        outcome = self.client.clone_or_update(
                            auth.clone_url,
                            repo.target_path,
                            strategy,
                            env=auth.env,
                            progress=progress,
                        )
                        error = None
                        break
                    except (FleetSyncError, OSError) as e:
                        error = e
                        if attempt < attempts - 1:
                            logger.warning(
                                "%s: attempt %d/%d failed: %s",
                                repo.name,
                                attempt + 1,
                                attempts,
                                e,
                            )
                            sink.on_progress(
                                action, f"retrying ({attempt + 1}/{attempts - 1}): {e}", 0.0
                            )
                            # wait() returns early once cancelled
                            cancel.wait(self.retry_backoff * (attempt + 1))
        except FleetSyncError as e:
            # auth preparation failed
            return ActionResult(action=action, message=f"auth setup failed: {e}", error=e)

        if error is not None or outcome is None:
            return ActionResult(
                action=action,
                message=f"clone/update failed after {attempts} attempt(s)",
                error=error,
            )

        message = outcome.message or f"{outcome.action} {repo.target_path}"

        if repo.branches:
            try:
                branch_message = self._checkout_branch(repo.target_path, repo.branches)
            except FleetSyncError as e:
                if repo.strict_branch_checkout:
                    return ActionResult(
                        action=action,
                        message=f"{message} (branch checkout failed: {e})",
                        error=e,
                    )
                logger.warning("%s: branch checkout warning: %s", repo.name, e)
                message = f"{message} (warning: branch checkout failed: {e})"
            else:
                message = f"{message} ({branch_message})"

        if repo.additional_remotes:
            try:
                remote_message = self._configure_remotes(repo.target_path, repo.additional_remotes)
            except (FleetSyncError, OSError) as e:
                logger.warning("%s: additional remotes warning: %s", repo.name, e)
                message = f"{message} (warning: remote config failed: {e})"
            else:
                if remote_message:
                    message = f"{message} ({remote_message})"

        return ActionResult(action=action, message=message)

    def _checkout_branch(self, repo_path: str, branches: list[str]) -> str:
        """Check out the first branch of the fallback list that exists."""
        last_error: FleetSyncError | None = None
        for branch in branches:
            if not self.client.branch_exists(repo_path, branch):
                logger.debug("branch not found, trying next: %s -> %s", repo_path, branch)
                continue
            try:
                self.client.checkout(repo_path, branch)
            except FleetSyncError as e:
                logger.debug("branch checkout failed, trying next: %s -> %s: %s", repo_path, branch, e)
                last_error = e
                continue
            logger.debug("branch checkout: %s -> %s", repo_path, branch)
            return f"checked out {branch}"

        if last_error is not None:
            raise last_error
        raise FleetSyncError(f"none of the specified branches exist: {','.join(branches)}")

    def _configure_remotes(self, repo_path: str, remotes: dict[str, str]) -> str:
        changed = 0
        for name, url in remotes.items():
            if self.client.configure_remote(repo_path, name, url):
                logger.debug("configured remote %s -> %s (in %s)", name, mask_token_in_url(url), repo_path)
                changed += 1
        if changed:
            return f"configured {changed} remote(s)"
        return ""


def _ensure_parent_dir(target_path: str) -> None:
    parent = os.path.dirname(target_path)
    if parent and parent != ".":
        os.makedirs(parent, exist_ok=True)


# =============================================================================
# Noop Executor
# =============================================================================


class NoopExecutor:
    """Report every action as done without touching the filesystem or git."""

    def execute(
        self,
        plan: Plan,
        options: RunOptions | None = None,
        sink: ProgressSink | None = None,
        store: StateStore | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        options = options or RunOptions()
        sink = sink or NoopProgressSink()

        result = ExecutionResult()
        items: list[RunStateItem] = []
        message = "noop executor: no git operations performed"
        if options.dry_run:
            message = "dry-run: no git operations performed"

        for action in plan.actions:
            sink.on_start(action)
            if cancel is not None and cancel.is_set():
                action_result = ActionResult(action=action, message="cancelled", error=OperationCancelled())
                sink.on_complete(action_result)
                result.add(action_result)
                items.append(_state_item(action_result, RunStatus.PENDING))
                continue
            sink.on_progress(action, message, 1.0)
            action_result = ActionResult(action=action, message=message)
            sink.on_complete(action_result)
            items.append(_state_item(action_result, result.add(action_result)))

        _save_state(store, items, result)
        return result
