"""Plan, filter for resume, execute."""

from __future__ import annotations

import dataclasses
import logging
import threading

from .errors import MissingDependencyError
from .executor import Executor
from .models import (
    ExecutionResult,
    Plan,
    PlanRequest,
    RunOptions,
    RunState,
    RunStatus,
    Strategy,
    normalize_path,
)
from .planners import Planner
from .progress import NoopProgressSink, ProgressSink
from .state import InMemoryStateStore, StateStore

logger = logging.getLogger(__name__)


def filter_completed(plan: Plan, previous: RunState) -> Plan:
    """Drop actions whose target path finished in a previous run.

    Paths that are unknown to the previous state, or recorded with any status
    other than done, are kept.
    """
    if not previous.items:
        return plan
    status_by_path = previous.status_by_path()
    remaining = [
        action
        for action in plan.actions
        if status_by_path.get(normalize_path(action.repo.target_path)) != RunStatus.DONE
    ]
    return Plan(actions=remaining)


class _CarryOverStateStore:
    """Saves new items together with the done items of the resumed run.

    Without this, a resumed run would overwrite the state file with only the
    actions it executed, and the next resume would redo everything else.
    """

    def __init__(self, inner: StateStore, previous: RunState):
        self.inner = inner
        self.previous = previous

    def load(self) -> RunState:
        return self.inner.load()

    def save(self, state: RunState) -> None:
        new_paths = {normalize_path(item.repo.target_path) for item in state.items}
        carried = [
            item
            for item in self.previous.items
            if item.status == RunStatus.DONE
            and normalize_path(item.repo.target_path) not in new_paths
        ]
        self.inner.save(RunState(items=[*carried, *state.items]))


class Orchestrator:
    """Wires a planner, an executor and a state store into one run."""

    def __init__(
        self,
        planner: Planner | None,
        executor: Executor | None,
        state_store: StateStore | None = None,
    ):
        self.planner = planner
        self.executor = executor
        self.state_store = state_store

    def run(
        self,
        request: PlanRequest,
        options: RunOptions | None = None,
        progress: ProgressSink | None = None,
        state: StateStore | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        if self.planner is None or self.executor is None:
            raise MissingDependencyError(
                "orchestrator requires both a planner and an executor"
            )

        options = options or RunOptions()
        store: StateStore = state or self.state_store or InMemoryStateStore()

        previous = RunState()
        if options.resume:
            previous = store.load()
            logger.info("resuming with %d recorded item(s)", len(previous.items))

        if request.options.default_strategy is None:
            request = dataclasses.replace(
                request,
                options=dataclasses.replace(request.options, default_strategy=Strategy.RESET),
            )

        plan = self.planner.plan(request, cancel=cancel)
        if options.resume and previous.items:
            before = len(plan)
            plan = filter_completed(plan, previous)
            logger.info("resume: %d of %d action(s) already done", before - len(plan), before)
            store = _CarryOverStateStore(store, previous)

        return self.executor.execute(
            plan,
            options,
            sink=progress or NoopProgressSink(),
            store=store,
            cancel=cancel,
        )
