"""
git-fleet-sync command line interface.

A thin typer front end: it loads configuration, wires planners, executors
and the diagnostic engine together, and renders results with rich.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)

from ._version import __version__
from .auth import AuthConfig
from .config import load_repos_file, resolve_state_file, resolve_token
from .diagnostics import DiagnosticExecutor, DiagnosticOptions, RepoHealth
from .errors import FleetSyncError, StateSaveError
from .executor import GitExecutor
from .forge import create_provider
from .formatters import OutputFormatter
from .models import (
    Action,
    ActionResult,
    PlanOptions,
    PlanRequest,
    RepoSpec,
    RunOptions,
    Strategy,
    parse_strategy,
)
from .orchestrator import Orchestrator
from .planners import FilesystemPlanner, ForgePlanner, ForgePlannerConfig, Planner, SubgroupMode
from .progress import LoggingProgressSink, ProgressSink
from .schema import get_tool_schema
from .state import FileStateStore, InMemoryStateStore, StateStore

logger = logging.getLogger(__name__)

# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="git-fleet-sync",
    help="Keep a fleet of Git repositories in their declared state.",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-fleet-sync {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
):
    """git-fleet-sync: clone, update, prune and diagnose many repositories at once."""
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    """Send library logs to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cancel event for the duration of a run."""
    cancel = threading.Event()
    try:
        previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    except ValueError:
        # not in the main thread
        yield cancel
        return
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


# =============================================================================
# Progress rendering
# =============================================================================


class RichProgressSink:
    """Renders one progress row per repository."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._tasks: dict[str, TaskID] = {}
        self._lock = threading.Lock()

    def _task(self, action: Action) -> TaskID:
        key = action.repo.target_path or action.repo.name
        with self._lock:
            if key not in self._tasks:
                self._tasks[key] = self.progress.add_task(
                    f"{action.type} {action.repo.name}", total=1.0
                )
            return self._tasks[key]

    def on_start(self, action: Action) -> None:
        self._task(action)

    def on_progress(self, action: Action, message: str, fraction: float) -> None:
        self.progress.update(self._task(action), completed=fraction)

    def on_complete(self, result: ActionResult) -> None:
        icon = "[red]✗[/]" if result.failed else "[green]✓[/]"
        self.progress.update(
            self._task(result.action),
            completed=1.0,
            description=f"{icon} {result.action.type} {result.action.repo.name}",
        )


class RichDiagnosticProgress:
    """Advances a single fleet-wide bar as repositories are checked."""

    def __init__(self, progress: Progress, task: TaskID):
        self.progress = progress
        self.task = task

    def on_repo_start(self, repo: RepoSpec) -> None:
        self.progress.update(self.task, description=f"Checking {repo.name}...")

    def on_repo_complete(self, health: RepoHealth) -> None:
        self.progress.advance(self.task)


def _new_progress(console: Console, bar: bool = True) -> Progress:
    columns = [SpinnerColumn(), TextColumn("[progress.description]{task.description}")]
    if bar:
        columns.extend([BarColumn(), MofNCompleteColumn()])
    return Progress(*columns, console=console, transient=False)


# =============================================================================
# Shared run logic
# =============================================================================


def _run(
    planner: Planner,
    request: PlanRequest,
    options: RunOptions,
    store: StateStore,
    console: Console,
    formatter: OutputFormatter,
    json_output: bool,
    operation: str,
) -> None:
    orchestrator = Orchestrator(planner, GitExecutor(), store)
    describe = getattr(planner, "describe", None)
    if describe:
        logger.info(describe(request))

    try:
        with cancel_on_interrupt() as cancel:
            if json_output:
                result = orchestrator.run(
                    request, options, progress=LoggingProgressSink(), cancel=cancel
                )
            else:
                with _new_progress(console, bar=False) as progress:
                    sink: ProgressSink = RichProgressSink(progress)
                    result = orchestrator.run(request, options, progress=sink, cancel=cancel)
    except StateSaveError as e:
        formatter.print_execution_result(e.result, operation)
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)
    except FleetSyncError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)

    formatter.print_execution_result(result, operation)
    if result.failed:
        raise typer.Exit(1)


def _state_store(state_file: Path | None, dry_run: bool) -> StateStore:
    if dry_run:
        # a dry run must not mark anything as done
        return InMemoryStateStore()
    return FileStateStore(state_file or resolve_state_file())


def _parse_strategy_option(console: Console, value: str | None) -> Strategy | None:
    if not value:
        return None
    try:
        return parse_strategy(value)
    except FleetSyncError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def sync(
    repos_file: Path = typer.Argument(..., help="JSON file listing the desired repositories"),
    strategy: str = typer.Option(
        None, "--strategy", "-s", help="Update strategy: reset, pull or fetch"
    ),
    parallel: int = typer.Option(4, "--parallel", "-p", help="Concurrent repositories"),
    retries: int = typer.Option(0, "--retries", help="Extra attempts for failing clones/updates"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Report without changing anything"),
    resume: bool = typer.Option(False, "--resume", help="Skip repositories already done"),
    state_file: Path = typer.Option(None, "--state-file", help="Run-state file"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Delete orphan directories under --root"),
    root: list[Path] = typer.Option(None, "--root", "-r", help="Directory scanned for orphans"),
    plan_only: bool = typer.Option(False, "--plan", help="Print the plan and exit"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Clone missing repositories and update existing ones."""
    configure_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)

    try:
        config = load_repos_file(repos_file)
    except FleetSyncError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)

    roots = [os.path.abspath(r.expanduser()) for r in (root or [])]
    if cleanup and not roots:
        console.print("[red]Error: --cleanup requires at least one --root[/]")
        raise typer.Exit(1)

    request = PlanRequest(
        repos=config.repos,
        options=PlanOptions(
            default_strategy=_parse_strategy_option(console, strategy) or config.strategy,
            cleanup_orphans=cleanup,
            roots=roots,
        ),
    )
    planner = FilesystemPlanner()

    if plan_only:
        try:
            formatter.print_plan(planner.plan(request))
        except FleetSyncError as e:
            console.print(f"[red]Error: {e}[/]")
            raise typer.Exit(1)
        return

    options = RunOptions(parallel=parallel, max_retries=retries, resume=resume, dry_run=dry_run)
    _run(
        planner,
        request,
        options,
        _state_store(state_file, dry_run),
        console,
        formatter,
        json_output,
        "sync",
    )


@app.command()
def forge(
    provider: str = typer.Argument(..., help="github, gitlab or gitea"),
    owner: str = typer.Argument(..., help="Organization, group or user"),
    target: Path = typer.Argument(..., help="Local directory to sync into"),
    user: bool = typer.Option(False, "--user", help="OWNER is a user, not an organization"),
    token: str = typer.Option(None, "--token", help="API/clone token (default: from environment)"),
    base_url: str = typer.Option(None, "--base-url", help="API base URL for self-hosted instances"),
    protocol: str = typer.Option("https", "--protocol", help="Clone protocol: https or ssh"),
    ssh_port: int = typer.Option(0, "--ssh-port", help="Custom SSH port"),
    ssh_key: Path = typer.Option(None, "--ssh-key", help="SSH identity file"),
    include_archived: bool = typer.Option(False, "--include-archived"),
    include_forks: bool = typer.Option(False, "--include-forks"),
    include_private: bool = typer.Option(False, "--include-private"),
    language: list[str] = typer.Option(None, "--language", "-l", help="Only these languages"),
    min_stars: int = typer.Option(0, "--min-stars"),
    max_stars: int = typer.Option(0, "--max-stars", help="0 = unlimited"),
    pushed_after: str = typer.Option(None, "--pushed-after", help="ISO date, e.g. 2025-01-01"),
    subgroups: bool = typer.Option(False, "--subgroups", help="Keep subgroup hierarchy"),
    subgroup_mode: SubgroupMode = typer.Option(SubgroupMode.FLAT, "--subgroup-mode"),
    separator: str = typer.Option("-", "--separator", help="Separator for flat subgroup names"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Delete repositories no longer listed"),
    strategy: str = typer.Option(None, "--strategy", "-s", help="Update strategy: reset, pull or fetch"),
    parallel: int = typer.Option(4, "--parallel", "-p"),
    retries: int = typer.Option(0, "--retries"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n"),
    resume: bool = typer.Option(False, "--resume"),
    state_file: Path = typer.Option(None, "--state-file"),
    plan_only: bool = typer.Option(False, "--plan", help="Print the plan and exit"),
    json_output: bool = typer.Option(False, "--json", "-j"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Sync every repository of a GitHub/GitLab/Gitea owner."""
    configure_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)

    cutoff = None
    if pushed_after:
        try:
            cutoff = datetime.fromisoformat(pushed_after)
        except ValueError:
            console.print(f"[red]Error: invalid --pushed-after date: {pushed_after}[/]")
            raise typer.Exit(1)
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)

    token = token or resolve_token(provider)
    target_dir = str(target.expanduser())
    default_strategy = _parse_strategy_option(console, strategy)

    try:
        forge_provider = create_provider(
            provider, token=token, base_url=base_url or "", ssh_port=ssh_port
        )
        planner = ForgePlanner(
            forge_provider,
            ForgePlannerConfig(
                target_path=target_dir,
                organization=owner,
                is_user=user,
                include_archived=include_archived,
                include_forks=include_forks,
                include_private=include_private,
                clone_proto=protocol,
                ssh_port=ssh_port,
                include_subgroups=subgroups,
                subgroup_mode=subgroup_mode if subgroups else None,
                flat_separator=separator,
                auth=AuthConfig(
                    token=token,
                    provider=provider.lower(),
                    ssh_key_path=str(ssh_key) if ssh_key else "",
                ),
                languages=list(language or []),
                min_stars=min_stars,
                max_stars=max_stars,
                pushed_after=cutoff,
            ),
        )
    except FleetSyncError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)

    request = PlanRequest(
        options=PlanOptions(
            default_strategy=default_strategy,
            cleanup_orphans=cleanup,
            roots=[target_dir] if cleanup else [],
        )
    )

    with forge_provider:
        if plan_only:
            try:
                formatter.print_plan(planner.plan(request), title=f"Forge Plan: {owner}")
            except FleetSyncError as e:
                console.print(f"[red]Error: {e}[/]")
                raise typer.Exit(1)
            return

        options = RunOptions(parallel=parallel, max_retries=retries, resume=resume, dry_run=dry_run)
        _run(
            planner,
            request,
            options,
            _state_store(state_file, dry_run),
            console,
            formatter,
            json_output,
            "forge sync",
        )


@app.command()
def status(
    repos_file: Path = typer.Argument(..., help="JSON file listing the repositories"),
    skip_fetch: bool = typer.Option(False, "--skip-fetch", help="Use local data only"),
    timeout: float = typer.Option(30.0, "--timeout", "-t", help="Per-repository fetch timeout (seconds)"),
    parallel: int = typer.Option(4, "--parallel", "-p"),
    no_worktree: bool = typer.Option(False, "--no-worktree", help="Skip working tree checks"),
    no_recommendations: bool = typer.Option(False, "--no-recommendations"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Diagnose the health of every repository."""
    configure_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)

    try:
        config = load_repos_file(repos_file)
    except FleetSyncError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)

    options = DiagnosticOptions(
        skip_fetch=skip_fetch,
        fetch_timeout=timeout,
        parallel=parallel,
        check_work_tree=not no_worktree,
        include_recommendations=not no_recommendations,
    )
    diagnostics = DiagnosticExecutor()

    with cancel_on_interrupt() as cancel:
        if json_output:
            report = diagnostics.check_health(config.repos, options, cancel=cancel)
        else:
            with _new_progress(console) as progress:
                task = progress.add_task(
                    "Analyzing..." if skip_fetch else "Fetching and analyzing...",
                    total=len(config.repos),
                )
                options.progress = RichDiagnosticProgress(progress, task)
                report = diagnostics.check_health(config.repos, options, cancel=cancel)

    formatter.print_health_report(report)
    if report.has_problems:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
