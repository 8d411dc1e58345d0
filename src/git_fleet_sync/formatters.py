"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from .models import ActionType

if TYPE_CHECKING:
    from .diagnostics import HealthReport, HealthSummary, RepoHealth
    from .models import ActionResult, ExecutionResult, Plan, RepoSpec


def compute_unique_display_names(repos: list[RepoSpec]) -> dict[str, str]:
    """Compute unique display names for repositories keyed by target path.

    When multiple repos share the same name, parent directory components
    are added until each name becomes unique.
    """
    name_groups: dict[str, list[RepoSpec]] = defaultdict(list)
    for repo in repos:
        name_groups[repo.name].append(repo)

    result: dict[str, str] = {}
    for name, group in name_groups.items():
        if len(group) == 1:
            result[group[0].target_path] = name
            continue
        paths = [Path(repo.target_path) for repo in group]
        for repo, unique_name in zip(group, _make_paths_unique(paths)):
            result[repo.target_path] = unique_name
    return result


def _make_paths_unique(paths: list[Path]) -> list[str]:
    """Generate shortest unique display names for a list of paths."""
    path_parts_list = [list(reversed(p.parts)) for p in paths]

    result = []
    for i, parts in enumerate(path_parts_list):
        for depth in range(1, len(parts) + 1):
            candidate = "/".join(reversed(parts[:depth]))
            clashes = any(
                "/".join(reversed(other[: min(depth, len(other))])) == candidate
                for j, other in enumerate(path_parts_list)
                if i != j
            )
            if not clashes:
                result.append(candidate)
                break
        else:
            result.append(str(paths[i]))
    return result


_ACTION_STYLES = {
    ActionType.CLONE: "[green]clone[/]",
    ActionType.UPDATE: "[blue]update[/]",
    ActionType.SKIP: "[dim]skip[/]",
    ActionType.DELETE: "[red]delete[/]",
}

_HEALTH_ICONS = {
    "healthy": "[green]✓ healthy[/]",
    "warning": "[yellow]⚠ warning[/]",
    "error": "[red]✗ error[/]",
    "unreachable": "[magenta]⊘ unreachable[/]",
}


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print_json(self, output: dict) -> None:
        self.console.print(
            json.dumps(output, indent=2, default=str),
            soft_wrap=True,
            markup=False,
            highlight=False,
        )

    # Plans

    def print_plan(self, plan: Plan, title: str = "Sync Plan"):
        """Print planned actions."""
        if self.use_json:
            self._print_json(plan.to_dict())
        else:
            self._print_plan_table(plan, title)

    def _print_plan_table(self, plan: Plan, title: str):
        if not plan.actions:
            self.console.print("[dim]Nothing to do[/]")
            return

        display_names = compute_unique_display_names([a.repo for a in plan.actions])
        table = Table(title=title)
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Action", justify="center")
        table.add_column("Strategy", justify="center")
        table.add_column("Reason")

        for action in plan.actions:
            table.add_row(
                display_names.get(action.repo.target_path, action.repo.name),
                _ACTION_STYLES.get(action.type, str(action.type)),
                str(action.strategy) if action.strategy and action.type == ActionType.UPDATE else "",
                action.reason,
            )

        self.console.print(table)
        parts = [f"[bold]Total:[/] {len(plan)}"]
        for action_type in ActionType:
            count = plan.count(action_type)
            if count:
                parts.append(f"{_ACTION_STYLES[action_type]}: {count}")
        self.console.print(" | ".join(parts))

    # Execution results

    def print_execution_result(self, result: ExecutionResult, operation: str = "sync"):
        """Print per-repository outcomes of a run."""
        if self.use_json:
            self._print_json(result.to_dict())
        else:
            self._print_execution_table(result, operation)

    def _print_execution_table(self, result: ExecutionResult, operation: str):
        results = result.all_results
        if not results:
            self.console.print(f"[dim]No repositories to {operation}[/]")
            return

        display_names = compute_unique_display_names([r.action.repo for r in results])
        table = Table(title=f"{operation.title()} Results")
        table.add_column("Repository", style="cyan")
        table.add_column("Action", justify="center")
        table.add_column("Status", justify="center")
        table.add_column("Message")

        for action_result in results:
            repo = action_result.action.repo
            table.add_row(
                display_names.get(repo.target_path, repo.name),
                _ACTION_STYLES.get(action_result.action.type, str(action_result.action.type)),
                self._get_result_icon(action_result),
                self._get_result_message(action_result),
            )

        self.console.print(table)
        self.console.print(
            f"\n[bold]Succeeded:[/] {len(result.succeeded)}"
            f" | [red]Failed:[/] {len(result.failed)}"
            f" | [dim]Skipped:[/] {len(result.skipped)}"
            f" | [bold]Total:[/] {result.total}"
        )

    def _get_result_icon(self, action_result: ActionResult) -> str:
        if action_result.failed:
            return "[red]✗[/]"
        if action_result.action.type == ActionType.SKIP:
            return "[dim]-[/]"
        return "[green]✓[/]"

    def _get_result_message(self, action_result: ActionResult) -> str:
        if action_result.failed:
            return f"[red]{str(action_result.error)[:80]}[/]"
        return action_result.message[:80] if action_result.message else "OK"

    # Health reports

    def print_health_report(self, report: HealthReport):
        """Print fleet health diagnostics."""
        if self.use_json:
            self._print_json(report.to_dict())
        else:
            self._print_health_table(report)

    def _print_health_table(self, report: HealthReport):
        if not report.results:
            self.console.print("[dim]No repositories checked[/]")
            return

        display_names = compute_unique_display_names([h.repo for h in report.results])
        table = Table(title="Fleet Health")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Health", justify="center")
        table.add_column("Branch")
        table.add_column("Sync", justify="center")
        table.add_column("Working Tree", justify="center")
        table.add_column("Recommendation")

        for health in report.results:
            recommendation = health.recommendation
            if health.error and not recommendation:
                recommendation = f"[red]{health.error}[/]"
            table.add_row(
                display_names.get(health.repo.target_path, health.repo.name),
                _HEALTH_ICONS.get(health.health_status.value, health.health_status.value),
                health.current_branch or "[dim]-[/]",
                self._get_divergence_display(health),
                self._get_work_tree_display(health),
                recommendation,
            )

        self.console.print(table)
        self.console.print()
        self._print_health_summary(report.summary, report.total_duration)

    def _get_divergence_display(self, health: RepoHealth) -> str:
        from .diagnostics import DivergenceType

        match health.divergence:
            case DivergenceType.NONE:
                return "[green]✓[/]"
            case DivergenceType.AHEAD:
                return f"[yellow]⬆ {health.ahead_by}[/]"
            case DivergenceType.FAST_FORWARD:
                return f"[blue]⬇ {health.behind_by}[/]"
            case DivergenceType.DIVERGED:
                return f"[red]⬆{health.ahead_by} ⬇{health.behind_by}[/]"
            case DivergenceType.CONFLICT:
                return "[bold red]conflict[/]"
            case DivergenceType.NO_UPSTREAM:
                return "[dim]no upstream[/]"
            case _:
                return "[dim]?[/]"

    def _get_work_tree_display(self, health: RepoHealth) -> str:
        from .diagnostics import WorkTreeStatus

        if health.work_tree_status is None:
            return "[dim]-[/]"
        if health.work_tree_status == WorkTreeStatus.CLEAN:
            return "[green]clean[/]"
        if health.work_tree_status == WorkTreeStatus.CONFLICT:
            return f"[bold red]!{health.conflict_files}[/]"

        parts = []
        if health.modified_files > 0:
            parts.append(f"[yellow]~{health.modified_files}[/]")
        if health.untracked_files > 0:
            parts.append(f"[red]?{health.untracked_files}[/]")
        return " ".join(parts) or str(health.work_tree_status)

    def _print_health_summary(self, summary: HealthSummary, duration: float):
        parts = [f"[bold]Total:[/] {summary.total}"]
        if summary.healthy > 0:
            parts.append(f"[green]✓ Healthy:[/] {summary.healthy}")
        if summary.warning > 0:
            parts.append(f"[yellow]⚠ Warning:[/] {summary.warning}")
        if summary.error > 0:
            parts.append(f"[red]✗ Error:[/] {summary.error}")
        if summary.unreachable > 0:
            parts.append(f"[magenta]⊘ Unreachable:[/] {summary.unreachable}")
        parts.append(f"[dim]{duration:.1f}s[/]")
        self.console.print(" | ".join(parts))
