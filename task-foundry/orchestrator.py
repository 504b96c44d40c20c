"""Orchestrator: dispatch a plan's tasks to build agents, then integrate their branches."""

import argparse
import asyncio
import logging
import shlex
import subprocess
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from commands import CommandRunner
from dispatcher import Dispatcher, EventCallback, format_duration
from errors import CommandError, FoundryError
from integrator import IntegrationResult, IntegrationStatus, Integrator
from models import Plan, TaskStatus, WorkerResult
from settings import FoundrySettings
from task_manager import execution_waves, load_plan

log = logging.getLogger("orchestrator")
console = Console()

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_INCOMPLETE = 2


def dry_run_plan(plan: Plan, max_workers: int | None) -> None:
    """Print the execution plan without spawning any workers."""
    console.rule("[bold cyan]Dry Run - Execution Plan")
    console.print(f"\n[bold]Plan:[/bold] {plan.id}")
    if plan.summary:
        console.print(f"[dim]{plan.summary}[/dim]")
    console.print(f"[bold]Tasks loaded:[/bold] {len(plan.tasks)}")

    waves, unschedulable = execution_waves(plan.tasks)
    console.print()
    for i, wave in enumerate(waves):
        parallel = min(len(wave), max_workers) if max_workers else len(wave)
        console.print(
            f"[bold]Wave {i + 1}[/bold] "
            f"({len(wave)} task(s), up to {parallel} running in parallel):"
        )
        for task in wave:
            deps_str = base_str = ""
            if task.dependencies:
                deps = ", ".join(task.dependencies)
                base = plan.get(task.dependencies[0]).branch
                deps_str = " [dim]" + escape(f"[depends on: {deps}]") + "[/dim]"
                base_str = " [dim]" + escape(f"[branches from: {base}]") + "[/dim]"
            console.print(
                f"  - [cyan]{escape(task.id)}[/cyan]: {escape(task.title)}{deps_str}{base_str}"
            )

    if unschedulable:
        console.print(
            f"\n[bold red]Warning: {len(unschedulable)} task(s) could not be scheduled "
            f"(dependency cycle): {', '.join(t.id for t in unschedulable)}[/bold red]"
        )

    console.print()
    console.print(f"[bold]Execution waves:[/bold] {len(waves)}")
    console.rule("[bold cyan]End of Dry Run")


def _send_desktop_notification(summary: str, elapsed: float) -> None:
    """Send a desktop notification summarising the run. Failures are only logged."""
    message = f"{summary} ({format_duration(elapsed)})"
    try:
        subprocess.run(
            ["notify-send", "task-foundry", message],
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        log.debug("Desktop notification failed: %s", e)


def _check_repository(repo: Path) -> None:
    result = CommandRunner(cwd=repo).git("rev-parse", "--is-inside-work-tree")
    if not result.ok or result.stdout.strip() != "true":
        raise CommandError(f"{repo} is not a git working tree: {result.stderr[:500]}")


# ---------------------------------------------------------------------------
# Core flow
# ---------------------------------------------------------------------------

async def run_plan(
    plan: Plan,
    repo_path: str | Path,
    settings: FoundrySettings,
    log_dir: str | Path | None = None,
    status_path: str | Path | None = None,
    integrate: bool = True,
    live: bool = True,
    on_event: EventCallback = None,
) -> tuple[list[WorkerResult], IntegrationResult | None]:
    """Dispatch every task, then integrate unless *integrate* is False."""
    repo = Path(repo_path).resolve()
    dispatcher = Dispatcher(
        plan,
        repo,
        settings=settings,
        log_dir=log_dir,
        status_path=status_path,
        on_event=on_event,
        live=live,
    )
    results = await dispatcher.run()
    if not integrate:
        return results, None

    integrator = Integrator(repo, settings=settings, worktrees=dispatcher.worktrees)
    # Merging and verification block; keep them off the event loop
    integration = await asyncio.get_running_loop().run_in_executor(
        None, integrator.integrate, results, plan
    )
    return results, integration


def exit_code_for(results: list[WorkerResult], integration: IntegrationResult | None) -> int:
    if integration is not None:
        return {
            IntegrationStatus.SUCCESS: EXIT_SUCCESS,
            IntegrationStatus.FAILED: EXIT_FAILED,
            IntegrationStatus.INCOMPLETE: EXIT_INCOMPLETE,
        }[integration.status]
    statuses = {r.status for r in results}
    if TaskStatus.FAILED in statuses:
        return EXIT_FAILED
    if TaskStatus.INCOMPLETE in statuses:
        return EXIT_INCOMPLETE
    return EXIT_SUCCESS


def print_summary(
    results: list[WorkerResult], integration: IntegrationResult | None, elapsed: float
) -> None:
    table = Table(title="Task Results", expand=True)
    table.add_column("Task ID", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Iterations", justify="right")
    table.add_column("Files", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")
    for r in results:
        table.add_row(
            r.task_id,
            r.status.value,
            str(r.iterations),
            str(len(r.files_changed)),
            format_duration(r.elapsed_seconds),
            (r.error or "")[:120],
        )

    console.print()
    console.print(table)
    console.rule("[bold green]Run Complete")
    completed = sum(1 for r in results if r.status == TaskStatus.COMPLETED)
    console.print(f"  Completed: {completed}")
    console.print(f"  Failed:    {len(results) - completed}")
    console.print(f"  Elapsed:   {format_duration(elapsed)}")
    if integration is None:
        return

    style = "green" if integration.ok else "red"
    console.print(
        f"  Integration: [{style}]{integration.status.value}[/{style}] - {integration.message}"
    )
    for branch in integration.merged_branches:
        console.print(f"    merged {branch}")
    for path in integration.generated_files:
        console.print(f"    generated {path}")
    for err in integration.errors:
        console.print(f"    [red]{err[:500]}[/red]")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def build_parser(defaults: FoundrySettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dispatch plan tasks to build agents in parallel and integrate the results"
    )
    parser.add_argument(
        "--plan", default="PLAN.yaml", help="Path to the plan document (default: PLAN.yaml)"
    )
    parser.add_argument(
        "--repo-path",
        default=".",
        help="Path to the git repo (default: cwd)",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=defaults.max_workers,
        help="Max concurrent tasks (default: unbounded)",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=defaults.max_turns,
        help=f"Turns per agent invocation (default: {defaults.max_turns})",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=defaults.timeout,
        help=f"Per-task wall-clock budget in seconds (default: {defaults.timeout})",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=defaults.max_iterations,
        help=f"Agent re-invocations per task (default: {defaults.max_iterations})",
    )
    parser.add_argument(
        "--build-cmd",
        default=shlex.join(defaults.build_command),
        help=f"Build command run after merging (default: {shlex.join(defaults.build_command)})",
    )
    parser.add_argument(
        "--test-cmd",
        default=shlex.join(defaults.test_command),
        help=f"Test command run after building (default: {shlex.join(defaults.test_command)})",
    )
    parser.add_argument(
        "--log-dir",
        default=defaults.log_dir,
        help=f"Directory for worker log files (default: {defaults.log_dir})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Print the execution plan without spawning workers (default: False)",
    )
    parser.add_argument(
        "--no-integrate",
        action="store_true",
        default=False,
        help="Stop after dispatch; leave task branches unmerged (default: False)",
    )
    parser.add_argument(
        "--notify",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Send a desktop notification when the run completes (default: False)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    settings = FoundrySettings.from_env()
    args = build_parser(settings).parse_args(argv)

    settings.max_workers = args.max_workers if args.max_workers and args.max_workers > 0 else None
    settings.max_turns = args.max_turns
    settings.timeout = args.timeout
    settings.max_iterations = args.max_iterations
    settings.build_command = shlex.split(args.build_cmd)
    settings.test_command = shlex.split(args.test_cmd)
    settings.log_dir = args.log_dir

    try:
        plan = load_plan(args.plan)
    except (OSError, yaml.YAMLError, FoundryError) as e:
        console.print(f"[bold red]Could not load plan {args.plan}:[/bold red] {e}")
        sys.exit(EXIT_FAILED)

    if args.dry_run:
        dry_run_plan(plan, settings.max_workers)
        return

    repo = Path(args.repo_path).resolve()
    try:
        _check_repository(repo)
    except CommandError as e:
        console.print(f"[bold red]{e}[/bold red]")
        sys.exit(EXIT_FAILED)

    start = time.monotonic()
    try:
        results, integration = asyncio.run(run_plan(
            plan,
            repo,
            settings,
            log_dir=args.log_dir,
            # status.json stays local to the working directory, not inside the target repo
            status_path=Path("status.json"),
            integrate=not args.no_integrate,
        ))
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Waiting for active workers to stop")
        log.warning("KeyboardInterrupt - shutting down")
        sys.exit(130)

    elapsed = time.monotonic() - start
    print_summary(results, integration, elapsed)
    code = exit_code_for(results, integration)
    if args.notify:
        outcome = integration.status.value if integration else f"{len(results)} task(s) dispatched"
        _send_desktop_notification(outcome, elapsed)
    sys.exit(code)


if __name__ == "__main__":
    main()
