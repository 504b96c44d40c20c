"""Dependency-aware parallel dispatch of plan tasks to workers."""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.table import Table

from agent_loop import STATE_DIR
from errors import DependencyBlocked, DependencyDeadlock
from models import Plan, Task, TaskStatus, WorkerResult
from settings import FoundrySettings
from task_manager import get_ready_tasks
from worker import Worker
from worktree import WorktreeManager

logger = logging.getLogger(__name__)
console = Console()

# Type alias for the optional event callback
EventCallback = Callable[[str, dict], None] | None


def _fire_event(on_event: EventCallback, event_type: str, payload: dict) -> None:
    """Invoke the event callback if set, logging and swallowing any exception."""
    if on_event is None:
        return
    try:
        on_event(event_type, payload)
    except Exception as exc:
        logger.warning("on_event callback raised for %r: %s", event_type, exc)


# ---------------------------------------------------------------------------
# Status tracking
# ---------------------------------------------------------------------------

class DispatchState:
    """Per-run bookkeeping. The three id sets are kept disjoint."""

    def __init__(self, tasks: tuple[Task, ...] | list[Task]):
        self.tasks = tuple(tasks)
        self.completed_ids: set[str] = set()
        self.running_ids: set[str] = set()
        self.failed_ids: set[str] = set()
        self.results: list[WorkerResult] = []  # completion order
        self.branches: dict[str, str] = {}  # task_id -> resulting branch
        self.task_start_times: dict[str, datetime] = {}
        self.task_durations: dict[str, float] = {}

    @property
    def total(self) -> int:
        return len(self.tasks)

    @property
    def settled(self) -> int:
        return len(self.completed_ids) + len(self.failed_ids)

    @property
    def queued(self) -> int:
        return self.total - self.settled - len(self.running_ids)

    def result_for(self, task_id: str) -> WorkerResult | None:
        return next((r for r in self.results if r.task_id == task_id), None)

    def status_of(self, task_id: str) -> str:
        if task_id in self.running_ids:
            return "running"
        result = self.result_for(task_id)
        if result is not None:
            return result.status.value
        return "queued"

    def status_dict(self) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "tasks": {
                "total": self.total,
                "queued": self.queued,
                "running": len(self.running_ids),
                "completed": len(self.completed_ids),
                "failed": len(self.failed_ids),
            },
            "workers": {
                tid: {
                    "status": "running",
                    "elapsed_seconds": (now - self.task_start_times[tid]).total_seconds(),
                }
                for tid in self.running_ids
                if tid in self.task_start_times
            },
            "results": {
                r.task_id: {
                    "status": r.status.value,
                    "branch": r.branch,
                    "iterations": r.iterations,
                    "elapsed_seconds": self.task_durations.get(r.task_id),
                    "error": r.error,
                }
                for r in self.results
            },
        }


def write_status(state: DispatchState, status_path: Path) -> None:
    status_path.write_text(json.dumps(state.status_dict(), indent=2) + "\n")


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------

def format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


_STATUS_STYLES = {
    "completed": "[green]completed[/green]",
    "incomplete": "[magenta]incomplete[/magenta]",
    "failed": "[red]failed[/red]",
    "running": "[yellow]running[/yellow]",
    "queued": "[dim]queued[/dim]",
}


def build_table(state: DispatchState) -> Table:
    now = datetime.now(timezone.utc)

    table = Table(title="Dispatch Status", expand=True)
    table.add_column("Task ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Depends on", style="dim")
    table.add_column("Status", justify="center")
    table.add_column("Iterations", justify="right")
    table.add_column("Duration", justify="right")

    for task in state.tasks:
        status = state.status_of(task.id)
        if task.id in state.task_durations:
            duration_str = format_duration(state.task_durations[task.id])
        elif task.id in state.task_start_times:
            elapsed = (now - state.task_start_times[task.id]).total_seconds()
            duration_str = f"[yellow]{format_duration(elapsed)}[/yellow]"
        else:
            duration_str = ""
        result = state.result_for(task.id)
        iterations = str(result.iterations) if result and result.iterations else ""
        table.add_row(
            task.id,
            task.title,
            ", ".join(task.dependencies),
            _STATUS_STYLES.get(status, status),
            iterations,
            duration_str,
        )

    table.caption = (
        f"Total: {state.total}  "
        f"Running: {len(state.running_ids)}  "
        f"Completed: {len(state.completed_ids)}  "
        f"Failed: {len(state.failed_ids)}"
    )
    return table


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class Dispatcher:
    """Schedules one plan. Construct a new instance per run."""

    def __init__(
        self,
        plan: Plan,
        repo_path: str | Path,
        settings: FoundrySettings | None = None,
        log_dir: str | Path | None = None,
        status_path: str | Path | None = None,
        on_event: EventCallback = None,
        live: bool = False,
        worktrees: WorktreeManager | None = None,
    ):
        self.plan = plan
        self.repo_path = Path(repo_path).resolve()
        self.settings = settings or FoundrySettings()
        self.log_dir = Path(log_dir) if log_dir else Path(self.settings.log_dir)
        self.status_path = Path(status_path) if status_path else None
        self.on_event = on_event
        self.live = live
        self.worktrees = worktrees or WorktreeManager(
            self.repo_path, self.settings.worktree_dir, ignored=(STATE_DIR,)
        )
        self.state = DispatchState(plan.tasks)
        self._worker_counter = 0
        self._display: Live | None = None

    def ready_tasks(self) -> list[Task]:
        s = self.state
        return get_ready_tasks(s.tasks, s.completed_ids, s.running_ids, s.failed_ids)

    def base_branch_for(self, task: Task) -> str | None:
        """Only the first dependency's branch is inherited; the rest are ordering only."""
        if not task.dependencies:
            return None
        return self.state.branches.get(task.dependencies[0])

    async def run(self) -> list[WorkerResult]:
        """Run every task to a terminal status and return one result per task."""
        state = self.state
        cap = self.settings.max_workers
        executor = ThreadPoolExecutor(
            max_workers=cap or max(1, state.total),
            thread_name_prefix="foundry-worker",
        )
        pending: dict[asyncio.Future, str] = {}
        logger.info("Starting dispatch of %d tasks (plan %s)", state.total, self.plan.id)
        _fire_event(self.on_event, "run_started", {"plan_id": self.plan.id, "total": state.total})

        display = (
            Live(build_table(state), console=console, refresh_per_second=2)
            if self.live
            else contextlib.nullcontext()
        )
        try:
            with display as live:
                self._display = live if self.live else None
                while state.settled < state.total:
                    ready = self.ready_tasks()
                    slots = cap - len(pending) if cap else len(ready)
                    for task in ready[: max(0, slots)]:
                        future = self._launch(executor, task)
                        pending[future] = task.id

                    if not pending:
                        self._declare_stall()
                        break

                    done, _ = await asyncio.wait(
                        pending.keys(), return_when=asyncio.FIRST_COMPLETED
                    )
                    for future in done:
                        task_id = pending.pop(future)
                        self._record(self._collect(task_id, future))
        finally:
            self._display = None
            executor.shutdown(wait=True)

        logger.info(
            "Dispatch complete: %d completed, %d failed",
            len(state.completed_ids),
            len(state.failed_ids),
        )
        _fire_event(self.on_event, "run_completed", {
            "completed": len(state.completed_ids),
            "failed": len(state.failed_ids),
        })
        return list(state.results)

    def _launch(self, executor: ThreadPoolExecutor, task: Task) -> asyncio.Future:
        self._worker_counter += 1
        base_branch = self.base_branch_for(task)
        if base_branch:
            logger.info("Task %s will branch from %s", task.id, base_branch)
        logger.info("Spawning worker for task %s", task.id)

        worker = Worker(
            repo_path=self.repo_path,
            task=task,
            worker_id=f"worker-{self._worker_counter}",
            settings=self.settings,
            base_branch=base_branch,
            log_dir=self.log_dir,
            worktrees=self.worktrees,
        )
        self.state.running_ids.add(task.id)
        self.state.task_start_times[task.id] = datetime.now(timezone.utc)
        _fire_event(self.on_event, "task_started", {
            "task_id": task.id,
            "title": task.title,
            "base_branch": base_branch,
        })
        self._refresh()
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(executor, worker.run)

    def _collect(self, task_id: str, future: asyncio.Future) -> WorkerResult:
        task = self.plan.get(task_id)
        try:
            return future.result()
        except Exception as exc:
            logger.error("Worker for task %s raised: %s", task_id, exc)
            return WorkerResult(
                task_id=task_id,
                status=TaskStatus.FAILED,
                branch=task.branch if task else None,
                error=str(exc),
            )

    def _record(self, result: WorkerResult) -> None:
        state = self.state
        task_id = result.task_id
        state.running_ids.discard(task_id)
        state.results.append(result)
        start = state.task_start_times.get(task_id)
        state.task_durations[task_id] = result.elapsed_seconds or (
            (datetime.now(timezone.utc) - start).total_seconds() if start else 0.0
        )

        if result.status == TaskStatus.COMPLETED:
            state.completed_ids.add(task_id)
            if result.branch:
                state.branches[task_id] = result.branch
            logger.info("Task completed: %s", task_id)
            _fire_event(self.on_event, "task_completed", {
                "task_id": task_id,
                "branch": result.branch,
                "iterations": result.iterations,
                "elapsed": result.elapsed_seconds,
            })
        else:
            state.failed_ids.add(task_id)
            logger.error("Task %s ended %s: %s", task_id, result.status.value, result.error)
            _fire_event(self.on_event, "task_failed", {
                "task_id": task_id,
                "status": result.status.value,
                "error": result.error,
            })
        self._refresh()

    def _declare_stall(self) -> None:
        """Fail every unresolved task, telling blocked tasks apart from cycles."""
        state = self.state
        unresolved = [
            t for t in state.tasks
            if t.id not in state.completed_ids and t.id not in state.failed_ids
        ]
        by_id = {t.id: t for t in state.tasks}
        # diagnose against failures that happened before the stall
        failed_before = set(state.failed_ids)
        unresolved_ids = [t.id for t in unresolved]
        logger.error("No schedulable progress possible. Remaining tasks: %s", ", ".join(unresolved_ids))

        for task in unresolved:
            culprit = _failed_ancestor(task, by_id, failed_before)
            if culprit is not None:
                err: DependencyDeadlock = DependencyBlocked(
                    f"dependency '{culprit}' did not complete"
                )
            else:
                err = DependencyDeadlock(
                    "unresolvable dependency cycle among " + ", ".join(unresolved_ids)
                )
            self._record(WorkerResult(
                task_id=task.id,
                status=TaskStatus.FAILED,
                branch=None,
                error=f"{type(err).__name__}: {err}",
            ))

    def _refresh(self) -> None:
        if self.status_path is not None:
            try:
                write_status(self.state, self.status_path)
            except OSError as e:
                logger.warning("Could not write status file %s: %s", self.status_path, e)
        if self._display is not None:
            self._display.update(build_table(self.state))


def _failed_ancestor(task: Task, by_id: dict[str, Task], failed_ids: set[str]) -> str | None:
    """Nearest failed task in *task*'s dependency closure, breadth first."""
    seen: set[str] = set()
    queue = list(task.dependencies)
    while queue:
        dep_id = queue.pop(0)
        if dep_id in seen:
            continue
        seen.add(dep_id)
        if dep_id in failed_ids:
            return dep_id
        dep = by_id.get(dep_id)
        if dep is not None:
            queue.extend(dep.dependencies)
    return None
