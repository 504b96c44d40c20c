"""Load plans and answer dependency questions about their tasks."""

import re
from datetime import datetime, timezone
from pathlib import Path

import yaml

from errors import ValidationError
from models import FileOwnership, Plan, Task
from worktree import MAX_BRANCH_LENGTH

# Planners emit camelCase; accept both spellings.
_KEY_ALIASES = {
    "acceptanceCriteria": "acceptance_criteria",
    "fileOwnership": "file_ownership",
    "interfaceContracts": "interface_contracts",
    "depends_on": "dependencies",
    "createdAt": "created_at",
}


def _normalise(entry: dict) -> dict:
    return {_KEY_ALIASES.get(k, k): v for k, v in entry.items()}


def slugify(text: str, limit: int = 50) -> str:
    slug = text.lower().strip()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = slug.strip("-")
    return slug[:limit].strip("-")


def default_branch(task_id: str, title: str) -> str:
    branch = f"agent/{slugify(task_id)}-{slugify(title)}".rstrip("-")
    return branch[:MAX_BRANCH_LENGTH].rstrip("-")


def _str_list(value, field_name: str, task_id: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, list):
        raise ValidationError(f"Task '{task_id}': '{field_name}' must be a list")
    return tuple(str(v) for v in value)


def _parse_task(raw: dict) -> Task:
    if not isinstance(raw, dict):
        raise ValidationError(f"Task entry must be a mapping, got {type(raw).__name__}")
    entry = _normalise(raw)
    try:
        task_id = str(entry["id"])
        title = str(entry["title"])
    except KeyError as e:
        raise ValidationError(f"Task entry is missing required key {e}") from e

    ownership = None
    raw_ownership = entry.get("file_ownership")
    if raw_ownership:
        if not isinstance(raw_ownership, dict):
            raise ValidationError(f"Task '{task_id}': 'file_ownership' must be a mapping")
        ownership = FileOwnership(
            create=_str_list(raw_ownership.get("create"), "file_ownership.create", task_id),
            modify=_str_list(raw_ownership.get("modify"), "file_ownership.modify", task_id),
        )

    contracts = entry.get("interface_contracts") or {}
    if not isinstance(contracts, dict):
        raise ValidationError(f"Task '{task_id}': 'interface_contracts' must be a mapping")

    branch = str(entry.get("branch") or default_branch(task_id, title))

    return Task(
        id=task_id,
        title=title,
        description=str(entry.get("description", "")),
        branch=branch,
        dependencies=_str_list(entry.get("dependencies"), "dependencies", task_id),
        acceptance_criteria=_str_list(
            entry.get("acceptance_criteria"), "acceptance_criteria", task_id
        ),
        file_ownership=ownership,
        interface_contracts=tuple((str(k), str(v)) for k, v in contracts.items()),
    )


def plan_from_dict(data: dict, default_id: str = "plan") -> Plan:
    """Build a Plan from a decoded plan document.

    Raises ValidationError if task IDs or branches are not unique, or if a
    dependency references a task outside the plan.
    """
    if not isinstance(data, dict):
        raise ValidationError("Plan document must be a mapping")
    data = _normalise(data)
    raw_tasks = data.get("tasks")
    if not raw_tasks:
        raise ValidationError("No 'tasks' key found in plan")
    if not isinstance(raw_tasks, list):
        raise ValidationError("'tasks' must be a list")

    tasks: list[Task] = []
    seen_ids: set[str] = set()
    seen_branches: set[str] = set()
    for entry in raw_tasks:
        task = _parse_task(entry)
        if task.id in seen_ids:
            raise ValidationError(f"Duplicate task ID: {task.id}")
        if task.branch in seen_branches:
            raise ValidationError(f"Duplicate branch: {task.branch}")
        seen_ids.add(task.id)
        seen_branches.add(task.branch)
        tasks.append(task)

    for task in tasks:
        for dep in task.dependencies:
            if dep not in seen_ids:
                raise ValidationError(
                    f"Task '{task.id}' depends on '{dep}' which does not exist"
                )

    created = data.get("created_at")
    if isinstance(created, str):
        try:
            created = datetime.fromisoformat(created.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid created_at timestamp: {created!r}") from e
    elif not isinstance(created, datetime):
        created = datetime.now(timezone.utc)

    return Plan(
        id=str(data.get("id") or default_id),
        summary=str(data.get("summary", "")),
        tasks=tuple(tasks),
        created_at=created,
    )


def load_plan(plan_path: str | Path) -> Plan:
    """Read a YAML (or JSON) plan file.

    The document must have a top-level 'tasks' list. Each task needs 'id' and
    'title'; 'description', 'branch', 'dependencies', 'acceptance_criteria',
    'file_ownership' and 'interface_contracts' are optional.
    """
    plan_path = Path(plan_path)
    with open(plan_path) as f:
        data = yaml.safe_load(f)
    return plan_from_dict(data, default_id=plan_path.stem)


def get_ready_tasks(
    tasks: list[Task] | tuple[Task, ...],
    completed_ids: set[str],
    running_ids: set[str],
    failed_ids: set[str],
) -> list[Task]:
    """Return tasks that can start now, in plan order.

    A task is ready when it is not completed, running or failed, every
    dependency is completed, and no dependency has failed.
    """
    ready = []
    for task in tasks:
        if task.id in completed_ids or task.id in running_ids or task.id in failed_ids:
            continue
        if not all(dep in completed_ids for dep in task.dependencies):
            continue
        if any(dep in failed_ids for dep in task.dependencies):
            continue
        ready.append(task)
    return ready


def sort_by_dependencies(tasks: list[Task] | tuple[Task, ...]) -> list[Task]:
    """Depth-first topological order: dependencies before dependents, ties in plan order."""
    by_id = {t.id: t for t in tasks}
    visited: set[str] = set()
    ordered: list[Task] = []

    def visit(task: Task) -> None:
        if task.id in visited:
            return
        visited.add(task.id)
        for dep_id in task.dependencies:
            dep = by_id.get(dep_id)
            if dep is not None:
                visit(dep)
        ordered.append(task)

    for task in tasks:
        visit(task)
    return ordered


def execution_waves(tasks: list[Task] | tuple[Task, ...]) -> tuple[list[list[Task]], list[Task]]:
    """Group tasks into waves that could run together if every task succeeds.

    Returns (waves, unschedulable); the second list holds tasks caught in cycles.
    """
    done: set[str] = set()
    remaining = list(tasks)
    waves: list[list[Task]] = []
    while remaining:
        wave = [t for t in remaining if all(d in done for d in t.dependencies)]
        if not wave:
            break
        waves.append(wave)
        done.update(t.id for t in wave)
        remaining = [t for t in remaining if t.id not in done]
    return waves, remaining
