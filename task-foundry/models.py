"""Plan, task and per-task result types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


@dataclass(frozen=True)
class FileOwnership:
    """Paths (glob patterns) a task may create or modify under spatial decomposition."""

    create: tuple[str, ...] = ()
    modify: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.create and not self.modify


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    description: str
    branch: str
    dependencies: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    file_ownership: FileOwnership | None = None
    interface_contracts: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Plan:
    id: str
    summary: str
    tasks: tuple[Task, ...]
    created_at: datetime

    def get(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)


@dataclass
class WorkerResult:
    task_id: str
    status: TaskStatus
    branch: str | None = None
    output: str | None = None
    error: str | None = None
    iterations: int = 0
    files_changed: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED
