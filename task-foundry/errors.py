"""Exception types shared across the dispatch and integration modules."""


class FoundryError(Exception):
    """Base class for task-foundry errors."""


class ValidationError(FoundryError, ValueError):
    """Raised when an identifier or plan document is malformed."""


class WorkspaceError(FoundryError):
    """Raised when a worktree cannot be created or torn down."""


class CommandError(FoundryError):
    """Raised when an external command cannot be spawned."""


class CommandTimeout(CommandError):
    """Raised when an external command is killed by its timeout."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class AgentTimeout(FoundryError):
    """Raised when the wall-clock budget of an agent loop runs out."""


class AgentProcessError(FoundryError):
    """Raised when the build agent process errors or is killed."""

    def __init__(self, message: str, partial_output: str = ""):
        super().__init__(message)
        self.partial_output = partial_output


class DependencyDeadlock(FoundryError):
    """Raised when no schedulable progress is possible."""


class DependencyBlocked(DependencyDeadlock):
    """A task can never run because one of its dependencies did not complete."""


class MergeError(FoundryError):
    """Raised when a task branch cannot be merged into the baseline."""


class MergeConflictError(MergeError):
    """Raised when merging a task branch leaves conflict markers."""

    def __init__(self, branch: str, files: list[str] | None = None):
        self.branch = branch
        self.files = files or []
        detail = f" ({', '.join(self.files)})" if self.files else ""
        super().__init__(
            f"Merge conflict in branch {branch}{detail}. Manual resolution required."
        )


class VerificationError(FoundryError):
    """Raised when the post-merge build or test step fails."""

    def __init__(self, step: str, output: str):
        self.step = step
        self.output = output
        super().__init__(f"{step} failed: {output}")
