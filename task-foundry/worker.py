"""Worker module that runs one task's build agent inside an isolated git worktree."""

import logging
from datetime import datetime, timezone
from pathlib import Path

from agent_loop import AgentLoop, LoopPhase, STATE_DIR
from commands import CommandRunner
from errors import CommandError, FoundryError, WorkspaceError
from models import Task, TaskStatus, WorkerResult
from settings import FoundrySettings
from task_brief import build_brief
from worktree import WorktreeManager

logger = logging.getLogger(__name__)

_PHASE_STATUS = {
    LoopPhase.COMPLETED: TaskStatus.COMPLETED,
    LoopPhase.INCOMPLETE: TaskStatus.INCOMPLETE,
    LoopPhase.FAILED: TaskStatus.FAILED,
}


class Worker:
    def __init__(
        self,
        repo_path: str | Path,
        task: Task,
        worker_id: str,
        settings: FoundrySettings | None = None,
        base_branch: str | None = None,
        log_dir: str | Path | None = None,
        worktrees: WorktreeManager | None = None,
    ):
        self.repo_path = Path(repo_path).resolve()
        self.task = task
        self.worker_id = worker_id
        self.settings = settings or FoundrySettings()
        self.base_branch = base_branch
        self.log_dir = Path(log_dir) if log_dir else Path(self.settings.log_dir)
        self.worktrees = worktrees or WorktreeManager(
            self.repo_path, self.settings.worktree_dir, ignored=(STATE_DIR,)
        )
        self.runner = CommandRunner(cwd=self.repo_path)
        self._log_lines: list[str] = []

    def run(self) -> WorkerResult:
        """Execute the task once. Never raises; every outcome lands in the result."""
        result = WorkerResult(
            task_id=self.task.id,
            status=TaskStatus.FAILED,
            branch=self.task.branch,
            started_at=datetime.now(timezone.utc),
        )
        try:
            worktree_path = self.worktrees.create(self.task.branch, self.base_branch)
        except FoundryError as e:
            result.error = str(e)
            logger.error("Task %s could not get a workspace: %s", self.task.id, e)
            self._finish(result)
            return result

        self._log(f"Worktree {worktree_path} on {self.task.branch} (base: {self.base_branch or 'HEAD'})")
        try:
            start_commit = self._head(worktree_path)
            outcome = self._run_agent(worktree_path)
            result.status = _PHASE_STATUS[outcome.phase]
            result.output = outcome.output
            result.error = outcome.error
            result.iterations = outcome.iterations
            self._commit_leftovers(worktree_path)
            result.files_changed = self._files_changed(worktree_path, start_commit)
            logger.info(
                "Task %s finished %s after %d iteration(s)",
                self.task.id,
                result.status.value,
                result.iterations,
            )
        except Exception as e:
            result.status = TaskStatus.FAILED
            result.error = str(e)
            logger.error("Task %s failed: %s", self.task.id, e)
        finally:
            self._cleanup(worktree_path)
            self._finish(result)
        return result

    def _run_agent(self, worktree_path: Path):
        s = self.settings
        brief = build_brief(
            self.task,
            s.completion_token,
            [s.build_command, s.test_command],
        )
        loop = AgentLoop(
            worktree_path,
            brief,
            agent_command=s.agent_command,
            max_turns=s.max_turns,
            timeout=s.timeout,
            max_iterations=s.max_iterations,
            completion_token=s.completion_token,
        )
        self._log(f"Agent loop: {s.agent_command}, max {s.max_iterations} iterations, timeout {s.timeout}s")
        outcome = loop.run()
        self._log(f"Agent loop ended {outcome.phase.value} ({len(outcome.output)} chars)")
        return outcome

    def _head(self, worktree_path: Path) -> str | None:
        result = self.runner.git("rev-parse", "HEAD", cwd=worktree_path)
        return result.stdout.strip() if result.ok else None

    def _commit_leftovers(self, worktree_path: Path) -> None:
        """Commit whatever the agent left uncommitted so the branch keeps it."""
        status = self.runner.git("status", "--porcelain", cwd=worktree_path)
        if not status.stdout.strip():
            return
        logger.warning(
            "Found uncommitted changes, auto-committing for task %s", self.task.id
        )
        added = self.runner.git("add", "-A", cwd=worktree_path)
        if not added.ok:
            logger.warning("git add failed for task %s: %s", self.task.id, added.stderr[:300])
            return
        staged = self.runner.git("diff", "--cached", "--name-only", cwd=worktree_path)
        if not staged.stdout.strip():
            return
        commit = self.runner.git(
            "commit",
            "-m",
            f"[agent] chore: auto-commit remaining changes for {self.task.id}",
            cwd=worktree_path,
        )
        if commit.ok:
            self._log("Auto-committed remaining changes")
        else:
            logger.warning(
                "Auto-commit failed for task %s: %s", self.task.id, commit.stderr[:300]
            )

    def _files_changed(self, worktree_path: Path, start_commit: str | None) -> list[str]:
        if not start_commit:
            return []
        diff = self.runner.git("diff", "--name-only", f"{start_commit}..HEAD", cwd=worktree_path)
        files = [f for f in diff.stdout.strip().splitlines() if f]
        logger.info("Task %s changed %d files: %s", self.task.id, len(files), files)
        return files

    def _cleanup(self, worktree_path: Path) -> None:
        try:
            self.worktrees.destroy(worktree_path)
        except (WorkspaceError, CommandError) as e:
            logger.error("Failed to remove worktree %s: %s", worktree_path, e)
            self._log(f"Worktree teardown failed: {e}")

    def _finish(self, result: WorkerResult) -> None:
        result.finished_at = datetime.now(timezone.utc)
        try:
            self._save_log(result)
        except OSError as e:
            logger.warning("Could not write log for task %s: %s", self.task.id, e)

    def _save_log(self, result: WorkerResult) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{self.worker_id}-{self.task.id}.log"
        content = (
            f"task_id: {self.task.id}\n"
            f"worker_id: {self.worker_id}\n"
            f"branch: {self.task.branch}\n"
            f"base_branch: {self.base_branch}\n"
            f"status: {result.status.value}\n"
            f"iterations: {result.iterations}\n"
            f"elapsed: {result.elapsed_seconds:.1f}s\n"
            f"error: {result.error}\n"
            f"files_changed: {result.files_changed}\n"
            f"---\n" + "\n".join(self._log_lines)
        )
        log_path.write_text(content)
        logger.info("Log saved to %s", log_path)

    def _log(self, message: str) -> None:
        self._log_lines.append(f"[{datetime.now(timezone.utc).isoformat()}] {message}")
