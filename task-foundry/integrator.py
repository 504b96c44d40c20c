"""Sequentially merge completed task branches into the baseline and verify them."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agent_loop import STATE_DIR
from commands import CommandRunner
from errors import (
    CommandError,
    FoundryError,
    MergeConflictError,
    MergeError,
    VerificationError,
    WorkspaceError,
)
from index_generator import regenerate_indexes
from models import Plan, Task, TaskStatus, WorkerResult
from settings import FoundrySettings
from task_manager import sort_by_dependencies
from worktree import WorktreeManager

logger = logging.getLogger(__name__)

VERIFY_TIMEOUT = 900  # seconds per build/test step
INDEX_COMMIT_MESSAGE = "Auto-generate tools index and server_setup imports"


class IntegrationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    INCOMPLETE = "incomplete"


@dataclass
class IntegrationResult:
    status: IntegrationStatus
    message: str
    plan: Plan
    worker_results: list[WorkerResult]
    errors: list[str] = field(default_factory=list)
    merged_branches: list[str] = field(default_factory=list)
    generated_files: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == IntegrationStatus.SUCCESS


class Integrator:
    """Owns the baseline checkout at *repo_path*; never run two at once on one repo."""

    def __init__(
        self,
        repo_path: str | Path,
        settings: FoundrySettings | None = None,
        runner: CommandRunner | None = None,
        worktrees: WorktreeManager | None = None,
    ):
        self.repo_path = Path(repo_path).resolve()
        self.settings = settings or FoundrySettings()
        self.runner = runner or CommandRunner(cwd=self.repo_path)
        self.worktrees = worktrees or WorktreeManager(
            self.repo_path, self.settings.worktree_dir, runner=self.runner, ignored=(STATE_DIR,)
        )

    def integrate(self, results: list[WorkerResult], plan: Plan) -> IntegrationResult:
        """Merge, regenerate, verify and clean up. Always returns a result."""
        try:
            return self._integrate(list(results), plan)
        except Exception as e:
            logger.error("Integration aborted unexpectedly: %s", e)
            return IntegrationResult(
                status=IntegrationStatus.FAILED,
                message="Integration aborted unexpectedly",
                plan=plan,
                worker_results=list(results),
                errors=[str(e)],
            )

    def _integrate(self, results: list[WorkerResult], plan: Plan) -> IntegrationResult:
        def finish(status, message, errors=None, **extra) -> IntegrationResult:
            return IntegrationResult(
                status=status,
                message=message,
                plan=plan,
                worker_results=results,
                errors=errors or [],
                **extra,
            )

        failed = [r for r in results if r.status == TaskStatus.FAILED]
        if failed:
            return finish(
                IntegrationStatus.FAILED,
                f"{len(failed)} task(s) failed",
                [f"{r.task_id}: {r.error}" for r in failed if r.error],
            )

        reported = {r.task_id for r in results}
        incomplete = [r.task_id for r in results if r.status == TaskStatus.INCOMPLETE]
        incomplete += [t.id for t in plan.tasks if t.id not in reported]
        if incomplete:
            return finish(
                IntegrationStatus.INCOMPLETE,
                f"{len(incomplete)} task(s) did not complete",
                [f"{task_id}: did not complete" for task_id in incomplete],
            )

        logger.info("All tasks completed successfully, starting integration")
        baseline = self.runner.git("branch", "--show-current").stdout.strip()
        logger.info("Integrating into %s", baseline or "detached HEAD")

        ordered = sort_by_dependencies(plan.tasks)
        merged: list[str] = []
        for task in ordered:
            try:
                self.merge_branch(task.branch)
            except MergeError as e:
                logger.error("%s", e)
                return finish(
                    IntegrationStatus.FAILED,
                    f"Integration failed: branch {task.branch} did not merge",
                    [str(e)],
                    merged_branches=merged,
                )
            merged.append(task.branch)

        logger.info("Regenerating tool indexes...")
        report = regenerate_indexes(
            self.repo_path / self.settings.packages_dir, self.settings.template_dir
        )
        if report.errors:
            return finish(
                IntegrationStatus.FAILED,
                "Failed to regenerate tool indexes",
                report.errors,
                merged_branches=merged,
            )
        generated = [p.relative_to(self.repo_path).as_posix() for p in report.changed_files]
        if generated:
            commit_error = self._commit_generated(generated)
            if commit_error:
                return finish(
                    IntegrationStatus.FAILED,
                    "Failed to commit generated tool indexes",
                    [commit_error],
                    merged_branches=merged,
                    generated_files=generated,
                )

        try:
            self.verify()
        except VerificationError as e:
            logger.error("Verification failed after merge: %s", e.step)
            return finish(
                IntegrationStatus.FAILED,
                f"Integration {e.step.lower()} failed after merge",
                [str(e)],
                merged_branches=merged,
                generated_files=generated,
            )
        logger.info("Integration build and tests passed")

        self.cleanup(ordered)
        logger.info("Integration complete")
        return finish(
            IntegrationStatus.SUCCESS,
            f"Successfully integrated {len(ordered)} task(s) and verified with tests",
            merged_branches=merged,
            generated_files=generated,
        )

    def merge_branch(self, branch: str) -> bool:
        """Merge *branch* into the baseline with a merge commit.

        Returns False when the branch is already contained in HEAD. Raises
        MergeConflictError (after aborting the merge) on conflicts and
        MergeError for any other failure.
        """
        logger.info("Merging branch: %s", branch)
        if not self.runner.git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").ok:
            raise MergeError(f"Branch {branch} does not exist")

        tip = self.runner.git("rev-parse", branch)
        base = self.runner.git("merge-base", "HEAD", branch)
        if tip.ok and base.ok and tip.stdout.strip() == base.stdout.strip():
            logger.info("Branch %s already merged or has no changes", branch)
            return False

        cleaned = self._clean_untracked_collisions(branch)
        if cleaned:
            logger.info("Removed %d colliding untracked file(s)", len(cleaned))

        result = self.runner.git("merge", "--no-ff", "--no-edit", "-m", f"Merge {branch}", branch)
        if result.ok:
            logger.info("Successfully merged %s", branch)
            return True

        diff = self.runner.git("diff", "--name-only", "--diff-filter=U")
        conflicted = [f.strip() for f in diff.stdout.strip().splitlines() if f.strip()]
        if conflicted:
            aborted = self.runner.git("merge", "--abort")
            if not aborted.ok:
                logger.error("git merge --abort failed: %s", aborted.stderr[:500])
            raise MergeConflictError(branch, conflicted)
        raise MergeError(f"Failed to merge {branch}: {result.output[:500]}")

    def _clean_untracked_collisions(self, branch: str) -> list[str]:
        """Delete untracked files that the branch would add, so the merge can proceed."""
        diff = self.runner.git("diff", "--name-only", "-z", f"HEAD...{branch}")
        untracked = self.runner.git("ls-files", "--others", "--exclude-standard", "-z")
        if not diff.ok or not untracked.ok:
            return []

        incoming = set(filter(None, diff.stdout.split("\0")))
        cleaned = []
        for rel in filter(None, untracked.stdout.split("\0")):
            if rel not in incoming:
                continue
            target = (self.repo_path / rel).resolve()
            if not target.is_relative_to(self.repo_path):
                logger.warning("Refusing to remove path outside the repository: %s", rel)
                continue
            try:
                target.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove untracked file %s: %s", rel, e)
                continue
            logger.info("Removed conflicting untracked file: %s", rel)
            cleaned.append(rel)
        return cleaned

    def _commit_generated(self, files: list[str]) -> str | None:
        """Commit regenerated files; returns an error message on failure."""
        added = self.runner.git("add", "--", *files)
        if not added.ok:
            logger.error("Failed to stage generated files: %s", added.stderr[:500])
            return f"git add of generated files failed: {added.stderr[:500]}"
        commit = self.runner.git("commit", "-m", INDEX_COMMIT_MESSAGE)
        if not commit.ok:
            logger.error("Failed to commit generated files: %s", commit.output[:500])
            return f"Commit of generated files failed: {commit.output[:500]}"
        logger.info("Committed %d generated file(s)", len(files))
        return None

    def verify(self) -> None:
        """Run the build step, then the test step. Raises VerificationError."""
        for step, cmd in (("Build", self.settings.build_command), ("Tests", self.settings.test_command)):
            if not cmd:
                continue
            logger.info("Running %s: %s", step.lower(), " ".join(cmd))
            try:
                result = self.runner.run(cmd, timeout=VERIFY_TIMEOUT)
            except CommandError as e:
                raise VerificationError(step, str(e)) from e
            if not result.ok:
                raise VerificationError(step, result.output[:2000])

    def cleanup(self, tasks: list[Task]) -> None:
        """Best-effort teardown of leftover worktrees and merged branches."""
        logger.info("Cleaning up worktrees and merged branches...")
        for task in tasks:
            try:
                self.worktrees.destroy(self.worktrees.path_for(task.branch))
            except (WorkspaceError, CommandError) as e:
                logger.warning("Failed to clean up worktree for %s: %s", task.branch, e)
        for task in tasks:
            try:
                deleted = self.runner.git("branch", "-d", task.branch)
            except FoundryError as e:
                logger.warning("Could not delete branch %s: %s", task.branch, e)
                continue
            if deleted.ok:
                logger.info("Deleted merged branch %s", task.branch)
            else:
                logger.warning("Could not delete branch %s: %s", task.branch, deleted.stderr[:300])
