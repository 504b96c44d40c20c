"""Git worktree lifecycle for isolated, branch-scoped task workspaces."""

import logging
import re
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path

from commands import CommandRunner
from errors import CommandError, ValidationError, WorkspaceError

logger = logging.getLogger(__name__)

MAX_BRANCH_LENGTH = 100

# Alphanumeric at both ends; letters, digits, hyphen, underscore and slash inside.
_VALID_BRANCH = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_/-]*[A-Za-z0-9])?")


def validate_branch_name(branch: str) -> None:
    """Reject branch names that git would refuse or that could smuggle arguments.

    Raises ValidationError; performs no side effects.
    """
    if not branch:
        raise ValidationError("Branch name cannot be empty")
    if len(branch) > MAX_BRANCH_LENGTH:
        raise ValidationError(
            f"Branch name too long (max {MAX_BRANCH_LENGTH} characters): {branch[:40]}..."
        )
    if not _VALID_BRANCH.fullmatch(branch):
        raise ValidationError(
            f"Invalid branch name: {branch!r}. Branch names must start and end with "
            "alphanumeric characters and contain only letters, numbers, hyphens, "
            "underscores, or forward slashes."
        )
    if ".." in branch or "//" in branch or branch.startswith("/") or branch.endswith("/"):
        raise ValidationError(
            f"Invalid branch name: {branch!r}. Cannot contain '..', '//', "
            "or start/end with '/'."
        )


@dataclass
class WorktreeInfo:
    path: Path
    head: str | None = None
    branch: str | None = None


class WorktreeManager:
    DEFAULT_DIR = ".worktrees"

    def __init__(
        self,
        repo_path: str | Path,
        worktree_dir: str | Path | None = None,
        runner: CommandRunner | None = None,
        ignored: tuple[str, ...] = (),
    ):
        self.repo_path = Path(repo_path).resolve()
        base = Path(worktree_dir) if worktree_dir else Path(self.DEFAULT_DIR)
        self.base_dir = base if base.is_absolute() else self.repo_path / base
        self.runner = runner or CommandRunner(cwd=self.repo_path)
        self.ignored = ignored
        self._excluded = False
        # git worktree metadata is shared by every worker thread
        self._lock = threading.RLock()

    def path_for(self, branch: str) -> Path:
        return self.base_dir / branch

    def create(self, branch: str, base_branch: str | None = None) -> Path:
        """Create a fresh worktree on a new *branch*, forked from *base_branch* or HEAD."""
        validate_branch_name(branch)
        if base_branch is not None:
            validate_branch_name(base_branch)

        path = self.path_for(branch)
        logger.info(
            "Setting up worktree for branch %s at %s (base: %s)",
            branch,
            path,
            base_branch or "HEAD",
        )
        try:
            with self._lock:
                self._add(branch, base_branch, path)
        except (CommandError, OSError) as e:
            raise WorkspaceError(f"Could not create worktree for {branch}: {e}") from e

        try:
            current = self.runner.git("branch", "--show-current", cwd=path).stdout.strip()
        except (CommandError, OSError) as e:
            self._discard(path)
            raise WorkspaceError(f"Could not inspect worktree for {branch}: {e}") from e

        if current != branch:
            self._discard(path)
            raise WorkspaceError(
                f"Worktree branch mismatch: expected {branch}, got {current or '(detached)'}"
            )

        logger.info("Created worktree at %s on branch %s", path, current)
        return path

    def _discard(self, path: Path) -> None:
        """Tear down a half-built worktree; the caller is already failing."""
        if not path.exists():
            return
        try:
            self.destroy(path)
        except (WorkspaceError, CommandError) as e:
            logger.warning("Could not remove half-built worktree %s: %s", path, e)

    def _add(self, branch: str, base_branch: str | None, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_excluded()

        if path.exists():
            logger.warning("Removing existing worktree at %s", path)
            self.destroy(path)
        self.runner.git("worktree", "prune")

        # Stale branch from an earlier run; absence is fine
        if self.runner.git("branch", "-D", branch).ok:
            logger.info("Deleted existing branch %s", branch)

        args = ["worktree", "add", "-b", branch, str(path)]
        if base_branch:
            args.append(base_branch)
        added = self.runner.git(*args)
        if not added.ok:
            raise WorkspaceError(
                f"git worktree add for {branch} failed: {added.stderr[:500]}"
            )

    def destroy(self, path: str | Path) -> None:
        """Remove a worktree, keeping its branch. No-op if it is already gone."""
        path = Path(path)
        with self._lock:
            if not path.exists():
                logger.debug("Worktree already removed: %s", path)
                return

            try:
                result = self.runner.git("worktree", "remove", "--force", str(path))
                if result.ok:
                    logger.info("Removed worktree %s", path)
                    return
                reason = result.stderr[:300]
            except CommandError as e:
                reason = str(e)

            logger.warning(
                "git worktree remove failed for %s (%s), using fallback removal",
                path,
                reason,
            )
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise WorkspaceError(f"Could not remove worktree {path}: {e}") from e
            try:
                self.runner.git("worktree", "prune")
            except CommandError as e:
                logger.warning("git worktree prune failed: %s", e)
            logger.info("Removed worktree (fallback): %s", path)

    def list_worktrees(self) -> list[WorktreeInfo]:
        """Return every worktree git knows about, the main checkout included."""
        output = self.runner.check_git("worktree", "list", "--porcelain")
        worktrees: list[WorktreeInfo] = []
        current: WorktreeInfo | None = None
        for line in output.splitlines():
            if line.startswith("worktree "):
                current = WorktreeInfo(path=Path(line[len("worktree "):]))
                worktrees.append(current)
            elif current is None:
                continue
            elif line.startswith("HEAD "):
                current.head = line[len("HEAD "):]
            elif line.startswith("branch "):
                current.branch = line[len("branch "):].removeprefix("refs/heads/")
        return worktrees

    def _ensure_excluded(self) -> None:
        """Keep the worktree directory and workspace scratch files out of git status."""
        if self._excluded:
            return
        patterns = [f"/{name}/" for name in self.ignored]
        try:
            patterns.insert(0, f"/{self.base_dir.relative_to(self.repo_path).as_posix()}/")
        except ValueError:
            pass
        if not patterns:
            self._excluded = True
            return

        result = self.runner.git("rev-parse", "--git-path", "info/exclude")
        if not result.ok:
            logger.warning("Could not locate info/exclude: %s", result.stderr[:300])
            return
        exclude_path = Path(result.stdout.strip())
        if not exclude_path.is_absolute():
            exclude_path = self.repo_path / exclude_path

        existing = exclude_path.read_text() if exclude_path.exists() else ""
        missing = [p for p in patterns if p not in existing.splitlines()]
        if missing:
            exclude_path.parent.mkdir(parents=True, exist_ok=True)
            prefix = "" if not existing or existing.endswith("\n") else "\n"
            exclude_path.write_text(existing + prefix + "\n".join(missing) + "\n")
            logger.debug("Added %s to %s", missing, exclude_path)
        self._excluded = True
