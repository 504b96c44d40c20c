"""Run external commands as argument vectors and capture their output."""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from errors import CommandError, CommandTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout/stderr, stripped, for error messages."""
        return "\n".join(p for p in (self.stdout.strip(), self.stderr.strip()) if p)


@dataclass
class CommandRunner:
    """Thin wrapper over ``subprocess.run`` bound to a default working directory.

    Commands are always passed as lists, never through a shell.
    """

    cwd: Path
    timeout: int = DEFAULT_TIMEOUT
    env: dict[str, str] | None = None
    strip_env: tuple[str, ...] = field(default=("CLAUDECODE",))

    def __post_init__(self) -> None:
        self.cwd = Path(self.cwd)

    def run(
        self,
        args: list[str],
        cwd: str | Path | None = None,
        timeout: float | None = None,
        input: str | None = None,
    ) -> CommandResult:
        args = [str(a) for a in args]
        workdir = Path(cwd) if cwd is not None else self.cwd
        limit = timeout if timeout is not None else self.timeout
        logger.debug("$ %s (cwd=%s)", " ".join(args), workdir)
        try:
            proc = subprocess.run(
                args,
                cwd=workdir,
                capture_output=True,
                text=True,
                timeout=limit,
                env=self._environment(),
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(
                f"{args[0]} timed out after {limit}s",
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr),
            ) from e
        except OSError as e:
            raise CommandError(f"could not run {args[0]}: {e}") from e
        return CommandResult(args, proc.returncode, proc.stdout or "", proc.stderr or "")

    def git(self, *args: str, cwd: str | Path | None = None) -> CommandResult:
        return self.run(["git", *args], cwd=cwd)

    def check_git(self, *args: str, cwd: str | Path | None = None) -> str:
        """Run a git command and return stdout, raising on a non-zero exit."""
        result = self.git(*args, cwd=cwd)
        if not result.ok:
            raise CommandError(f"git {' '.join(args)} failed: {result.stderr[:500]}")
        return result.stdout

    def _environment(self) -> dict[str, str]:
        base = dict(self.env) if self.env is not None else dict(os.environ)
        return {k: v for k, v in base.items() if k not in self.strip_env}


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
