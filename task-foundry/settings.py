"""Configuration for dispatch and integration runs.

Every setting has a default and can be overridden through ``FOUNDRY_*``
environment variables via :meth:`FoundrySettings.from_env`; the CLI layers its
own flags on top.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_BUILD_COMMAND = ["python", "-m", "compileall", "-q", "."]
DEFAULT_TEST_COMMAND = ["python", "-m", "pytest", "-q"]


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Parse an integer variable, falling back on garbage and clamping to range."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default: %d", name, raw, default)
        return default
    if value < minimum or value > maximum:
        logger.warning(
            "%s=%d out of range [%d, %d], clamping to valid range",
            name,
            value,
            minimum,
            maximum,
        )
        return max(minimum, min(maximum, value))
    return value


def _env_command(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return shlex.split(raw)


@dataclass
class FoundrySettings:
    # Build agent
    agent_command: str = "claude"
    max_turns: int = 50
    timeout: int = 600
    max_iterations: int = 10
    completion_token: str = "TASK_COMPLETE"

    # Scheduling; None means every ready task runs at once
    max_workers: int | None = None

    # Verification, as argument vectors
    build_command: list[str] = field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    test_command: list[str] = field(default_factory=lambda: list(DEFAULT_TEST_COMMAND))

    # Derived artifacts
    packages_dir: str = "packages/mcp-servers"
    template_dir: str = "template"

    worktree_dir: str = ".worktrees"
    log_dir: str = "./logs"

    @classmethod
    def from_env(cls) -> "FoundrySettings":
        """Load settings with environment variable overrides.

        Environment variables:
            FOUNDRY_AGENT_COMMAND: build agent executable (default: claude)
            FOUNDRY_MAX_TURNS: turns per agent invocation, 1-500 (default: 50)
            FOUNDRY_TIMEOUT: wall-clock seconds per task, 10-3600 (default: 600)
            FOUNDRY_MAX_ITERATIONS: agent re-invocations per task, 1-50 (default: 10)
            FOUNDRY_MAX_WORKERS: concurrent tasks, 0 for unbounded (default: 0)
            FOUNDRY_BUILD_CMD / FOUNDRY_TEST_CMD: verification commands
            FOUNDRY_WORKTREE_DIR, FOUNDRY_LOG_DIR: directories
        """
        max_workers = _env_int("FOUNDRY_MAX_WORKERS", 0, 0, 256)
        return cls(
            agent_command=os.getenv("FOUNDRY_AGENT_COMMAND", "claude"),
            max_turns=_env_int("FOUNDRY_MAX_TURNS", 50, 1, 500),
            timeout=_env_int("FOUNDRY_TIMEOUT", 600, 10, 3600),
            max_iterations=_env_int("FOUNDRY_MAX_ITERATIONS", 10, 1, 50),
            max_workers=max_workers or None,
            build_command=_env_command("FOUNDRY_BUILD_CMD", DEFAULT_BUILD_COMMAND),
            test_command=_env_command("FOUNDRY_TEST_CMD", DEFAULT_TEST_COMMAND),
            packages_dir=os.getenv("FOUNDRY_PACKAGES_DIR", "packages/mcp-servers"),
            worktree_dir=os.getenv("FOUNDRY_WORKTREE_DIR", ".worktrees"),
            log_dir=os.getenv("FOUNDRY_LOG_DIR", "./logs"),
        )
