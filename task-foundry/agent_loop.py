"""Drive a build agent through repeated invocations until it signals completion.

The loop is an explicit state machine::

    IDLE -> RUNNING -> COMPLETED   (completion token seen)
                    -> INCOMPLETE  (iterations or wall-clock budget exhausted)
                    -> FAILED      (agent could not run, crashed, or was killed)

Loop state lives in the workspace as a markdown file with a YAML header so
that it survives across agent invocations::

    ---
    active: true
    iteration: 1
    max_iterations: 10
    completion_token: TASK_COMPLETE
    started_at: '2026-01-01T00:00:00+00:00'
    ---

    <brief text>
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import yaml

from commands import CommandRunner
from errors import AgentProcessError, AgentTimeout, CommandError, CommandTimeout

logger = logging.getLogger(__name__)

STATE_DIR = ".foundry"
BRIEF_FILE = "TASK.md"
STATE_FILE = "loop-state.md"


class LoopPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


@dataclass
class LoopState:
    active: bool
    iteration: int
    max_iterations: int
    completion_token: str | None
    started_at: datetime
    brief: str = ""

    def render(self) -> str:
        header = yaml.safe_dump(
            {
                "active": self.active,
                "iteration": self.iteration,
                "max_iterations": self.max_iterations,
                "completion_token": self.completion_token,
                "started_at": self.started_at.isoformat(),
            },
            sort_keys=False,
        )
        return f"---\n{header}---\n\n{self.brief}"

    @classmethod
    def parse(cls, text: str) -> "LoopState":
        if not text.startswith("---\n"):
            raise ValueError("Loop state is missing its header")
        header, sep, body = text[4:].partition("\n---\n")
        if not sep:
            raise ValueError("Loop state header is not terminated")
        data = yaml.safe_load(header) or {}
        started = data.get("started_at")
        if isinstance(started, str):
            started = datetime.fromisoformat(started)
        elif not isinstance(started, datetime):
            started = datetime.now(timezone.utc)
        return cls(
            active=bool(data.get("active", False)),
            iteration=int(data.get("iteration", 1)),
            max_iterations=int(data.get("max_iterations", 1)),
            completion_token=data.get("completion_token"),
            started_at=started,
            brief=body.lstrip("\n"),
        )


def state_path(workspace: str | Path) -> Path:
    return Path(workspace) / STATE_DIR / STATE_FILE


def write_loop_state(workspace: str | Path, state: LoopState) -> Path:
    path = state_path(workspace)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(state.render(), encoding="utf-8")
    return path


def read_loop_state(workspace: str | Path) -> LoopState:
    return LoopState.parse(state_path(workspace).read_text(encoding="utf-8"))


@dataclass
class LoopOutcome:
    phase: LoopPhase
    output: str
    iterations: int
    error: str | None = None


class AgentLoop:
    def __init__(
        self,
        workspace: str | Path,
        brief: str,
        agent_command: str = "claude",
        max_turns: int = 50,
        timeout: float = 600,
        max_iterations: int = 10,
        completion_token: str = "TASK_COMPLETE",
        runner: CommandRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.workspace = Path(workspace)
        self.brief = brief
        self.agent_command = agent_command
        self.max_turns = max_turns
        self.timeout = timeout
        self.max_iterations = max(1, max_iterations)
        self.completion_token = completion_token
        self.runner = runner or CommandRunner(cwd=self.workspace, timeout=int(timeout))
        self._clock = clock
        self.phase = LoopPhase.IDLE

    def run(self) -> LoopOutcome:
        if self.phase != LoopPhase.IDLE:
            raise RuntimeError(f"Agent loop already ran (phase: {self.phase.value})")

        brief_path = self.workspace / STATE_DIR / BRIEF_FILE
        brief_path.parent.mkdir(parents=True, exist_ok=True)
        brief_path.write_text(self.brief, encoding="utf-8")
        state = LoopState(
            active=True,
            iteration=1,
            max_iterations=self.max_iterations,
            completion_token=self.completion_token,
            started_at=datetime.now(timezone.utc),
            brief=self.brief,
        )
        write_loop_state(self.workspace, state)

        self.phase = LoopPhase.RUNNING
        deadline = self._clock() + self.timeout
        outputs: list[str] = []
        error: str | None = None
        logger.info(
            "Starting agent loop in %s (max %d iterations, %d turns/iteration)",
            self.workspace,
            self.max_iterations,
            self.max_turns,
        )

        try:
            while True:
                state = read_loop_state(self.workspace)
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise AgentTimeout(
                        f"Agent budget of {self.timeout}s exhausted after "
                        f"{len(outputs)} iteration(s)"
                    )

                try:
                    outputs.append(self._invoke(state, remaining))
                except AgentProcessError as e:
                    if e.partial_output:
                        outputs.append(e.partial_output)
                    if self.completion_token not in "\n".join(outputs):
                        raise
                    logger.info("Agent was stopped after emitting the completion token")

                if self.completion_token in "\n".join(outputs):
                    self.phase = LoopPhase.COMPLETED
                    break
                if state.iteration >= state.max_iterations:
                    self.phase = LoopPhase.INCOMPLETE
                    error = (
                        f"No completion token after {state.iteration} iteration(s)"
                    )
                    break

                state.iteration += 1
                write_loop_state(self.workspace, state)
                logger.info(
                    "No completion token yet in %s, starting iteration %d/%d",
                    self.workspace,
                    state.iteration,
                    state.max_iterations,
                )
        except AgentTimeout as e:
            self.phase = LoopPhase.INCOMPLETE
            error = str(e)
        except AgentProcessError as e:
            self.phase = LoopPhase.FAILED
            error = str(e)
        finally:
            state.active = False
            try:
                write_loop_state(self.workspace, state)
            except OSError as e:
                logger.warning("Could not persist final loop state: %s", e)

        output = "\n".join(outputs)
        logger.info(
            "Agent loop in %s ended %s after %d iteration(s), %d chars of output",
            self.workspace,
            self.phase.value,
            len(outputs),
            len(output),
        )
        return LoopOutcome(
            phase=self.phase, output=output, iterations=len(outputs), error=error
        )

    def _prompt(self, state: LoopState) -> str:
        prompt = (
            f"Complete the task described in {STATE_DIR}/{BRIEF_FILE}. "
            "Follow all instructions carefully.\n\n"
            "You are in an iteration loop that continues until you signal completion.\n\n"
            "When the task is FULLY complete (all acceptance criteria met, verification "
            f"passing), output:\n<promise>{self.completion_token}</promise>\n\n"
            "Only output it when the task is GENUINELY complete. Do not output false "
            "statements to exit the loop."
        )
        if state.iteration > 1:
            prompt += (
                f"\n\nThis is iteration {state.iteration} of {state.max_iterations}. "
                "The previous attempt ended without the completion signal. Inspect the "
                "current state of the workspace, fix what is missing, and continue."
            )
        return prompt

    def _invoke(self, state: LoopState, timeout: float) -> str:
        cmd = [
            self.agent_command,
            "-p",
            self._prompt(state),
            "--max-turns",
            str(self.max_turns),
            "--output-format",
            "text",
            "--dangerously-skip-permissions",
        ]
        logger.info(
            "Invoking %s in %s (iteration %d, timeout=%ds)",
            self.agent_command,
            self.workspace,
            state.iteration,
            int(timeout),
        )
        try:
            result = self.runner.run(cmd, cwd=self.workspace, timeout=timeout)
        except CommandTimeout as e:
            raise AgentProcessError(
                f"Agent killed after {int(timeout)}s timeout", partial_output=e.stdout
            ) from e
        except CommandError as e:
            raise AgentProcessError(f"Agent could not be started: {e}") from e

        if result.stderr:
            logger.debug("Agent stderr: %s", result.stderr[:500])
        if not result.ok:
            # A hard stop mid-loop can still leave useful output behind
            if not result.stdout.strip():
                raise AgentProcessError(
                    f"Agent exited with code {result.returncode}: {result.stderr[:300]}"
                )
            logger.warning(
                "Agent exited with code %d in %s, keeping its output",
                result.returncode,
                self.workspace,
            )
        return result.stdout
