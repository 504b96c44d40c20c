"""Tests for the agent iteration loop and its persisted state."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agent_loop import (
    AgentLoop,
    LoopPhase,
    LoopState,
    read_loop_state,
    state_path,
    write_loop_state,
)
from commands import CommandResult
from errors import CommandError, CommandTimeout

TOKEN = "TASK_COMPLETE"


def ok(stdout: str) -> CommandResult:
    return CommandResult(["claude"], 0, stdout, "")


def make_loop(tmp_path: Path, outputs, max_iterations: int = 3, clock=None) -> AgentLoop:
    runner = MagicMock()
    runner.run.side_effect = outputs
    kwargs = {"clock": clock} if clock else {}
    return AgentLoop(
        tmp_path,
        "# Task: demo\n",
        agent_command="claude",
        max_turns=7,
        timeout=600,
        max_iterations=max_iterations,
        completion_token=TOKEN,
        runner=runner,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Loop state file
# ---------------------------------------------------------------------------


def test_loop_state_round_trip(tmp_path: Path) -> None:
    started = datetime(2026, 1, 1, tzinfo=timezone.utc)
    state = LoopState(True, 2, 5, TOKEN, started, brief="# Task: x\n")
    write_loop_state(tmp_path, state)

    text = state_path(tmp_path).read_text()
    assert text.startswith("---\nactive: true\niteration: 2\n")
    assert "completion_token: TASK_COMPLETE" in text
    assert read_loop_state(tmp_path) == state


def test_loop_state_requires_header() -> None:
    with pytest.raises(ValueError):
        LoopState.parse("no header here")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


def test_completes_on_first_iteration(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [ok(f"All done.\n<promise>{TOKEN}</promise>\n")])
    outcome = loop.run()

    assert outcome.phase == LoopPhase.COMPLETED
    assert outcome.iterations == 1
    assert TOKEN in outcome.output
    assert (tmp_path / ".foundry" / "TASK.md").read_text() == "# Task: demo\n"
    assert read_loop_state(tmp_path).active is False


def test_agent_invocation_arguments(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [ok(TOKEN)])
    loop.run()

    cmd = loop.runner.run.call_args.args[0]
    assert cmd[0] == "claude"
    assert cmd[1] == "-p"
    assert f"<promise>{TOKEN}</promise>" in cmd[2]
    assert cmd[3:] == [
        "--max-turns", "7", "--output-format", "text", "--dangerously-skip-permissions",
    ]
    assert loop.runner.run.call_args.kwargs["cwd"] == tmp_path


def test_reinvokes_until_token(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [ok("working"), ok("still working"), ok(TOKEN)])
    outcome = loop.run()

    assert outcome.phase == LoopPhase.COMPLETED
    assert outcome.iterations == 3
    second_prompt = loop.runner.run.call_args_list[1].args[0][2]
    assert "iteration 2 of 3" in second_prompt
    assert read_loop_state(tmp_path).iteration == 3


def test_incomplete_after_max_iterations(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [ok("no"), ok("nope")], max_iterations=2)
    outcome = loop.run()

    assert outcome.phase == LoopPhase.INCOMPLETE
    assert outcome.iterations == 2
    assert "2 iteration" in outcome.error
    assert read_loop_state(tmp_path).active is False


def test_budget_exhaustion_is_incomplete(tmp_path: Path) -> None:
    ticks = iter([0, 100, 700, 700])
    loop = make_loop(tmp_path, [ok("partial")], clock=lambda: next(ticks))
    outcome = loop.run()

    assert outcome.phase == LoopPhase.INCOMPLETE
    assert outcome.iterations == 1
    assert "budget" in outcome.error
    # remaining budget is passed down as the process timeout
    assert loop.runner.run.call_args.kwargs["timeout"] == 500


def test_killed_agent_fails(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [CommandTimeout("claude timed out", stdout="half way")])
    outcome = loop.run()

    assert outcome.phase == LoopPhase.FAILED
    assert "timeout" in outcome.error
    assert outcome.output == "half way"


def test_killed_agent_that_already_signalled_completes(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [CommandTimeout("timed out", stdout=f"<promise>{TOKEN}</promise>")])
    assert loop.run().phase == LoopPhase.COMPLETED


def test_spawn_failure_fails(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [CommandError("could not run claude: not found")])
    outcome = loop.run()
    assert outcome.phase == LoopPhase.FAILED
    assert "could not be started" in outcome.error


def test_nonzero_exit_without_output_fails(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [CommandResult(["claude"], 1, "", "auth error")])
    outcome = loop.run()
    assert outcome.phase == LoopPhase.FAILED
    assert "auth error" in outcome.error


def test_nonzero_exit_with_output_keeps_going(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [CommandResult(["claude"], 1, "did some work", ""), ok(TOKEN)])
    outcome = loop.run()
    assert outcome.phase == LoopPhase.COMPLETED
    assert outcome.iterations == 2


def test_loop_runs_only_once(tmp_path: Path) -> None:
    loop = make_loop(tmp_path, [ok(TOKEN)])
    loop.run()
    with pytest.raises(RuntimeError):
        loop.run()
