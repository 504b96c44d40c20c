"""Tests for the orchestrator CLI and the dispatch-then-integrate flow."""

import asyncio
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import git
from integrator import IntegrationResult, IntegrationStatus
from models import Plan, Task, TaskStatus, WorkerResult
from orchestrator import (
    EXIT_FAILED,
    EXIT_INCOMPLETE,
    EXIT_SUCCESS,
    dry_run_plan,
    exit_code_for,
    main,
    run_plan,
)
from settings import FoundrySettings
from task_manager import load_plan

PLAN_YAML = """\
id: demo
summary: Two notes
tasks:
  - id: s
    title: Setup notes
    description: Create the setup note.
  - id: t1
    title: First note
    description: Create the first note.
    dependencies: [s]
  - id: t2
    title: Second note
    description: Create the second note.
    dependencies: [s]
"""

# Writes <title>.txt from the brief, then signals completion.
AGENT_SCRIPT = """\
import pathlib
brief = pathlib.Path('.foundry/TASK.md').read_text()
title = brief.splitlines()[0].removeprefix('# Task: ')
pathlib.Path(title.lower().replace(' ', '_') + '.txt').write_text(title + '\\n')
print('<promise>TASK_COMPLETE</promise>')
"""


def make_plan() -> Plan:
    tasks = (
        Task("a", "Task a", "", "agent/a"),
        Task("b", "Task b", "", "agent/b", dependencies=("a",)),
        Task("c", "Task c", "", "agent/c", dependencies=("c",)),
    )
    return Plan(id="p", summary="demo plan", tasks=tasks, created_at=datetime.now(timezone.utc))


def integration(status: IntegrationStatus) -> IntegrationResult:
    return IntegrationResult(status, "msg", make_plan(), [])


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "status, code",
    [
        (IntegrationStatus.SUCCESS, EXIT_SUCCESS),
        (IntegrationStatus.FAILED, EXIT_FAILED),
        (IntegrationStatus.INCOMPLETE, EXIT_INCOMPLETE),
    ],
)
def test_exit_code_follows_integration(status, code) -> None:
    assert exit_code_for([], integration(status)) == code


def test_exit_code_without_integration() -> None:
    done = WorkerResult("a", TaskStatus.COMPLETED)
    partial = WorkerResult("b", TaskStatus.INCOMPLETE)
    broken = WorkerResult("c", TaskStatus.FAILED)
    assert exit_code_for([done], None) == EXIT_SUCCESS
    assert exit_code_for([done, partial], None) == EXIT_INCOMPLETE
    assert exit_code_for([partial, broken], None) == EXIT_FAILED


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


def test_dry_run_prints_waves_and_cycles(capsys: pytest.CaptureFixture) -> None:
    dry_run_plan(make_plan(), max_workers=2)
    out = capsys.readouterr().out
    assert "Wave 1" in out
    assert "Wave 2" in out
    assert "- b: Task b [depends on: a] [branches from: agent/a]" in out
    assert "could not be scheduled" in out


def test_main_dry_run_spawns_nothing(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    plan_file = tmp_path / "PLAN.yaml"
    plan_file.write_text(PLAN_YAML)
    with patch("orchestrator.run_plan") as mock_run:
        main(["--plan", str(plan_file), "--dry-run"])
    mock_run.assert_not_called()
    assert "Execution waves" in capsys.readouterr().out


@pytest.mark.parametrize(
    "document",
    ["tasks: []\n", "tasks:\n  - not a mapping\n", "created_at: soon\ntasks:\n  - {id: a, title: A}\n"],
)
def test_main_rejects_bad_plan(tmp_path: Path, document: str) -> None:
    plan_file = tmp_path / "PLAN.yaml"
    plan_file.write_text(document)
    with pytest.raises(SystemExit) as info:
        main(["--plan", str(plan_file)])
    assert info.value.code == EXIT_FAILED


def test_main_applies_flags_and_exits_with_status(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    plan_file = tmp_path / "PLAN.yaml"
    plan_file.write_text(PLAN_YAML)
    mock_run = AsyncMock(return_value=([], integration(IntegrationStatus.INCOMPLETE)))

    with patch("orchestrator.run_plan", mock_run), patch("orchestrator._check_repository"):
        with pytest.raises(SystemExit) as info:
            main([
                "--plan", str(plan_file),
                "--max-workers", "3",
                "--max-iterations", "4",
                "--test-cmd", "make check",
                "--no-integrate",
            ])

    assert info.value.code == EXIT_INCOMPLETE
    plan, _repo, settings = mock_run.call_args.args
    assert [t.id for t in plan.tasks] == ["s", "t1", "t2"]
    assert settings.max_workers == 3
    assert settings.max_iterations == 4
    assert settings.test_command == ["make", "check"]
    assert mock_run.call_args.kwargs["integrate"] is False


# ---------------------------------------------------------------------------
# Full flow with a scripted agent
# ---------------------------------------------------------------------------


def test_run_plan_dispatches_and_integrates(git_repo: Path, tmp_path: Path) -> None:
    agent = tmp_path / "fake-agent"
    agent.write_text(f"#!{sys.executable}\n{AGENT_SCRIPT}")
    agent.chmod(agent.stat().st_mode | stat.S_IEXEC)
    plan_file = tmp_path / "PLAN.yaml"
    plan_file.write_text(PLAN_YAML)

    settings = FoundrySettings(
        agent_command=str(agent),
        timeout=60,
        build_command=[sys.executable, "-c", "pass"],
        test_command=[sys.executable, "-c", "pass"],
    )
    events = MagicMock()

    results, outcome = asyncio.run(run_plan(
        load_plan(plan_file),
        git_repo,
        settings,
        log_dir=tmp_path / "logs",
        live=False,
        on_event=events,
    ))

    assert [r.status for r in results] == [TaskStatus.COMPLETED] * 3
    assert results[0].task_id == "s"
    assert outcome.status == IntegrationStatus.SUCCESS, outcome.errors
    for name in ("setup_notes.txt", "first_note.txt", "second_note.txt"):
        assert (git_repo / name).exists()
    assert git(git_repo, "branch", "--list", "agent/*") == ""
    assert not any((git_repo / ".worktrees").rglob("*.txt"))
    assert len(list((tmp_path / "logs").glob("worker-*.log"))) == 3
    assert events.call_args_list[-1].args[0] == "run_completed"
