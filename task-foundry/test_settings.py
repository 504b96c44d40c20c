"""Tests for environment-driven settings."""

import logging

import pytest

from settings import DEFAULT_BUILD_COMMAND, FoundrySettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FOUNDRY_AGENT_COMMAND",
        "FOUNDRY_MAX_TURNS",
        "FOUNDRY_TIMEOUT",
        "FOUNDRY_MAX_ITERATIONS",
        "FOUNDRY_MAX_WORKERS",
        "FOUNDRY_BUILD_CMD",
        "FOUNDRY_TEST_CMD",
        "FOUNDRY_PACKAGES_DIR",
        "FOUNDRY_WORKTREE_DIR",
        "FOUNDRY_LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    s = FoundrySettings.from_env()
    assert s.agent_command == "claude"
    assert s.max_turns == 50
    assert s.timeout == 600
    assert s.max_iterations == 10
    assert s.max_workers is None
    assert s.build_command == DEFAULT_BUILD_COMMAND
    assert s.worktree_dir == ".worktrees"


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FOUNDRY_MAX_TURNS", "20")
    monkeypatch.setenv("FOUNDRY_MAX_WORKERS", "4")
    monkeypatch.setenv("FOUNDRY_TEST_CMD", "npm run test -- --silent")
    monkeypatch.setenv("FOUNDRY_AGENT_COMMAND", "/opt/bin/agent")

    s = FoundrySettings.from_env()

    assert s.max_turns == 20
    assert s.max_workers == 4
    assert s.test_command == ["npm", "run", "test", "--", "--silent"]
    assert s.agent_command == "/opt/bin/agent"


@pytest.mark.parametrize(
    "name, raw, attr, expected",
    [
        ("FOUNDRY_MAX_TURNS", "0", "max_turns", 1),
        ("FOUNDRY_MAX_TURNS", "9999", "max_turns", 500),
        ("FOUNDRY_TIMEOUT", "1", "timeout", 10),
        ("FOUNDRY_TIMEOUT", "100000", "timeout", 3600),
        ("FOUNDRY_MAX_ITERATIONS", "80", "max_iterations", 50),
    ],
)
def test_out_of_range_values_are_clamped(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture, name, raw, attr, expected
) -> None:
    monkeypatch.setenv(name, raw)
    with caplog.at_level(logging.WARNING):
        s = FoundrySettings.from_env()
    assert getattr(s, attr) == expected
    assert "clamping" in caplog.text


def test_garbage_falls_back_to_default(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("FOUNDRY_MAX_ITERATIONS", "lots")
    with caplog.at_level(logging.WARNING):
        s = FoundrySettings.from_env()
    assert s.max_iterations == 10
    assert "Invalid FOUNDRY_MAX_ITERATIONS" in caplog.text


def test_zero_workers_means_unbounded(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FOUNDRY_MAX_WORKERS", "0")
    assert FoundrySettings.from_env().max_workers is None
