from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from delegate_mcp.git import GitNotFoundError, GitRunner
from delegate_mcp.git.runner import FakeGitRunner, GitExecutionResult
from delegate_mcp.git.utils import sanitize_environment


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "git"
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def test_git_runner_reports_version(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, "echo 'git version 2.45.0'"))

    result = asyncio.run(runner.version())

    assert result.ok
    assert "git version 2.45.0" in result.stdout


def test_current_branch_runs_in_work_dir(tmp_path: Path) -> None:
    work_dir = tmp_path / "wt"
    work_dir.mkdir()
    runner = GitRunner(_script(tmp_path, 'echo "$@"'))

    branch = asyncio.run(runner.current_branch(work_dir))

    assert branch == "rev-parse --abbrev-ref HEAD"


def test_current_branch_outside_repository_is_none(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, "echo 'fatal: not a git repository' >&2; exit 128"))

    assert asyncio.run(runner.current_branch(tmp_path)) is None


def test_prune_worktrees_passes_arguments(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, 'echo "$@"'))

    result = asyncio.run(runner.prune_worktrees(tmp_path))

    assert result.ok
    assert result.stdout.strip() == "worktree prune"


def test_missing_work_dir_is_a_failed_result(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, "echo unreachable"))

    result = asyncio.run(runner.prune_worktrees(tmp_path / "missing"))

    assert not result.ok
    assert result.returncode == -1


def test_git_not_found(tmp_path: Path) -> None:
    with pytest.raises(GitNotFoundError):
        GitRunner(tmp_path / "missing")


def test_fake_git_runner_records_invocations() -> None:
    fake = FakeGitRunner([GitExecutionResult(args=("rev-parse",), returncode=0, stdout="main\n", stderr="")])

    branch = asyncio.run(fake.current_branch("/repo"))

    assert branch == "main"
    assert fake.invocations == [(("rev-parse", "--abbrev-ref", "HEAD"), "/repo")]


def test_sanitize_environment_strips_repository_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_DIR", "/elsewhere/.git")
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.delenv("GIT_TERMINAL_PROMPT", raising=False)

    env = sanitize_environment()

    assert "GIT_DIR" not in env
    assert "PYTHONPATH" not in env
    assert env["GIT_TERMINAL_PROMPT"] == "0"
