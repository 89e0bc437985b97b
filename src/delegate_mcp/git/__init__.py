"""Git subprocess utilities for worktree-aware tasks."""

from .runner import GitExecutionResult, GitNotFoundError, GitRunner, GitRunnerError

__all__ = [
    "GitRunner",
    "GitExecutionResult",
    "GitRunnerError",
    "GitNotFoundError",
]
