"""Abort running tasks, reconciling races with natural completion."""

from __future__ import annotations

import logging

from ..session import SessionService, SessionServiceError
from .models import ErrorCode, TaskCancelled, TaskFailed
from .oracle import CompletionOracle

logger = logging.getLogger(__name__)


class CancellationController:
    def __init__(self, service: SessionService, oracle: CompletionOracle) -> None:
        self._service = service
        self._oracle = oracle

    async def cancel(
        self, caller_id: str, task_id: str, *, work_dir: str | None = None
    ) -> TaskCancelled | TaskFailed:
        """Abort a child task of ``caller_id``.

        Cancelling a task that already finished is a precondition failure
        (``ALREADY_COMPLETED``), never a transport error.
        """

        step = "retrieve tasks"
        try:
            caller = await self._service.get(caller_id, directory=work_dir)
            children = await self._service.children(caller.id, directory=caller.directory or None)
            task = next((child for child in children if child.id == task_id), None)
            if task is None:
                return TaskFailed(task_id=task_id, error="Task not found.", code=ErrorCode.TASK_NOT_FOUND)

            step = "check task status"
            if await self._oracle.is_complete(task):
                return TaskFailed(
                    task_id=task.id, error="Task already completed.", code=ErrorCode.ALREADY_COMPLETED
                )
        except SessionServiceError as exc:
            return TaskFailed(task_id=task_id, error=f"Failed to {step}: {exc}", code=ErrorCode.SESSION_ERROR)

        try:
            await self._service.abort(task.id, directory=task.directory or None)
        except SessionServiceError as abort_error:
            try:
                finished = await self._oracle.is_complete(task)
            except SessionServiceError:
                finished = False
            if finished:
                return TaskFailed(
                    task_id=task.id,
                    error="Task completed before cancellation.",
                    code=ErrorCode.ALREADY_COMPLETED,
                )
            return TaskFailed(
                task_id=task.id,
                error=f"Failed to cancel task: {abort_error}",
                code=ErrorCode.SESSION_ERROR,
            )

        logger.info("Cancelled task", extra={"task_id": task.id, "caller_id": caller_id})
        return TaskCancelled(task_id=task.id)


__all__ = ["CancellationController"]
