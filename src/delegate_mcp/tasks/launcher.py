"""Create task sessions and collect their output."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

from ..git import GitRunner
from ..session import ModelRef, PartInput, SessionRef, SessionService, SessionServiceError
from .harvest import ResultHarvester
from .models import (
    ErrorCode,
    OutputBundle,
    TaskCompleted,
    TaskFailed,
    TaskList,
    TaskMessageSent,
    TaskRunning,
    TaskSummary,
)
from .oracle import CompletionOracle

logger = logging.getLogger(__name__)

ASYNC_TASK_PREFIX = "[async]"
OUTPUT_POINTER = "Task output was added to this conversation; see the next message."


def task_title(title: str, *, run_async: bool) -> str:
    return f"{ASYNC_TASK_PREFIX} Task: {title}" if run_async else f"Task: {title}"


def _same_directory(left: str, right: str) -> bool:
    if not left or not right:
        return left == right
    return Path(left).expanduser().resolve() == Path(right).expanduser().resolve()


def branch_context(branch: str | None, work_dir: str, parent_dir: str) -> str:
    return (
        "<branch_context>\n"
        f"Branch: {branch or 'unknown'}\n"
        f"Working directory: {work_dir}\n"
        f"Parent directory: {parent_dir}\n"
        "\n"
        "You are running in an isolated worktree.\n"
        "- Keep every change inside the working directory above.\n"
        "- Do not merge into the parent branch; report completion to your parent instead.\n"
        "</branch_context>"
    )


def sibling_table(rows: Sequence[tuple[SessionRef, str]]) -> str:
    lines = [
        "<sibling_tasks>",
        "These tasks are running alongside you. Share findings with them through broadcasts.",
        "",
        "| Task ID | Agent | Title | Directory |",
        "| --- | --- | --- | --- |",
    ]
    for session, agent in rows:
        lines.append(f"| `{session.id}` | {agent} | {session.title} | {session.directory} |")
    lines.append("</sibling_tasks>")
    return "\n".join(lines)


class TaskLauncher:
    """Run prompts in child sessions on behalf of a calling session."""

    def __init__(
        self,
        service: SessionService,
        oracle: CompletionOracle,
        harvester: ResultHarvester,
        *,
        git: GitRunner | None = None,
        max_active_tasks: int = 0,
    ) -> None:
        self._service = service
        self._oracle = oracle
        self._harvester = harvester
        self._git = git
        self._max_active_tasks = max_active_tasks
        self._background: set[asyncio.Task] = set()

    @property
    def pending_dispatches(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for every detached dispatch to settle."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @staticmethod
    def _session_error(step: str, exc: SessionServiceError, task_id: str | None = None) -> TaskFailed:
        return TaskFailed(task_id=task_id, error=f"Failed to {step}: {exc}", code=ErrorCode.SESSION_ERROR)

    async def _active_children(self, caller: SessionRef) -> list[SessionRef]:
        children = await self._service.children(caller.id, directory=caller.directory or None)
        statuses = await self._service.status(directory=caller.directory or None)
        return [
            child
            for child in children
            if child.id in statuses and statuses[child.id].type != "idle"
        ]

    async def _context_parts(
        self,
        caller: SessionRef,
        directory: str,
        siblings: Sequence[SessionRef],
    ) -> list[PartInput]:
        parts: list[PartInput] = []
        if not _same_directory(directory, caller.directory):
            branch = None
            if self._git is not None:
                branch = await self._git.current_branch(directory)
            parts.append(PartInput(text=branch_context(branch, directory, caller.directory)))

        if siblings:
            rows: list[tuple[SessionRef, str]] = []
            for sibling in siblings:
                try:
                    agent, _ = await self._harvester.agent_and_model(sibling)
                except SessionServiceError:
                    agent = None
                rows.append((sibling, agent or "unknown"))
            parts.append(PartInput(text=sibling_table(rows)))
        return parts

    async def _inject(self, caller: SessionRef, bundle: OutputBundle) -> None:
        agent, model = await self._harvester.agent_and_model(caller)
        await self._service.prompt_async(
            caller.id,
            parts=bundle.parts,
            agent=agent,
            model=model,
            no_reply=True,
            directory=caller.directory or None,
        )

    async def _run_detached(
        self, session: SessionRef, agent: str, parts: list[PartInput]
    ) -> None:
        try:
            await self._service.prompt(
                session.id, parts=parts, agent=agent, directory=session.directory or None
            )
        except SessionServiceError as exc:
            logger.error(
                "Task failed to start",
                extra={"task_id": session.id, "agent": agent, "error": str(exc)},
            )

    def _dispatch(self, session: SessionRef, agent: str, parts: list[PartInput]) -> None:
        task = asyncio.create_task(self._run_detached(session, agent, parts))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _abort_quietly(self, session: SessionRef) -> None:
        try:
            await self._service.abort(session.id, directory=session.directory or None)
        except SessionServiceError as exc:
            logger.warning(
                "Abort after timeout failed",
                extra={"task_id": session.id, "error": str(exc)},
            )

    async def _timed_out(self, session: SessionRef, timeout_ms: int | None) -> TaskFailed:
        await self._abort_quietly(session)
        return TaskFailed(
            task_id=session.id,
            error=f"Task did not finish within {timeout_ms}ms; abort was requested.",
            code=ErrorCode.TIMEOUT,
        )

    async def create(
        self,
        caller_id: str,
        *,
        title: str,
        agent: str,
        prompt: str,
        run_async: bool = False,
        timeout_ms: int | None = None,
        work_dir: str | None = None,
    ) -> TaskCompleted | TaskFailed | TaskRunning:
        step = "load the calling session"
        try:
            caller = await self._service.get(caller_id, directory=work_dir)

            step = "list active agents"
            agents = await self._service.agents(directory=caller.directory or None)
            if not any(candidate.name == agent for candidate in agents):
                return TaskFailed(
                    error=f"Agent({agent}) not found or not active.",
                    code=ErrorCode.AGENT_NOT_FOUND,
                )

            step = "list active tasks"
            active = await self._active_children(caller)
            if self._max_active_tasks and len(active) >= self._max_active_tasks:
                return TaskFailed(
                    error=(
                        f"Concurrency limit reached: {len(active)} of {self._max_active_tasks} "
                        "tasks are still running. Wait for one to finish or cancel it."
                    ),
                    code=ErrorCode.CONCURRENCY_LIMIT,
                )

            step = "create session for task"
            directory = work_dir or caller.directory
            session = await self._service.create(
                parent_id=caller.id,
                title=task_title(title, run_async=run_async),
                directory=directory,
            )
        except SessionServiceError as exc:
            return self._session_error(step, exc)

        parts = await self._context_parts(caller, directory, active)
        parts.append(PartInput(text=prompt, synthetic=False))

        logger.info(
            "Created task",
            extra={"task_id": session.id, "agent": agent, "async": run_async, "directory": directory},
        )

        if run_async:
            self._dispatch(session, agent, parts)
            return TaskRunning(task_id=session.id, title=title)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000 if timeout_ms is not None else None
        call = self._service.prompt(session.id, parts=parts, agent=agent, directory=directory)
        try:
            if deadline is not None:
                await asyncio.wait_for(call, timeout=timeout_ms / 1000)
            else:
                await call
        except asyncio.TimeoutError:
            return await self._timed_out(session, timeout_ms)
        except SessionServiceError as exc:
            return self._session_error("execute task", exc, session.id)

        step = "wait for task completion"
        try:
            if deadline is None:
                finished = await self._oracle.wait(session)
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return await self._timed_out(session, timeout_ms)
                try:
                    finished = await asyncio.wait_for(
                        self._oracle.wait(session, int(remaining * 1000) + 1), timeout=remaining
                    )
                except asyncio.TimeoutError:
                    finished = False
            if not finished:
                await self._abort_quietly(session)
                return TaskFailed(
                    task_id=session.id,
                    error="Task replied but never went idle; abort was requested.",
                    code=ErrorCode.TIMEOUT,
                )
            step = "fetch task output"
            bundle = await self._harvester.fetch(session)
            step = "deliver task output"
            await self._inject(caller, bundle)
        except SessionServiceError as exc:
            return self._session_error(step, exc, session.id)

        return TaskCompleted(task_id=session.id, title=title, agent=agent, result=OUTPUT_POINTER)

    async def find_related(self, caller: SessionRef, task_id: str, *, siblings: bool = True) -> SessionRef | None:
        """Look a task up among the caller's children and, optionally, its siblings."""

        for child in await self._service.children(caller.id, directory=caller.directory or None):
            if child.id == task_id:
                return child
        if siblings and caller.parent_id:
            for sibling in await self._service.children(caller.parent_id, directory=caller.directory or None):
                if sibling.id == task_id and sibling.id != caller.id:
                    return sibling
        return None

    async def get_output(
        self,
        caller_id: str,
        task_id: str,
        *,
        wait: bool = False,
        timeout_ms: int | None = None,
        work_dir: str | None = None,
    ) -> TaskCompleted | TaskFailed | TaskRunning:
        step = "load the calling session"
        try:
            caller = await self._service.get(caller_id, directory=work_dir)
            step = "retrieve tasks"
            task = await self.find_related(caller, task_id)
            if task is None:
                return TaskFailed(task_id=task_id, error="Task not found.", code=ErrorCode.TASK_NOT_FOUND)

            step = "check task status"
            complete = await self._oracle.is_complete(task)
            if not complete and wait:
                step = "wait for task completion"
                if not await self._oracle.wait(task, timeout_ms):
                    return TaskFailed(
                        task_id=task.id,
                        error=(
                            "Reached timeout waiting for task completion. "
                            "Try again later or add a longer timeout."
                        ),
                        code=ErrorCode.TIMEOUT,
                    )
                complete = True
            if not complete:
                return TaskRunning(task_id=task.id, title=task.title)

            if await self._harvester.was_aborted(task):
                return TaskFailed(
                    task_id=task.id,
                    error="Task was cancelled before it finished.",
                    code=ErrorCode.CANCELLED,
                )

            step = "fetch task output"
            bundle = await self._harvester.fetch(task)
            agent, _ = await self._harvester.agent_and_model(task)
            step = "deliver task output"
            await self._inject(caller, bundle)
        except SessionServiceError as exc:
            return self._session_error(step, exc, task_id)

        return TaskCompleted(
            task_id=task.id,
            title=task.title,
            agent=agent or "unknown",
            result=OUTPUT_POINTER,
        )

    async def send_message(
        self,
        caller_id: str,
        task_id: str,
        message: str,
        *,
        no_reply: bool = False,
        work_dir: str | None = None,
    ) -> TaskMessageSent | TaskFailed:
        step = "load the calling session"
        try:
            caller = await self._service.get(caller_id, directory=work_dir)
            step = "retrieve tasks"
            task = await self.find_related(caller, task_id)
            if task is None:
                return TaskFailed(task_id=task_id, error="Task not found.", code=ErrorCode.TASK_NOT_FOUND)

            step = "resolve task agent"
            agent, model = await self._harvester.agent_and_model(task)
            step = "send message to task"
            await self._send(task, message, agent, model, no_reply)
        except SessionServiceError as exc:
            return self._session_error(step, exc, task_id)

        logger.info("Sent message to task", extra={"task_id": task_id, "no_reply": no_reply})
        return TaskMessageSent(task_id=task_id, no_reply=no_reply)

    async def _send(
        self,
        task: SessionRef,
        message: str,
        agent: str | None,
        model: ModelRef | None,
        no_reply: bool,
    ) -> None:
        await self._service.prompt_async(
            task.id,
            parts=[PartInput(text=message, synthetic=False)],
            agent=agent,
            model=model,
            no_reply=no_reply,
            directory=task.directory or None,
        )

    async def list_tasks(self, caller_id: str, *, work_dir: str | None = None) -> TaskList | TaskFailed:
        try:
            caller = await self._service.get(caller_id, directory=work_dir)
            children = await self._service.children(caller.id, directory=caller.directory or None)
        except SessionServiceError as exc:
            return self._session_error("retrieve tasks", exc)
        return TaskList(
            tasks=[
                TaskSummary(task_id=child.id, title=child.title, directory=child.directory)
                for child in children
            ]
        )


__all__ = [
    "ASYNC_TASK_PREFIX",
    "OUTPUT_POINTER",
    "TaskLauncher",
    "branch_context",
    "sibling_table",
    "task_title",
]
