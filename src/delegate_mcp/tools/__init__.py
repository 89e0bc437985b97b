"""Tool registration for Delegate MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Literal

from fastmcp import Context, FastMCP

from ..config import DelegateSettings
from ..tasks import BroadcastBus, CancellationController, ErrorCode, TaskFailed, TaskLauncher
from ..tasks.models import BroadcastFailed, BroadcastsRead, ToolResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_task: Any
    list_tasks: Any
    get_task_output: Any
    send_task_message: Any
    cancel_task: Any
    broadcast: Any
    read_broadcasts: Any


async def _settle(
    operation: str,
    call: Awaitable[ToolResult],
    fallback: ToolResult,
    context: Context | None,
) -> dict[str, Any]:
    """Await a core call and convert unexpected errors into ``fallback``."""

    try:
        result = await call
    except Exception as exc:  # tool results are structured, never raised
        if context is None:
            logger.exception("Unexpected error in %s", operation)
        else:
            _emit_log(context, "error", f"{operation} failed", extra={"error": str(exc)})
        if isinstance(fallback, TaskFailed):
            fallback = fallback.model_copy(update={"error": f"{fallback.error}: {exc}"})
        elif isinstance(fallback, (BroadcastFailed, BroadcastsRead)):
            fallback = fallback.model_copy(update={"error": f"{fallback.error or operation + ' failed'}: {exc}"})
        result = fallback
    return result.to_payload()


def register_tools(
    server: FastMCP,
    *,
    settings: DelegateSettings,
    launcher: TaskLauncher,
    canceller: CancellationController,
    bus: BroadcastBus,
) -> ToolHandles:
    """Attach the task and broadcast tools to ``server``."""

    def _unexpected(step: str, task_id: str | None = None) -> TaskFailed:
        return TaskFailed(task_id=task_id, error=f"Failed to {step}", code=ErrorCode.SESSION_ERROR)

    async def _create_task(
        session_id: str,
        title: str,
        agent: str,
        prompt: str,
        run_async: bool = False,
        timeout_ms: int | None = None,
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run a prompt in a new child session of ``session_id``."""

        payload = await _settle(
            "create_task",
            launcher.create(
                session_id,
                title=title,
                agent=agent,
                prompt=prompt,
                run_async=run_async,
                timeout_ms=timeout_ms,
                work_dir=work_dir,
            ),
            _unexpected("create task"),
            context,
        )
        _emit_log(
            context,
            "info",
            "create_task finished",
            extra={
                "session_id": session_id,
                "agent": agent,
                "async": run_async,
                "status": payload.get("status"),
                "task_id": payload.get("task_id"),
            },
        )
        return payload

    async def _list_tasks(
        session_id: str,
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List the child tasks of ``session_id``."""

        payload = await _settle(
            "list_tasks",
            launcher.list_tasks(session_id, work_dir=work_dir),
            _unexpected("retrieve tasks"),
            context,
        )
        _emit_log(context, "debug", "Listing tasks", extra={"session_id": session_id})
        return payload

    async def _get_task_output(
        session_id: str,
        task_id: str,
        wait: bool = False,
        timeout_ms: int | None = None,
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Deliver a task's latest output into the calling session."""

        payload = await _settle(
            "get_task_output",
            launcher.get_output(
                session_id,
                task_id,
                wait=wait,
                timeout_ms=timeout_ms if timeout_ms is not None else settings.default_wait_timeout_ms,
                work_dir=work_dir,
            ),
            _unexpected("get task output", task_id),
            context,
        )
        _emit_log(
            context,
            "info",
            "get_task_output finished",
            extra={"task_id": task_id, "wait": wait, "status": payload.get("status")},
        )
        return payload

    async def _send_task_message(
        session_id: str,
        task_id: str,
        message: str,
        no_reply: bool = False,
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Append a message to a child or sibling task."""

        return await _settle(
            "send_task_message",
            launcher.send_message(session_id, task_id, message, no_reply=no_reply, work_dir=work_dir),
            _unexpected("send message to task", task_id),
            context,
        )

    async def _cancel_task(
        session_id: str,
        task_id: str,
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Abort a running child task."""

        payload = await _settle(
            "cancel_task",
            canceller.cancel(session_id, task_id, work_dir=work_dir),
            _unexpected("cancel task", task_id),
            context,
        )
        _emit_log(
            context,
            "info",
            "cancel_task finished",
            extra={"task_id": task_id, "status": payload.get("status"), "code": payload.get("code")},
        )
        return payload

    async def _broadcast(
        session_id: str,
        message: str,
        category: Literal["discovery", "warning", "context", "blocker"],
        target: Literal["all", "children", "siblings"] = "siblings",
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send a non-reply notice to sibling and/or child tasks."""

        payload = await _settle(
            "broadcast",
            bus.send(session_id, message, category=category, target=target, work_dir=work_dir),
            BroadcastFailed(target=target, error="Broadcast failed"),
            context,
        )
        _emit_log(
            context,
            "info",
            "broadcast finished",
            extra={
                "session_id": session_id,
                "category": category,
                "target": target,
                "status": payload.get("status"),
            },
        )
        return payload

    async def _read_broadcasts(
        session_id: str,
        category: Literal["discovery", "warning", "context", "blocker"] | None = None,
        limit: int = 10,
        source: Literal["self", "children"] = "self",
        work_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Read broadcasts received by this session or by its children."""

        payload = await _settle(
            "read_broadcasts",
            bus.read(session_id, category=category, limit=limit, source=source, work_dir=work_dir),
            BroadcastsRead(source=source),
            context,
        )
        _emit_log(
            context,
            "debug",
            "Read broadcasts",
            extra={"session_id": session_id, "source": source, "total": payload.get("total")},
        )
        return payload

    tool_create_task = server.tool(
        name="create_task",
        description=(
            "Run a prompt with the named agent in a new child session. With run_async=false "
            "the call blocks (optionally bounded by timeout_ms) and the task output is added "
            "to your conversation as the next message. With run_async=true it returns a "
            "running task id immediately."
        ),
    )(_create_task)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List the task sessions created by this session.",
    )(_list_tasks)

    tool_get_output = server.tool(
        name="get_task_output",
        description=(
            "Get the latest output of a child or sibling task. Set wait=true to block until "
            "the task completes or timeout_ms elapses."
        ),
    )(_get_task_output)

    tool_send_message = server.tool(
        name="send_task_message",
        description=(
            "Send a message to a running child or sibling task. Set no_reply=true to add "
            "context without starting a new turn."
        ),
    )(_send_task_message)

    tool_cancel = server.tool(
        name="cancel_task",
        description="Cancel a running child task. Finished tasks report ALREADY_COMPLETED.",
        annotations={"destructiveHint": True},
    )(_cancel_task)

    tool_broadcast = server.tool(
        name="broadcast",
        description=(
            "Share a discovery, warning, context note or blocker with sibling tasks, child "
            "tasks, or both. Delivery never starts a new turn in the recipients."
        ),
    )(_broadcast)

    tool_read = server.tool(
        name="read_broadcasts",
        description=(
            "Read broadcasts received by this session (source=self) or by its child tasks "
            "(source=children), newest first."
        ),
    )(_read_broadcasts)

    return ToolHandles(
        create_task=tool_create_task,
        list_tasks=tool_list_tasks,
        get_task_output=tool_get_output,
        send_task_message=tool_send_message,
        cancel_task=tool_cancel,
        broadcast=tool_broadcast,
        read_broadcasts=tool_read,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
