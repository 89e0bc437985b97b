from __future__ import annotations

import asyncio
from typing import Any

from delegate_mcp.config import DelegateSettings
from delegate_mcp.session import FakeSessionService, ModelRef
from delegate_mcp.tasks import (
    BroadcastBus,
    CancellationController,
    CompletionOracle,
    ResultHarvester,
    TaskLauncher,
)
from delegate_mcp.tools import _emit_log, register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def info(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append(("info", message, extra or {}))

    def error(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append(("error", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


class ExplodingLauncher:
    async def create(self, *args, **kwargs):
        raise RuntimeError("kaboom")


def _register(service: FakeSessionService, launcher: Any = None):
    server = StubServer()
    settings = DelegateSettings()
    settings.default_wait_timeout_ms = 1000
    oracle = CompletionOracle(service)
    launcher = launcher or TaskLauncher(service, oracle, ResultHarvester(service))
    handles = register_tools(
        server,  # type: ignore[arg-type]
        settings=settings,
        launcher=launcher,
        canceller=CancellationController(service, oracle),
        bus=BroadcastBus(service),
    )
    return server, handles


def _service(**kwargs) -> FakeSessionService:
    service = FakeSessionService(**kwargs)
    service.add_session("ses_parent", title="Main")
    service.add_message(
        "ses_parent",
        "user",
        "delegate",
        agent="build",
        model=ModelRef(providerID="anthropic", modelID="claude"),
    )
    return service


def test_all_tools_are_registered() -> None:
    server, handles = _register(_service())

    assert set(server._tools) == {
        "create_task",
        "list_tasks",
        "get_task_output",
        "send_task_message",
        "cancel_task",
        "broadcast",
        "read_broadcasts",
    }
    assert handles.create_task.name == "create_task"
    assert handles.read_broadcasts.name == "read_broadcasts"


def test_create_task_tool_returns_completed_payload() -> None:
    service = _service(responder=lambda session_id, parts: "result text")
    _, handles = _register(service)
    context = StubContext()

    payload = asyncio.run(
        handles.create_task.fn(
            "ses_parent", "Find X", "explorer", "find X", timeout_ms=5000, context=context
        )
    )

    assert payload["status"] == "completed"
    assert payload["agent"] == "explorer"
    assert payload["title"] == "Find X"
    assert payload["result"].endswith("see the next message.")
    assert context.logger.records[-1][0] == "info"
    assert context.logger.records[-1][2]["status"] == "completed"


def test_create_task_tool_reports_unknown_agent_without_task_id() -> None:
    _, handles = _register(_service())

    payload = asyncio.run(handles.create_task.fn("ses_parent", "X", "ghost", "boo"))

    assert payload == {
        "status": "failed",
        "error": "Agent(ghost) not found or not active.",
        "code": "AGENT_NOT_FOUND",
    }


def test_unexpected_errors_become_session_errors() -> None:
    _, handles = _register(_service(), launcher=ExplodingLauncher())
    context = StubContext()

    payload = asyncio.run(handles.create_task.fn("ses_parent", "X", "explorer", "go", context=context))

    assert payload["status"] == "failed"
    assert payload["code"] == "SESSION_ERROR"
    assert payload["error"] == "Failed to create task: kaboom"
    assert context.logger.records[0][:2] == ("error", "create_task failed")


def test_get_task_output_uses_configured_default_timeout() -> None:
    service = _service()
    service.add_session("ses_task", parent_id="ses_parent", status="busy")
    service.add_message("ses_task", "user", "work")
    _, handles = _register(service)

    payload = asyncio.run(handles.get_task_output.fn("ses_parent", "ses_task", wait=True))

    assert payload["status"] == "failed"
    assert payload["code"] == "TIMEOUT"


def test_send_message_and_cancel_tools() -> None:
    service = _service()
    service.add_session("ses_task", parent_id="ses_parent", status="busy")
    service.add_message("ses_task", "user", "work", agent="executor")
    _, handles = _register(service)

    async def scenario():
        sent = await handles.send_task_message.fn("ses_parent", "ses_task", "also Y")
        cancelled = await handles.cancel_task.fn("ses_parent", "ses_task")
        missing = await handles.cancel_task.fn("ses_parent", "ses_nope")
        return sent, cancelled, missing

    sent, cancelled, missing = asyncio.run(scenario())

    assert sent["status"] == "sent"
    assert sent["no_reply"] is False
    assert cancelled == {"status": "cancelled", "task_id": "ses_task"}
    assert missing["code"] == "TASK_NOT_FOUND"


def test_list_tasks_tool() -> None:
    service = _service()
    service.add_session("ses_task", parent_id="ses_parent", title="Task: Work")
    _, handles = _register(service)

    payload = asyncio.run(handles.list_tasks.fn("ses_parent"))

    assert payload == {
        "status": "ok",
        "tasks": [{"task_id": "ses_task", "title": "Task: Work", "directory": "/repo"}],
    }


def test_broadcast_then_read_through_tools() -> None:
    service = _service()
    service.add_session("ses_a", parent_id="ses_parent")
    service.add_message("ses_a", "user", "a", agent="explorer")
    service.add_session("ses_b", parent_id="ses_parent")
    service.add_message("ses_b", "user", "b", agent="executor")
    _, handles = _register(service)

    async def scenario():
        sent = await handles.broadcast.fn("ses_a", "config lives in src/a.ts", "discovery")
        read = await handles.read_broadcasts.fn("ses_b")
        children = await handles.read_broadcasts.fn("ses_parent", category="discovery", source="children")
        return sent, read, children

    sent, read, children = asyncio.run(scenario())

    assert sent == {"status": "success", "delivered_to": 1, "skipped": 1, "target": "siblings"}
    assert read["total"] == 1
    assert read["broadcasts"][0]["from"] == "explorer"
    assert read["broadcasts"][0]["task_id"] == "ses_a"
    assert read["broadcasts"][0]["message"] == "config lives in src/a.ts"
    assert children["source"] == "children"
    assert children["broadcasts"][0]["source"] == "child"


def test_emit_log_falls_back_to_module_logger(caplog) -> None:
    caplog.set_level("INFO", logger="delegate_mcp.tools")

    _emit_log(None, "info", "Listing tasks", extra={"count": 2})

    assert "Listing tasks" in caplog.text
