from __future__ import annotations

import asyncio
import json
import logging

import pytest

from delegate_mcp.session import FakeSessionService
from delegate_mcp.tasks import CompletionOracle, SeenCache, TaskEventWatcher


class StopWatching(Exception):
    pass


def _watcher(service: FakeSessionService, **kwargs) -> TaskEventWatcher:
    return TaskEventWatcher(service, CompletionOracle(service), **kwargs)


def _finished_async_task(service: FakeSessionService) -> None:
    service.add_session("ses_parent", title="Main")
    service.add_message("ses_parent", "user", "delegate", agent="build")
    service.add_session("ses_task", parent_id="ses_parent", title="[async] Task: Scan", status="idle")
    service.add_message("ses_task", "user", "scan")
    service.add_message("ses_task", "assistant", "scanned", agent="explorer")


def _idle(session_id: str) -> dict:
    return {"type": "session.status", "properties": {"sessionID": session_id, "status": {"type": "idle"}}}


def test_parent_is_notified_once_when_async_task_goes_idle() -> None:
    service = FakeSessionService()
    _finished_async_task(service)
    watcher = _watcher(service)

    async def scenario():
        await watcher.handle(_idle("ses_task"))
        await watcher.handle({"type": "session.idle", "properties": {"sessionID": "ses_task"}})

    asyncio.run(scenario())

    calls = service.calls_for("prompt_async")
    assert len(calls) == 1
    assert calls[0]["session_id"] == "ses_parent"
    assert calls[0]["no_reply"] is False
    assert calls[0]["agent"] == "build"
    notice = json.loads(calls[0]["parts"][0].text)
    assert notice["status"] == "completed"
    assert notice["task_id"] == "ses_task"
    assert notice["title"] == "[async] Task: Scan"
    assert notice["work_dir"] == "/repo"


def test_sync_tasks_and_unfinished_tasks_are_ignored() -> None:
    service = FakeSessionService()
    _finished_async_task(service)
    service.add_session("ses_sync", parent_id="ses_parent", title="Task: Sync", status="idle")
    service.add_message("ses_sync", "user", "go")
    service.add_message("ses_sync", "assistant", "done")
    service.add_session("ses_fresh", parent_id="ses_parent", title="[async] Task: Fresh", status="idle")
    service.add_message("ses_fresh", "user", "go")
    watcher = _watcher(service)

    async def scenario():
        await watcher.handle(_idle("ses_sync"))
        await watcher.handle(_idle("ses_fresh"))
        await watcher.handle({"type": "session.status", "properties": {"sessionID": "ses_task", "status": {"type": "busy"}}})

    asyncio.run(scenario())

    assert service.calls_for("prompt_async") == []
    assert "ses_fresh" not in watcher.notified


def test_failed_notification_can_be_retried(caplog) -> None:
    service = FakeSessionService()
    _finished_async_task(service)
    service.fail("prompt_async", "ses_parent")
    watcher = _watcher(service)
    caplog.set_level(logging.ERROR, logger="delegate_mcp.tasks.events")

    asyncio.run(watcher.handle(_idle("ses_task")))

    assert "Failed to handle host event" in caplog.text
    assert "ses_task" not in watcher.notified

    service.clear_failure("prompt_async", "ses_parent")
    asyncio.run(watcher.handle(_idle("ses_task")))

    assert "ses_task" in watcher.notified


def test_new_sibling_is_announced_to_existing_siblings() -> None:
    service = FakeSessionService()
    service.add_session("ses_parent")
    service.add_session("ses_old", parent_id="ses_parent", title="Task: Old")
    service.add_message("ses_old", "user", "old work", agent="executor")
    service.add_session("ses_new", parent_id="ses_parent", title="Task: New")
    watcher = _watcher(service)
    event = {
        "type": "session.created",
        "properties": {"info": {"id": "ses_new", "parentID": "ses_parent", "directory": "/repo", "title": "Task: New"}},
    }

    async def scenario():
        await watcher.handle(event)
        await watcher.handle(event)

    asyncio.run(scenario())

    calls = service.calls_for("prompt_async")
    assert [call["session_id"] for call in calls] == ["ses_old"]
    assert calls[0]["no_reply"] is True
    assert calls[0]["agent"] == "executor"
    assert calls[0]["parts"][0].text.startswith(
        '<new_sibling task_id="ses_new" agent="unknown" title="Task: New">'
    )


def test_root_session_creation_is_ignored() -> None:
    service = FakeSessionService()
    watcher = _watcher(service)

    asyncio.run(watcher.handle({"type": "session.created", "properties": {"info": {"id": "ses_root"}}}))
    asyncio.run(watcher.handle({"type": "session.created", "properties": {"info": {"title": "no id"}}}))

    assert service.calls == []


def test_compaction_restores_task_context_once() -> None:
    service = FakeSessionService()
    service.add_session("ses_parent")
    service.add_message("ses_parent", "user", "plan", agent="build")
    service.add_session("ses_a", parent_id="ses_parent", title="Task: A")
    service.add_session("ses_b", parent_id="ses_parent", title="[async] Task: B")
    watcher = _watcher(service)
    event = {"type": "session.compacted", "properties": {"sessionID": "ses_parent"}}

    async def scenario():
        await watcher.handle(event)
        await watcher.handle(event)

    asyncio.run(scenario())

    calls = service.calls_for("prompt_async")
    assert len(calls) == 1
    assert calls[0]["no_reply"] is True
    text = calls[0]["parts"][0].text
    assert text.startswith("<task-context>\n## Active Tasks")
    assert "- `ses_a`: Task: A\n- `ses_b`: [async] Task: B\n</task-context>" in text


def test_compaction_without_children_is_silent() -> None:
    service = FakeSessionService()
    service.add_session("ses_parent")
    watcher = _watcher(service, injected=SeenCache(ttl_seconds=5))

    asyncio.run(watcher.handle({"type": "session.compacted", "properties": {"sessionID": "ses_parent"}}))

    assert service.calls_for("prompt_async") == []


def test_consume_handles_every_queued_event() -> None:
    service = FakeSessionService()
    _finished_async_task(service)
    service.events_queue.extend([{"type": "server.connected", "properties": {}}, _idle("ses_task")])
    watcher = _watcher(service)

    handled = asyncio.run(watcher.consume())

    assert handled == 2
    assert "ses_task" in watcher.notified


def test_run_reconnects_after_stream_failure(caplog) -> None:
    service = FakeSessionService()
    service.fail("events", detail="connection reset")
    sleeps: list[float] = []

    async def stop_after_first_retry(seconds: float) -> None:
        sleeps.append(seconds)
        raise StopWatching()

    watcher = _watcher(service, retry_seconds=2.5, sleep=stop_after_first_retry)
    caplog.set_level(logging.WARNING, logger="delegate_mcp.tasks.events")

    with pytest.raises(StopWatching):
        asyncio.run(watcher.run())

    assert sleeps == [2.5]
    assert "Host event stream failed" in caplog.text
