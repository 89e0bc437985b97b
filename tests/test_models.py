from __future__ import annotations

from pydantic import TypeAdapter

from delegate_mcp.tasks import ErrorCode, TaskFailed, TaskRunning
from delegate_mcp.tasks.models import Broadcast, BroadcastPartial, BroadcastResult, TaskResult


def test_task_results_discriminate_on_status() -> None:
    adapter = TypeAdapter(TaskResult)

    running = adapter.validate_python({"status": "running", "task_id": "ses_1", "title": "Scan"})
    failed = adapter.validate_python({"status": "failed", "error": "nope", "code": "TIMEOUT"})

    assert isinstance(running, TaskRunning)
    assert isinstance(failed, TaskFailed)
    assert failed.code == ErrorCode.TIMEOUT
    assert failed.task_id is None


def test_broadcast_results_discriminate_on_status() -> None:
    result = TypeAdapter(BroadcastResult).validate_python(
        {"status": "partial", "delivered_to": 2, "skipped": 1, "target": "siblings", "errors": ["x"]}
    )

    assert isinstance(result, BroadcastPartial)


def test_broadcast_serializes_sender_as_from() -> None:
    broadcast = Broadcast(
        sender="explorer",
        task_id="ses_1",
        category="discovery",
        timestamp="2025-03-01T12:00:00.000Z",
        message="found it",
    )

    assert broadcast.model_dump(by_alias=True, exclude_none=True) == {
        "from": "explorer",
        "task_id": "ses_1",
        "category": "discovery",
        "timestamp": "2025-03-01T12:00:00.000Z",
        "message": "found it",
    }
