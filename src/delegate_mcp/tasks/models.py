"""Result models returned by the task tools."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from ..session.models import PartInput


class ErrorCode(str, Enum):
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    SESSION_ERROR = "SESSION_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    CONCURRENCY_LIMIT = "CONCURRENCY_LIMIT"
    # Local precondition violations, distinct from host transport failures.
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"


class ToolResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaskCompleted(ToolResult):
    status: Literal["completed"] = "completed"
    task_id: str
    title: str
    agent: str
    result: str


class TaskFailed(ToolResult):
    status: Literal["failed"] = "failed"
    task_id: str | None = None
    error: str
    code: ErrorCode


class TaskRunning(ToolResult):
    status: Literal["running"] = "running"
    task_id: str
    title: str


class TaskCancelled(ToolResult):
    status: Literal["cancelled"] = "cancelled"
    task_id: str


TaskResult = Annotated[
    Union[TaskCompleted, TaskFailed, TaskRunning, TaskCancelled],
    Field(discriminator="status"),
]


class TaskMessageSent(ToolResult):
    status: Literal["sent"] = "sent"
    task_id: str
    no_reply: bool
    result: str = "Message sent."


class TaskSummary(BaseModel):
    task_id: str
    title: str
    directory: str


class TaskList(ToolResult):
    status: Literal["ok"] = "ok"
    tasks: list[TaskSummary] = Field(default_factory=list)


BroadcastCategory = Literal["discovery", "warning", "context", "blocker"]
BroadcastTarget = Literal["all", "children", "siblings"]
BroadcastSource = Literal["self", "children"]


class Broadcast(BaseModel):
    """A decoded lateral notice; ``source`` is attached only when read back."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    task_id: str
    category: BroadcastCategory
    timestamp: str
    message: str
    source: Literal["self", "child"] | None = None


class BroadcastDelivered(ToolResult):
    status: Literal["success"] = "success"
    delivered_to: int
    skipped: int
    target: BroadcastTarget


class BroadcastPartial(ToolResult):
    status: Literal["partial"] = "partial"
    delivered_to: int
    skipped: int
    target: BroadcastTarget
    errors: list[str]


class BroadcastFailed(ToolResult):
    status: Literal["failed"] = "failed"
    target: BroadcastTarget
    error: str


BroadcastResult = Annotated[
    Union[BroadcastDelivered, BroadcastPartial, BroadcastFailed],
    Field(discriminator="status"),
]


class BroadcastsRead(ToolResult):
    broadcasts: list[Broadcast] = Field(default_factory=list)
    total: int = 0
    source: BroadcastSource
    error: str | None = None


class OutputBundle(BaseModel):
    """Harvested turn ready for injection into another session."""

    info: dict[str, Any] = Field(default_factory=dict)
    parts: list[PartInput] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts)


__all__ = [
    "Broadcast",
    "BroadcastCategory",
    "BroadcastDelivered",
    "BroadcastFailed",
    "BroadcastPartial",
    "BroadcastResult",
    "BroadcastSource",
    "BroadcastTarget",
    "BroadcastsRead",
    "ErrorCode",
    "OutputBundle",
    "TaskCancelled",
    "TaskCompleted",
    "TaskFailed",
    "TaskList",
    "TaskMessageSent",
    "TaskResult",
    "TaskRunning",
    "TaskSummary",
]
