"""Host session models parsed from the session service API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HostModel(BaseModel):
    """Base for host payloads; unknown fields are preserved untouched."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SessionRef(HostModel):
    """Identity of a host session. Never mutated by this package."""

    id: str
    parent_id: str | None = Field(default=None, alias="parentID")
    directory: str = ""
    title: str = ""


class ModelRef(HostModel):
    provider_id: str = Field(alias="providerID")
    model_id: str = Field(alias="modelID")


class MessageTime(HostModel):
    created: float = 0
    completed: float | None = None


class MessageInfo(HostModel):
    id: str = ""
    role: str
    time: MessageTime = Field(default_factory=MessageTime)
    agent: str | None = None
    model: ModelRef | None = None
    error: dict[str, Any] | None = None


class Part(HostModel):
    """A renderable fragment of a message (text, reasoning, tool call, ...)."""

    type: str
    text: str | None = None
    synthetic: bool | None = None
    tool: str | None = None
    state: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    @property
    def is_synthetic(self) -> bool:
        return self.synthetic is True


class Message(HostModel):
    info: MessageInfo
    parts: list[Part] = Field(default_factory=list)

    @property
    def created(self) -> float:
        return self.info.time.created

    @property
    def has_organic_text(self) -> bool:
        """True when at least one text part was written by a real author."""

        return any(part.type == "text" and not part.is_synthetic for part in self.parts)


class SessionStatus(HostModel):
    type: str


class AgentInfo(HostModel):
    name: str
    mode: str | None = None


class PartInput(BaseModel):
    """Outgoing text part; synthetic parts never trigger an extra agent turn."""

    type: str = "text"
    text: str
    synthetic: bool = True
    metadata: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


__all__ = [
    "AgentInfo",
    "HostModel",
    "Message",
    "MessageInfo",
    "MessageTime",
    "ModelRef",
    "Part",
    "PartInput",
    "SessionRef",
    "SessionStatus",
]
