"""In-memory session host used by tests and local dry runs."""

from __future__ import annotations

import asyncio
from itertools import count
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from .models import (
    AgentInfo,
    Message,
    MessageInfo,
    MessageTime,
    ModelRef,
    Part,
    PartInput,
    SessionRef,
    SessionStatus,
)
from .service import SessionServiceError

Responder = Callable[[str, Sequence[PartInput]], str | None]


class FakeSessionService:
    """Test double that simulates the host's session API."""

    def __init__(
        self,
        agents: Iterable[str] = ("explorer", "executor"),
        *,
        responder: Responder | None = None,
        prompt_delay: float = 0.0,
    ) -> None:
        self.agent_names = list(agents)
        self.responder = responder
        self.prompt_delay = prompt_delay
        self.sessions: dict[str, SessionRef] = {}
        self.history: dict[str, list[Message]] = {}
        self.statuses: dict[str, SessionStatus] = {}
        self.events_queue: list[dict[str, Any]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._failures: dict[tuple[str, str | None], str] = {}
        self._ids = count(1)
        self._clock = count(1)

    def add_session(
        self,
        session_id: str,
        *,
        parent_id: str | None = None,
        directory: str = "/repo",
        title: str = "",
        status: str | None = None,
    ) -> SessionRef:
        session = SessionRef(id=session_id, parentID=parent_id, directory=directory, title=title)
        self.sessions[session_id] = session
        self.history.setdefault(session_id, [])
        if status is not None:
            self.statuses[session_id] = SessionStatus(type=status)
        return session

    def add_message(
        self,
        session_id: str,
        role: str,
        *texts: str,
        agent: str | None = None,
        model: ModelRef | None = None,
        synthetic: bool = False,
        parts: Iterable[Part] | None = None,
        error: dict[str, Any] | None = None,
        created: float | None = None,
    ) -> Message:
        built = list(parts or [])
        built.extend(Part(type="text", text=text, synthetic=synthetic) for text in texts)
        info = MessageInfo(
            id=f"msg_{next(self._ids)}",
            role=role,
            time=MessageTime(created=created if created is not None else next(self._clock)),
            agent=agent,
            model=model,
            error=error,
        )
        message = Message(info=info, parts=built)
        self.history.setdefault(session_id, []).append(message)
        return message

    def set_status(self, session_id: str, status: str | None) -> None:
        if status is None:
            self.statuses.pop(session_id, None)
        else:
            self.statuses[session_id] = SessionStatus(type=status)

    def fail(self, operation: str, session_id: str | None = None, detail: str = "host unavailable") -> None:
        """Make the next and every later matching call raise SessionServiceError."""

        self._failures[(operation, session_id)] = detail

    def clear_failure(self, operation: str, session_id: str | None = None) -> None:
        self._failures.pop((operation, session_id), None)

    def calls_for(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _check(self, operation: str, session_id: str | None = None, **kwargs: Any) -> None:
        self.calls.append((operation, {"session_id": session_id, **kwargs}))
        for key in ((operation, session_id), (operation, None)):
            if key in self._failures:
                raise SessionServiceError(operation, self._failures[key], session_id=session_id)

    def _require(self, operation: str, session_id: str) -> SessionRef:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise SessionServiceError(operation, "session not found", session_id=session_id) from None

    async def agents(self, *, directory: str | None = None) -> list[AgentInfo]:
        self._check("agents")
        return [AgentInfo(name=name) for name in self.agent_names]

    async def create(
        self, *, parent_id: str | None, title: str, directory: str | None = None
    ) -> SessionRef:
        self._check("create", parent_id, title=title, directory=directory)
        session_id = f"ses_{next(self._ids)}"
        session = self.add_session(
            session_id, parent_id=parent_id, directory=directory or "/repo", title=title
        )
        self.statuses[session_id] = SessionStatus(type="busy")
        return session

    async def get(self, session_id: str, *, directory: str | None = None) -> SessionRef:
        self._check("get", session_id)
        return self._require("get", session_id)

    async def children(self, session_id: str, *, directory: str | None = None) -> list[SessionRef]:
        self._check("children", session_id)
        return [session for session in self.sessions.values() if session.parent_id == session_id]

    async def status(self, *, directory: str | None = None) -> dict[str, SessionStatus]:
        self._check("status")
        return dict(self.statuses)

    async def messages(
        self, session_id: str, *, limit: int | None = None, directory: str | None = None
    ) -> list[Message]:
        self._check("messages", session_id)
        self._require("messages", session_id)
        history = list(self.history.get(session_id, []))
        return history[-limit:] if limit else history

    def _append_prompt(
        self,
        session_id: str,
        parts: Sequence[PartInput],
        agent: str | None,
        model: ModelRef | None,
    ) -> Message:
        built = [
            Part(type=part.type, text=part.text, synthetic=part.synthetic, metadata=part.metadata)
            for part in parts
        ]
        return self.add_message(session_id, "user", agent=agent, model=model, parts=built)

    async def prompt(
        self,
        session_id: str,
        *,
        parts: Sequence[PartInput],
        agent: str | None = None,
        model: ModelRef | None = None,
        no_reply: bool = False,
        directory: str | None = None,
    ) -> Message | None:
        self._check("prompt", session_id, agent=agent, no_reply=no_reply, parts=list(parts))
        self._require("prompt", session_id)
        self._append_prompt(session_id, parts, agent, model)
        if no_reply:
            return None
        self.statuses[session_id] = SessionStatus(type="busy")
        if self.prompt_delay:
            await asyncio.sleep(self.prompt_delay)
        text = self.responder(session_id, parts) if self.responder else None
        if text is None:
            return None
        reply = self.add_message(session_id, "assistant", text, agent=agent)
        self.statuses[session_id] = SessionStatus(type="idle")
        return reply

    async def prompt_async(
        self,
        session_id: str,
        *,
        parts: Sequence[PartInput],
        agent: str | None = None,
        model: ModelRef | None = None,
        no_reply: bool = False,
        directory: str | None = None,
    ) -> None:
        self._check("prompt_async", session_id, agent=agent, no_reply=no_reply, parts=list(parts))
        self._require("prompt_async", session_id)
        self._append_prompt(session_id, parts, agent, model)

    async def abort(self, session_id: str, *, directory: str | None = None) -> bool:
        self._check("abort", session_id)
        self._require("abort", session_id)
        self.statuses[session_id] = SessionStatus(type="idle")
        return True

    async def events(self, *, directory: str | None = None) -> AsyncIterator[dict[str, Any]]:
        self._check("events")
        while self.events_queue:
            yield self.events_queue.pop(0)


__all__ = ["FakeSessionService"]
