"""React to host session events on behalf of running tasks."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable
from xml.sax.saxutils import quoteattr

from pydantic import ValidationError

from ..session import PartInput, SessionRef, SessionService, SessionServiceError, agent_and_model
from .cache import SeenCache
from .launcher import ASYNC_TASK_PREFIX
from .oracle import CompletionOracle

logger = logging.getLogger(__name__)

TASK_CONTEXT_HEADER = (
    "## Active Tasks\n"
    "\n"
    "The following task session IDs were created in this conversation. "
    "You can use these with the task tools:\n"
    "\n"
    "- `get_task_output`: Get the result of a completed or running task\n"
    "- `send_task_message`: Send a message to a running task\n"
    "- `cancel_task`: Cancel a running task"
)


def new_sibling_notice(task_id: str, agent: str, title: str) -> str:
    return (
        f"<new_sibling task_id={quoteattr(task_id)} agent={quoteattr(agent)} title={quoteattr(title)}>\n"
        "A new sibling task has been created. You can reach it with `broadcast` or `send_task_message`.\n"
        "</new_sibling>"
    )


class TaskEventWatcher:
    """Notify parents, announce siblings and restore task context from host events."""

    def __init__(
        self,
        service: SessionService,
        oracle: CompletionOracle,
        *,
        notified: SeenCache | None = None,
        injected: SeenCache | None = None,
        retry_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._service = service
        self._oracle = oracle
        self._notified = notified or SeenCache()
        self._injected = injected or SeenCache(ttl_seconds=30.0)
        self._retry_seconds = retry_seconds
        self._sleep = sleep or asyncio.sleep

    @property
    def notified(self) -> SeenCache:
        return self._notified

    @property
    def injected(self) -> SeenCache:
        return self._injected

    async def handle(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        properties = event.get("properties") or {}
        try:
            if event_type == "session.idle":
                await self._on_idle(properties.get("sessionID"))
            elif event_type == "session.status":
                if (properties.get("status") or {}).get("type") == "idle":
                    await self._on_idle(properties.get("sessionID"))
            elif event_type == "session.created":
                await self._on_created(properties.get("info") or {})
            elif event_type == "session.compacted":
                await self._on_compacted(properties.get("sessionID"))
        except SessionServiceError as exc:
            logger.error("Failed to handle host event", extra={"event_type": event_type, "error": str(exc)})

    async def _on_idle(self, session_id: str | None) -> None:
        if not session_id or session_id in self._notified:
            return
        session = await self._service.get(session_id)
        if not session.parent_id or not session.title.startswith(ASYNC_TASK_PREFIX):
            return
        if not await self._oracle.is_complete(session):
            return
        if not self._notified.add(session.id):
            return

        try:
            parent = await self._service.get(session.parent_id, directory=session.directory or None)
            agent, model = await agent_and_model(self._service, parent)
            notification = json.dumps(
                {
                    "status": "completed",
                    "task_id": session.id,
                    "title": session.title,
                    "work_dir": session.directory,
                    "message": "Task completed. Use `get_task_output` to get the result.",
                }
            )
            await self._service.prompt_async(
                parent.id,
                parts=[PartInput(text=notification)],
                agent=agent,
                model=model,
                directory=parent.directory or None,
            )
        except SessionServiceError:
            self._notified.discard(session.id)
            raise
        logger.info("Notified parent of task completion", extra={"task_id": session.id, "parent_id": parent.id})

    async def _on_created(self, info: dict[str, Any]) -> None:
        try:
            session = SessionRef.model_validate(info)
        except ValidationError:
            logger.debug("Ignoring malformed session.created event")
            return
        if not session.parent_id or not self._notified.add(f"created::{session.id}"):
            return

        siblings = [
            sibling
            for sibling in await self._service.children(session.parent_id, directory=session.directory or None)
            if sibling.id != session.id
        ]
        if not siblings:
            return

        new_agent, _ = await agent_and_model(self._service, session)
        notice = new_sibling_notice(session.id, new_agent or "unknown", session.title)
        for sibling in siblings:
            try:
                agent, model = await agent_and_model(self._service, sibling)
                await self._service.prompt_async(
                    sibling.id,
                    parts=[PartInput(text=notice)],
                    agent=agent,
                    model=model,
                    no_reply=True,
                    directory=sibling.directory or None,
                )
            except SessionServiceError as exc:
                logger.warning(
                    "Failed to announce new sibling",
                    extra={"task_id": session.id, "sibling_id": sibling.id, "error": str(exc)},
                )

    async def _on_compacted(self, session_id: str | None) -> None:
        if not session_id or not self._injected.add(session_id):
            return
        try:
            session = await self._service.get(session_id)
            children = await self._service.children(session.id, directory=session.directory or None)
            if not children:
                return
            task_list = "\n".join(f"- `{child.id}`: {child.title}" for child in children)
            agent, model = await agent_and_model(self._service, session)
            await self._service.prompt_async(
                session.id,
                parts=[PartInput(text=f"<task-context>\n{TASK_CONTEXT_HEADER}\n\n{task_list}\n</task-context>")],
                agent=agent,
                model=model,
                no_reply=True,
                directory=session.directory or None,
            )
        except SessionServiceError:
            self._injected.discard(session_id)
            raise

    async def consume(self) -> int:
        """Handle events until the host closes the stream; returns the count handled."""

        handled = 0
        async for event in self._service.events():
            await self.handle(event)
            handled += 1
        return handled

    async def run(self) -> None:
        """Follow the host event stream forever, reconnecting after failures."""

        while True:
            try:
                await self.consume()
            except SessionServiceError as exc:
                logger.warning("Host event stream failed", extra={"error": str(exc)})
            await self._sleep(self._retry_seconds)


__all__ = ["TASK_CONTEXT_HEADER", "TaskEventWatcher", "new_sibling_notice"]
