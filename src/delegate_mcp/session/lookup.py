"""Lookups over a session's message history."""

from __future__ import annotations

from .models import ModelRef, SessionRef
from .service import SessionService


async def agent_and_model(
    service: SessionService, session: SessionRef, *, directory: str | None = None
) -> tuple[str | None, ModelRef | None]:
    """Return the agent and model currently driving ``session``.

    The newest message that names a model wins; failing that, the newest
    message that names an agent.
    """

    messages = await service.messages(session.id, directory=directory or session.directory or None)
    newest_first = sorted(messages, key=lambda message: message.created, reverse=True)
    for message in newest_first:
        if message.info.model is not None:
            return message.info.agent, message.info.model
    for message in newest_first:
        if message.info.agent:
            return message.info.agent, None
    return None, None


__all__ = ["agent_and_model"]
