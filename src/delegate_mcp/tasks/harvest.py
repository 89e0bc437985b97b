"""Extract the newest turn of a task session into a portable bundle."""

from __future__ import annotations

import json
from typing import Iterable

from ..session import (
    Message,
    MessageInfo,
    ModelRef,
    Part,
    PartInput,
    SessionRef,
    SessionService,
    agent_and_model,
)
from .models import OutputBundle

ABORTED_ERROR = "MessageAbortedError"


def latest_turn(messages: Iterable[Message]) -> list[Message]:
    """Return messages from the most recent organic user prompt onward.

    Injected notices and harvested output are synthetic, so they never
    start a new turn; earlier history is never surfaced again. Without an
    organic prompt only the newest message is returned.
    """

    ordered = sorted(messages, key=lambda message: message.created)
    start = max(len(ordered) - 1, 0)
    for index in range(len(ordered) - 1, -1, -1):
        candidate = ordered[index]
        if candidate.info.role == "user" and candidate.has_organic_text:
            start = index
            break
    return ordered[start:]


def format_parts(parts: Iterable[Part], info: MessageInfo) -> list[PartInput]:
    result: list[PartInput] = []
    for part in parts:
        if part.type == "reasoning":
            result.append(PartInput(text=f"<thinking>\n{part.text or ''}\n</thinking>"))
        elif part.type == "text":
            result.append(PartInput(text=part.text or "", metadata=part.metadata))
        elif part.type == "tool":
            tool_input = (part.state or {}).get("input")
            result.append(
                PartInput(
                    text=(
                        "<tool_call>\n"
                        f"Name: {part.tool}\n"
                        f"Input: {json.dumps(tool_input, default=str)}\n"
                        "</tool_call>"
                    )
                )
            )
        # TODO: render file and patch parts once the host exposes their content inline.

    if result:
        speaker = (info.agent or "assistant") if info.role == "assistant" else "Prompt"
        result.insert(0, PartInput(text=f"**{speaker}:**\n---\n"))
        result.append(PartInput(text="\n---\n"))
    return result


class ResultHarvester:
    """Build output bundles from a session's message history."""

    def __init__(self, service: SessionService) -> None:
        self._service = service

    async def fetch(self, session: SessionRef, *, directory: str | None = None) -> OutputBundle:
        messages = await self._service.messages(session.id, directory=directory or session.directory or None)

        info: dict = {"role": "user"}
        parts = [PartInput(text=f"# Task({session.id}) output:\n")]
        for message in latest_turn(messages):
            parts.extend(format_parts(message.parts, message.info))
            info.update(message.info.model_dump(by_alias=True, exclude_none=True))
        return OutputBundle(info=info, parts=parts)

    async def agent_and_model(
        self, session: SessionRef, *, directory: str | None = None
    ) -> tuple[str | None, ModelRef | None]:
        return await agent_and_model(self._service, session, directory=directory)

    async def was_aborted(self, session: SessionRef, *, directory: str | None = None) -> bool:
        messages = await self._service.messages(session.id, directory=directory or session.directory or None)
        assistants = [message for message in messages if message.info.role == "assistant"]
        if not assistants:
            return False
        latest = max(assistants, key=lambda message: message.created)
        return bool(latest.info.error and latest.info.error.get("name") == ABORTED_ERROR)


__all__ = ["ABORTED_ERROR", "ResultHarvester", "format_parts", "latest_turn"]
