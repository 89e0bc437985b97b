"""Completion detection for task sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from ..session import SessionRef, SessionService

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 20 * 60 * 1000
MIN_TIMEOUT_MS = 1000


class CompletionOracle:
    """Decide whether a session has finished producing output."""

    def __init__(
        self,
        service: SessionService,
        *,
        poll_interval_ms: int = 200,
        poll_multiplier: float = 1.2,
        poll_max_interval_ms: int = 2000,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._service = service
        self._poll_interval_ms = poll_interval_ms
        self._poll_multiplier = poll_multiplier
        self._poll_max_interval_ms = poll_max_interval_ms
        self._default_timeout_ms = default_timeout_ms
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

    async def is_complete(self, session: SessionRef) -> bool:
        """Return True once the session is idle after an assistant or synthetic turn.

        A session holding at most one message has only its kickoff prompt and
        is never complete. A session missing from the host's status map has
        been cleaned up and counts as done.
        """

        messages = await self._service.messages(session.id, directory=session.directory or None)
        if len(messages) <= 1:
            return False

        latest = max(messages, key=lambda message: message.created)
        if latest.info.role != "assistant" and not any(part.is_synthetic for part in latest.parts):
            return False

        statuses = await self._service.status(directory=session.directory or None)
        current = statuses.get(session.id)
        return current is None or current.type == "idle"

    async def wait(self, session: SessionRef, timeout_ms: int | None = None) -> bool:
        """Poll until complete; False when the timeout runs out.

        Host failures propagate as SessionServiceError.
        """

        effective_ms = max(timeout_ms if timeout_ms is not None else self._default_timeout_ms, MIN_TIMEOUT_MS)
        deadline = self._clock() + effective_ms / 1000
        interval_ms: float = self._poll_interval_ms

        while self._clock() < deadline:
            if await self.is_complete(session):
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(interval_ms / 1000, remaining))
            interval_ms = min(interval_ms * self._poll_multiplier, self._poll_max_interval_ms)

        logger.debug(
            "Gave up waiting for session",
            extra={"session_id": session.id, "timeout_ms": effective_ms},
        )
        return False


__all__ = ["CompletionOracle", "DEFAULT_TIMEOUT_MS", "MIN_TIMEOUT_MS"]
