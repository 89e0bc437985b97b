"""Session service protocol and the HTTP client for the agent host."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterable, Protocol, Sequence

import httpx
from pydantic import ValidationError

from .models import AgentInfo, Message, ModelRef, PartInput, SessionRef, SessionStatus

logger = logging.getLogger(__name__)


class SessionServiceError(RuntimeError):
    """Raised when a host call fails; records which step and session failed."""

    def __init__(self, operation: str, detail: str, *, session_id: str | None = None) -> None:
        self.operation = operation
        self.session_id = session_id
        self.detail = detail
        target = f"{operation}({session_id})" if session_id else operation
        super().__init__(f"{target}: {detail}")


class SessionService(Protocol):
    """Minimal host API the task core coordinates against."""

    async def agents(self, *, directory: str | None = None) -> list[AgentInfo]:
        ...

    async def create(
        self, *, parent_id: str | None, title: str, directory: str | None = None
    ) -> SessionRef:
        ...

    async def get(self, session_id: str, *, directory: str | None = None) -> SessionRef:
        ...

    async def children(self, session_id: str, *, directory: str | None = None) -> list[SessionRef]:
        ...

    async def status(self, *, directory: str | None = None) -> dict[str, SessionStatus]:
        ...

    async def messages(
        self, session_id: str, *, limit: int | None = None, directory: str | None = None
    ) -> list[Message]:
        ...

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
        ...

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
        ...

    async def abort(self, session_id: str, *, directory: str | None = None) -> bool:
        ...

    def events(self, *, directory: str | None = None) -> AsyncIterator[dict[str, Any]]:
        ...


def prompt_body(
    parts: Iterable[PartInput],
    *,
    agent: str | None,
    model: ModelRef | None,
    no_reply: bool,
) -> dict[str, Any]:
    """Build the JSON body shared by the blocking and async prompt calls."""

    body: dict[str, Any] = {"parts": [part.to_payload() for part in parts]}
    if agent:
        body["agent"] = agent
    if model is not None:
        body["model"] = model.model_dump(by_alias=True, include={"provider_id", "model_id"})
    if no_reply:
        body["noReply"] = True
    return body


class HostSessionService:
    """Talk to an OpenCode-compatible host over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        directory: str | None = None,
        timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._directory = directory
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self, directory: str | None, **extra: Any) -> dict[str, Any]:
        params = {key: value for key, value in extra.items() if value is not None}
        effective = directory or self._directory
        if effective:
            params["directory"] = effective
        return params

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        session_id: str | None = None,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SessionServiceError(
                operation,
                f"HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                session_id=session_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise SessionServiceError(
                operation, f"{type(exc).__name__}: {exc}", session_id=session_id
            ) from exc

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise SessionServiceError(
                operation, "host returned a non-JSON body", session_id=session_id
            ) from exc

    @staticmethod
    def _parse(operation: str, session_id: str | None, parse, payload: Any):
        try:
            return parse(payload)
        except (ValidationError, TypeError, AttributeError) as exc:
            raise SessionServiceError(
                operation, f"unexpected payload: {exc}", session_id=session_id
            ) from exc

    async def agents(self, *, directory: str | None = None) -> list[AgentInfo]:
        payload = await self._request("agents", "GET", "/agent", params=self._params(directory))
        return self._parse(
            "agents", None, lambda data: [AgentInfo.model_validate(item) for item in data or []], payload
        )

    async def create(
        self, *, parent_id: str | None, title: str, directory: str | None = None
    ) -> SessionRef:
        body: dict[str, Any] = {"title": title}
        if parent_id:
            body["parentID"] = parent_id
        payload = await self._request(
            "create", "POST", "/session", session_id=parent_id, params=self._params(directory), body=body
        )
        if not payload:
            raise SessionServiceError("create", "no session data returned", session_id=parent_id)
        return self._parse("create", parent_id, SessionRef.model_validate, payload)

    async def get(self, session_id: str, *, directory: str | None = None) -> SessionRef:
        payload = await self._request(
            "get", "GET", f"/session/{session_id}", session_id=session_id, params=self._params(directory)
        )
        return self._parse("get", session_id, SessionRef.model_validate, payload)

    async def children(self, session_id: str, *, directory: str | None = None) -> list[SessionRef]:
        payload = await self._request(
            "children",
            "GET",
            f"/session/{session_id}/children",
            session_id=session_id,
            params=self._params(directory),
        )
        return self._parse(
            "children",
            session_id,
            lambda data: [SessionRef.model_validate(item) for item in data or []],
            payload,
        )

    async def status(self, *, directory: str | None = None) -> dict[str, SessionStatus]:
        payload = await self._request("status", "GET", "/session/status", params=self._params(directory))
        return self._parse(
            "status",
            None,
            lambda data: {key: SessionStatus.model_validate(value) for key, value in (data or {}).items()},
            payload,
        )

    async def messages(
        self, session_id: str, *, limit: int | None = None, directory: str | None = None
    ) -> list[Message]:
        payload = await self._request(
            "messages",
            "GET",
            f"/session/{session_id}/message",
            session_id=session_id,
            params=self._params(directory, limit=limit),
        )
        return self._parse(
            "messages",
            session_id,
            lambda data: [Message.model_validate(item) for item in data or []],
            payload,
        )

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
        payload = await self._request(
            "prompt",
            "POST",
            f"/session/{session_id}/message",
            session_id=session_id,
            params=self._params(directory),
            body=prompt_body(parts, agent=agent, model=model, no_reply=no_reply),
        )
        if not payload:
            return None
        return self._parse("prompt", session_id, Message.model_validate, payload)

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
        await self._request(
            "prompt_async",
            "POST",
            f"/session/{session_id}/prompt_async",
            session_id=session_id,
            params=self._params(directory),
            body=prompt_body(parts, agent=agent, model=model, no_reply=no_reply),
        )

    async def abort(self, session_id: str, *, directory: str | None = None) -> bool:
        payload = await self._request(
            "abort",
            "POST",
            f"/session/{session_id}/abort",
            session_id=session_id,
            params=self._params(directory),
        )
        return payload is not False

    async def events(self, *, directory: str | None = None) -> AsyncIterator[dict[str, Any]]:
        """Yield host events from the server-sent event stream."""

        try:
            async with self._client.stream(
                "GET", "/event", params=self._params(directory), timeout=None
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data:
                        continue
                    try:
                        event = json.loads(data)
                    except ValueError:
                        logger.debug("Skipping undecodable host event", extra={"data": data[:200]})
                        continue
                    if isinstance(event, dict):
                        yield event
        except httpx.HTTPError as exc:
            raise SessionServiceError("events", f"{type(exc).__name__}: {exc}") from exc


__all__ = ["HostSessionService", "SessionService", "SessionServiceError", "prompt_body"]
