"""Lateral notices between sibling and child task sessions.

A broadcast travels as a synthetic, non-reply message. The text part holds
a ``<sibling_broadcast>`` element whose attributes and body are XML-escaped,
so message content can never close the envelope early. The same fields are
attached as structured part metadata under ``broadcast``; readers prefer the
metadata and fall back to parsing the element on text-only hosts.
"""

from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Callable, Iterable
from xml.sax.saxutils import escape, quoteattr

from pydantic import ValidationError

from ..session import Message, PartInput, SessionRef, SessionService, SessionServiceError, agent_and_model
from .models import (
    Broadcast,
    BroadcastCategory,
    BroadcastDelivered,
    BroadcastFailed,
    BroadcastPartial,
    BroadcastsRead,
    BroadcastSource,
    BroadcastTarget,
)

logger = logging.getLogger(__name__)

ENVELOPE_TAG = "sibling_broadcast"
METADATA_KEY = "broadcast"
_ENVELOPE_RE = re.compile(rf"<{ENVELOPE_TAG}\b[^>]*>.*?</{ENVELOPE_TAG}>", re.DOTALL)
_FIELDS = ("from", "task_id", "category", "timestamp")


def _utc_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def encode_envelope(sender: str, task_id: str, category: str, timestamp: str, message: str) -> str:
    return (
        f"<{ENVELOPE_TAG} from={quoteattr(sender)} task_id={quoteattr(task_id)} "
        f"category={quoteattr(category)} timestamp={quoteattr(timestamp)}>\n"
        f"{escape(message.strip())}\n"
        f"</{ENVELOPE_TAG}>"
    )


def _validated(fields: dict) -> Broadcast | None:
    if any(not fields.get(name) for name in (*_FIELDS, "message")):
        return None
    try:
        broadcast = Broadcast.model_validate(fields)
        _parse_timestamp(broadcast.timestamp)
    except (ValidationError, ValueError):
        return None
    return broadcast


def decode_envelopes(text: str) -> list[Broadcast]:
    """Extract every well-formed envelope from ``text``; malformed ones are skipped."""

    found: list[Broadcast] = []
    for match in _ENVELOPE_RE.finditer(text):
        try:
            element = ET.fromstring(match.group(0))
        except ET.ParseError:
            continue
        fields = {name: element.attrib.get(name) for name in _FIELDS}
        fields["message"] = (element.text or "").strip()
        broadcast = _validated(fields)
        if broadcast is not None:
            found.append(broadcast)
    return found


def parse_broadcasts(messages: Iterable[Message]) -> list[Broadcast]:
    """Decode broadcasts from message history, newest first."""

    broadcasts: list[Broadcast] = []
    for message in messages:
        for part in message.parts:
            if part.type != "text":
                continue
            structured = (part.metadata or {}).get(METADATA_KEY)
            if isinstance(structured, dict):
                broadcast = _validated(dict(structured))
                if broadcast is not None:
                    broadcasts.append(broadcast)
                continue
            if part.text:
                broadcasts.extend(decode_envelopes(part.text))
    return sort_newest_first(broadcasts)


def sort_newest_first(broadcasts: Iterable[Broadcast]) -> list[Broadcast]:
    return sorted(broadcasts, key=lambda item: _parse_timestamp(item.timestamp), reverse=True)


class BroadcastBus:
    """Deliver and read broadcasts among related task sessions."""

    def __init__(
        self,
        service: SessionService,
        *,
        max_length: int = 2000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._service = service
        self._max_length = max_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _recipients(
        self, sender: SessionRef, target: BroadcastTarget, errors: list[str]
    ) -> tuple[dict[str, SessionRef], int]:
        candidates: list[SessionRef] = []
        if target in ("siblings", "all"):
            if sender.parent_id:
                candidates.extend(
                    await self._service.children(sender.parent_id, directory=sender.directory or None)
                )
            else:
                errors.append("Session has no parent; broadcast limited to children.")
        if target in ("children", "all"):
            candidates.extend(await self._service.children(sender.id, directory=sender.directory or None))

        recipients: dict[str, SessionRef] = {}
        skipped = 0
        for candidate in candidates:
            if candidate.id == sender.id:
                skipped += 1
                continue
            recipients.setdefault(candidate.id, candidate)
        return recipients, skipped

    async def _deliver(self, recipient: SessionRef, part: PartInput) -> str | None:
        try:
            agent, model = await agent_and_model(self._service, recipient)
            await self._service.prompt_async(
                recipient.id,
                parts=[part],
                agent=agent,
                model=model,
                no_reply=True,
                directory=recipient.directory or None,
            )
        except SessionServiceError as exc:
            logger.warning(
                "Broadcast delivery failed",
                extra={"recipient_id": recipient.id, "error": str(exc)},
            )
            return f"{recipient.id}: {exc}"
        return None

    async def send(
        self,
        sender_id: str,
        message: str,
        *,
        category: BroadcastCategory,
        target: BroadcastTarget = "siblings",
        work_dir: str | None = None,
    ) -> BroadcastDelivered | BroadcastPartial | BroadcastFailed:
        body = message.strip()[: self._max_length].strip()
        if not body:
            return BroadcastFailed(target=target, error="Broadcast message must not be empty.")

        try:
            sender = await self._service.get(sender_id, directory=work_dir)
        except SessionServiceError as exc:
            return BroadcastFailed(target=target, error=f"Failed to load sending session: {exc}")

        if target == "siblings" and not sender.parent_id:
            return BroadcastFailed(
                target=target, error="Session has no parent; there are no siblings to broadcast to."
            )

        errors: list[str] = []
        try:
            recipients, skipped = await self._recipients(sender, target, errors)
        except SessionServiceError as exc:
            return BroadcastFailed(target=target, error=f"Failed to resolve recipients: {exc}")

        if not recipients:
            reason = f"No recipients found for target '{target}'."
            if errors:
                reason = f"{reason} {' '.join(errors)}"
            return BroadcastFailed(target=target, error=reason)

        try:
            sender_agent, _ = await agent_and_model(self._service, sender)
        except SessionServiceError:
            sender_agent = None

        fields = {
            "from": sender_agent or "unknown",
            "task_id": sender.id,
            "category": category,
            "timestamp": _utc_timestamp(self._clock()),
            "message": body,
        }
        part = PartInput(
            text=encode_envelope(
                fields["from"], fields["task_id"], fields["category"], fields["timestamp"], body
            ),
            metadata={METADATA_KEY: fields},
        )

        outcomes = await asyncio.gather(
            *(self._deliver(recipient, part) for recipient in recipients.values()),
            return_exceptions=True,
        )
        delivery_errors: list[str] = []
        for recipient_id, outcome in zip(recipients, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning(
                    "Broadcast delivery raised",
                    extra={"recipient_id": recipient_id, "error": repr(outcome)},
                )
                delivery_errors.append(f"{recipient_id}: {outcome}")
            elif outcome is not None:
                delivery_errors.append(outcome)
        delivered = len(outcomes) - len(delivery_errors)
        errors.extend(delivery_errors)

        logger.info(
            "Broadcast sent",
            extra={
                "sender_id": sender.id,
                "category": category,
                "target": target,
                "delivered": delivered,
                "errors": len(errors),
            },
        )

        if delivered == 0:
            return BroadcastFailed(target=target, error="; ".join(errors) or "Broadcast was not delivered.")
        if errors:
            return BroadcastPartial(delivered_to=delivered, skipped=skipped, target=target, errors=errors)
        return BroadcastDelivered(delivered_to=delivered, skipped=skipped, target=target)

    async def read(
        self,
        session_id: str,
        *,
        category: BroadcastCategory | None = None,
        limit: int = 10,
        source: BroadcastSource = "self",
        work_dir: str | None = None,
    ) -> BroadcastsRead:
        try:
            session = await self._service.get(session_id, directory=work_dir)
            if source == "self":
                messages = await self._service.messages(session.id, directory=session.directory or None)
                found = [
                    item.model_copy(update={"source": "self"}) for item in parse_broadcasts(messages)
                ]
            else:
                children = await self._service.children(session.id, directory=session.directory or None)
                found = []
                for child in children:
                    try:
                        history = await self._service.messages(child.id, directory=child.directory or None)
                    except SessionServiceError as exc:
                        logger.debug(
                            "Skipping child broadcasts",
                            extra={"child_id": child.id, "error": str(exc)},
                        )
                        continue
                    found.extend(
                        item.model_copy(update={"source": "child"}) for item in parse_broadcasts(history)
                    )
        except SessionServiceError as exc:
            return BroadcastsRead(source=source, error=f"Failed to read broadcasts: {exc}")

        ordered = sort_newest_first(found)
        if category is not None:
            ordered = [item for item in ordered if item.category == category]
        return BroadcastsRead(broadcasts=ordered[: max(limit, 0)], total=len(ordered), source=source)


__all__ = [
    "BroadcastBus",
    "ENVELOPE_TAG",
    "decode_envelopes",
    "encode_envelope",
    "parse_broadcasts",
]
