"""Typed stream events and the per-request emitter that orders them."""
from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Fixed event names; domain phases use ``<domain>_start``/``<domain>_complete``."""

    START = "start"
    TOKEN = "token"
    TRIAGE_COMPLETE = "triage_complete"
    HANDOFF = "handoff"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    COMPLETE = "complete"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE.value, EventType.ERROR.value})
_DOMAIN_EVENT = re.compile(r"^[a-z][a-z0-9_]*_(start|complete)$")


class StreamEvent(BaseModel):
    """Envelope for one streamed event: ``{event_name, json_payload}`` plus an id."""

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None

    @field_validator("event")
    @classmethod
    def _known_event(cls, value: str) -> str:
        if value in EventType._value2member_map_ or _DOMAIN_EVENT.match(value):
            return value
        raise ValueError(f"Unknown stream event '{value}'")

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def encode(self) -> str:
        """Serialize as one server-sent-events frame."""
        lines = []
        if self.id is not None:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.event}")
        lines.append(f"data: {json.dumps(self.data)}")
        return "\n".join(lines) + "\n\n"

    @classmethod
    def decode(cls, frame: str) -> StreamEvent:
        """Parse one SSE frame produced by :meth:`encode`."""
        fields: Dict[str, Any] = {}
        data_lines: List[str] = []
        for line in frame.splitlines():
            if not line or line.startswith(":"):
                continue
            key, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if key == "data":
                data_lines.append(value)
            elif key in ("event", "id"):
                fields[key] = value
        fields["data"] = json.loads("\n".join(data_lines)) if data_lines else {}
        return cls.model_validate(fields)


def iter_frames(lines: Iterable[str]) -> Iterator[str]:
    """Group raw SSE lines into frames separated by blank lines."""
    buffer: List[str] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if line:
            buffer.append(line)
            continue
        if buffer:
            yield "\n".join(buffer)
            buffer = []
    if buffer:
        yield "\n".join(buffer)


class EventEmitter:
    """Queue-backed emitter enforcing causal order and a single terminal event.

    Once ``complete`` or ``error`` has been emitted, or the emitter was
    cancelled, every further emit is dropped.
    """

    def __init__(self, stream_id: Optional[str] = None) -> None:
        self.stream_id = stream_id or uuid.uuid4().hex
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._seq = 0
        self._terminal: Optional[StreamEvent] = None
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._terminal is not None or self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def terminal(self) -> Optional[StreamEvent]:
        return self._terminal

    def cancel(self) -> None:
        self._cancelled = True

    def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> Optional[StreamEvent]:
        if self.closed:
            logger.debug("Dropping '%s' event on closed stream %s", event, self.stream_id)
            return None
        self._seq += 1
        item = StreamEvent(event=event, data=data or {}, id=f"{self.stream_id}-{self._seq}")
        if item.is_terminal:
            self._terminal = item
        self._queue.put_nowait(item)
        return item

    async def next(self, timeout: Optional[float] = None) -> StreamEvent:
        """Wait for the next event; raises ``asyncio.TimeoutError`` on silence."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def drain(self) -> List[StreamEvent]:
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    # Convenience emitters -------------------------------------------------

    def start(self) -> Optional[StreamEvent]:
        return self.emit(EventType.START.value)

    def token(self, token: str) -> Optional[StreamEvent]:
        if not token:
            return None
        return self.emit(EventType.TOKEN.value, {"token": token})

    def triage_complete(self, task_type: str, confidence: float, reasoning: str) -> Optional[StreamEvent]:
        return self.emit(
            EventType.TRIAGE_COMPLETE.value,
            {"taskType": task_type, "confidence": confidence, "reasoning": reasoning},
        )

    def phase_start(self, domain: str, **payload: Any) -> Optional[StreamEvent]:
        return self.emit(f"{domain}_start", payload)

    def phase_complete(self, domain: str, **payload: Any) -> Optional[StreamEvent]:
        return self.emit(f"{domain}_complete", payload)

    def handoff(self, source: str, target: str, reason: str) -> Optional[StreamEvent]:
        return self.emit(EventType.HANDOFF.value, {"from": source, "to": target, "reason": reason})

    def heartbeat(self) -> Optional[StreamEvent]:
        return self.emit(EventType.HEARTBEAT.value)

    def complete(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[StreamEvent]:
        return self.emit(EventType.COMPLETE.value, {"content": content, "metadata": metadata or {}})

    def error(self, message: str, *, authentication: bool = False) -> Optional[StreamEvent]:
        code = "authentication_error" if authentication else "error"
        return self.emit(EventType.ERROR.value, {"message": message, "code": code})
