"""HTTP client for the agent query API, with resumable event streams."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from mimir.core.errors import MimirError
from mimir.core.events import EventType, StreamEvent, iter_frames

logger = logging.getLogger(__name__)


class AgentQueryError(MimirError):
    """The API answered with an error status."""

    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"Agent query failed ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


class StreamInterrupted(MimirError):
    """The event stream went silent or ended before a terminal event."""


def parse_events(body: str) -> List[StreamEvent]:
    """Decode a complete SSE body, skipping comment-only frames."""
    return [StreamEvent.decode(frame) for frame in iter_frames(body.splitlines()) if _has_fields(frame)]


def _has_fields(frame: str) -> bool:
    return any(line and not line.startswith(":") for line in frame.splitlines())


class AgentQueryClient:
    """
    Talks to ``POST /agent-query``.

    ``stream`` treats silence longer than ``silence_timeout`` as a dead connection
    and reconnects with the last seen event id in ``Last-Event-ID``. The server
    either replays what was missed or starts over with a fresh ``start`` event,
    in which case callers should discard any partial output.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        silence_timeout: float = 30.0,
        max_reconnects: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.silence_timeout = silence_timeout
        self.max_reconnects = max_reconnects
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(10.0, read=None),
        )

    async def __aenter__(self) -> AgentQueryClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _payload(query: str, agent_type: str, chat_id: Optional[str], previous_messages, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query, "agentType": agent_type, "stream": stream}
        if chat_id is not None:
            payload["chatId"] = chat_id
        if previous_messages:
            payload["previousMessages"] = list(previous_messages)
        return payload

    async def query(
        self,
        query: str,
        *,
        agent_type: str = "auto",
        chat_id: Optional[str] = None,
        previous_messages: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        response = await self._client.post(
            "/agent-query",
            json=self._payload(query, agent_type, chat_id, previous_messages, stream=False),
        )
        if response.status_code >= 400:
            raise AgentQueryError(response.status_code, _detail(response))
        return response.json()

    async def stream(
        self,
        query: str,
        *,
        agent_type: str = "auto",
        chat_id: Optional[str] = None,
        previous_messages: Optional[List[Dict[str, str]]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events until ``complete`` or ``error``; heartbeats are consumed here."""
        payload = self._payload(query, agent_type, chat_id, previous_messages, stream=True)
        last_event_id: Optional[str] = None
        attempt = 0
        while True:
            headers = {"Last-Event-ID": last_event_id} if last_event_id else {}
            try:
                async with self._client.stream("POST", "/agent-query", json=payload, headers=headers) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise AgentQueryError(response.status_code, _detail(response))
                    async for event in self._read(response):
                        if event.id is not None:
                            last_event_id = event.id
                        if event.event == EventType.HEARTBEAT.value:
                            continue
                        yield event
                        if event.is_terminal:
                            return
                raise StreamInterrupted("Stream ended without a terminal event")
            except (httpx.TransportError, StreamInterrupted) as exc:
                attempt += 1
                if attempt > self.max_reconnects:
                    raise
                logger.warning(
                    "Stream interrupted (%s); reconnecting from %s (attempt %d/%d)",
                    exc,
                    last_event_id,
                    attempt,
                    self.max_reconnects,
                )

    async def collect(self, query: str, **options: Any) -> str:
        """Consume a stream and return the text of its ``complete`` event."""
        async for event in self.stream(query, **options):
            if event.event == EventType.COMPLETE.value:
                return event.data.get("content", "")
            if event.event == EventType.ERROR.value:
                raise AgentQueryError(200, event.data.get("message"))
        raise StreamInterrupted("Stream ended without a terminal event")

    async def _read(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        lines = response.aiter_lines()
        buffer: List[str] = []
        while True:
            try:
                line = await asyncio.wait_for(lines.__anext__(), timeout=self.silence_timeout)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                raise StreamInterrupted(f"No data for {self.silence_timeout:g} seconds") from None
            line = line.rstrip("\r\n")
            if line:
                buffer.append(line)
                continue
            frame = "\n".join(buffer)
            buffer = []
            if _has_fields(frame):
                yield StreamEvent.decode(frame)
        if buffer and _has_fields("\n".join(buffer)):
            yield StreamEvent.decode("\n".join(buffer))


def _detail(response: httpx.Response) -> Any:
    try:
        return response.json().get("detail", response.text)
    except ValueError:
        return response.text
