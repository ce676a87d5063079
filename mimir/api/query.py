"""HTTP API for submitting queries, as plain JSON or as a server-sent event stream."""
from __future__ import annotations

from typing import AsyncIterator, Iterable, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from mimir.config import Config
from mimir.core.errors import (
    AuthenticationError,
    BackendError,
    EmptyQueryError,
    HandoffTargetError,
    MimirError,
    RequestTimeoutError,
    UnknownAgentError,
)
from mimir.core.events import StreamEvent
from mimir.orchestration.orchestrator import OrchestrationService, QueryRequest
from mimir.runtime import get_config, get_orchestration_service, get_rate_limiter
from mimir.services.rate_limit import RateLimiter

router = APIRouter(tags=["query"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class PreviousMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class AgentQueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(default="", description="User query text")
    agent_type: str = Field(default="auto", alias="agentType")
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    stream: bool = False
    previous_messages: List[PreviousMessage] = Field(default_factory=list, alias="previousMessages")

    def to_request(self) -> QueryRequest:
        return QueryRequest(
            query=self.query,
            agent_type=self.agent_type,
            chat_id=self.chat_id,
            user_id=self.user_id,
            previous_messages=[message.model_dump() for message in self.previous_messages],
        )


class AgentInfo(BaseModel):
    id: str
    name: str
    type: str
    icon: str


class AgentQueryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    agent: AgentInfo
    handoff_id: Optional[str] = Field(default=None, alias="handoffId")


def client_key(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Identify the caller for rate limiting.

    ``X-Forwarded-For`` is only believed when the direct peer is a trusted proxy; the
    rightmost hop that is not itself a trusted proxy is the client.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = set(trusted_proxies)
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


async def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Config = Depends(get_config),
) -> None:
    retry_after = limiter.check(client_key(request, settings.trusted_proxies))
    if retry_after is not None:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )


def to_http_error(exc: MimirError) -> HTTPException:
    if isinstance(exc, EmptyQueryError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (UnknownAgentError, HandoffTargetError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": str(exc), "code": "authentication_error"},
        )
    if isinstance(exc, BackendError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, RequestTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


async def _frames(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.encode()


async def _replayed(events: Iterable[StreamEvent]) -> AsyncIterator[StreamEvent]:
    for event in events:
        yield event


@router.post(
    "/agent-query",
    response_model=AgentQueryResponse,
    response_model_by_alias=True,
    dependencies=[Depends(enforce_rate_limit)],
)
async def agent_query(
    payload: AgentQueryRequest,
    last_event_id: Optional[str] = Header(default=None, alias="Last-Event-ID"),
    service: OrchestrationService = Depends(get_orchestration_service),
):
    request = payload.to_request()
    try:
        service.validate(request)
    except MimirError as exc:
        raise to_http_error(exc) from exc

    if payload.stream:
        replay = service.replay(last_event_id) if last_event_id else None
        events = _replayed(replay) if replay is not None else service.stream(request)
        return StreamingResponse(_frames(events), media_type="text/event-stream", headers=SSE_HEADERS)

    try:
        outcome = await service.handle(request)
    except MimirError as exc:
        raise to_http_error(exc) from exc
    return AgentQueryResponse.model_validate(outcome.to_response())
