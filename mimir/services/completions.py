"""Contract for talking to the hosted completion backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import openai

from mimir.core.errors import AuthenticationError, BackendError
from mimir.core.models import ToolCall
from mimir.services.llm_pool import LLMPool

logger = logging.getLogger(__name__)

ToolChoice = Union[str, Dict[str, Any]]


@dataclass(slots=True)
class Completion:
    """Normalized chat completion: text and/or requested tool calls."""

    content: str
    model: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None


def _translate(exc: Exception, model: str) -> BackendError:
    if isinstance(exc, BackendError):
        return exc
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthenticationError(
            f"Completion backend rejected credentials for '{model}': {exc}",
            status_code=getattr(exc, "status_code", None),
        )
    if isinstance(exc, KeyError):
        return BackendError(str(exc.args[0]) if exc.args else str(exc))
    return BackendError(
        f"Completion backend call for '{model}' failed: {exc}",
        status_code=getattr(exc, "status_code", None),
    )


class CompletionBackend:
    """Issues chat-completion requests through the shared LLM pool."""

    def __init__(self, pool: LLMPool) -> None:
        self._pool = pool

    @staticmethod
    def _request(
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float],
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: Optional[ToolChoice],
        max_tokens: Optional[int],
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            request["temperature"] = temperature
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        if tools:
            request["tools"] = tools
            request["tool_choice"] = tool_choice or "auto"
        return request

    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[ToolChoice] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """Request one completion; raises :class:`BackendError` on any failure."""
        request = self._request(model, messages, temperature, tools, tool_choice, max_tokens)
        try:
            async with self._pool.acquire(model) as client:
                response = await client.chat.completions.create(**request)
        except Exception as exc:  # noqa: BLE001
            error = _translate(exc, model)
            logger.error("Completion request failed: %s", error)
            raise error from exc
        return self._normalize(response, model)

    async def stream(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas in generation order."""
        request = self._request(model, messages, temperature, None, None, max_tokens)
        request["stream"] = True
        try:
            async with self._pool.acquire(model) as client:
                response = await client.chat.completions.create(**request)
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    delta = getattr(chunk.choices[0].delta, "content", None)
                    if delta:
                        yield delta
        except Exception as exc:  # noqa: BLE001
            error = _translate(exc, model)
            logger.error("Streaming completion failed: %s", error)
            raise error from exc

    @staticmethod
    def _normalize(response: Any, model: str) -> Completion:
        choices = getattr(response, "choices", None)
        if not choices:
            raise BackendError(f"Completion backend returned no choices for '{model}'")
        choice = choices[0]
        message = getattr(choice, "message", None)
        if message is None:
            raise BackendError(f"Completion backend returned a choice without a message for '{model}'")
        calls = [
            ToolCall(id=call.id, name=call.function.name, arguments=call.function.arguments or "{}")
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        return Completion(
            content=message.content or "",
            model=getattr(response, "model", None) or model,
            tool_calls=calls,
            finish_reason=getattr(choice, "finish_reason", None),
        )
