"""
Handoff protocol: a typed, addressable transfer of control between agents.

A handoff is offered to the model as an ordinary function tool named
``transfer_to_<agent>``. When the model calls it, the optional input filter
rewrites the conversation, the optional ``on_handoff`` hook fires, and the
target agent takes over the rest of the request.
"""
from __future__ import annotations

import inspect
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError, create_model

from mimir.core.models import ConversationContext

logger = logging.getLogger(__name__)

InputFilter = Callable[[ConversationContext], ConversationContext]
OnHandoff = Callable[[ConversationContext, Optional[BaseModel]], Union[None, Awaitable[None]]]

MAX_HANDOFF_DEPTH = 5

RECOMMENDED_PROMPT_PREFIX = (
    "You are part of a system where tasks can be handed off between specialized agents.\n"
    "If you receive a handoff, it means another agent determined you're the best fit for this task.\n"
    "Focus on your specialty, and don't hand the task back to the agent that handed it to you "
    "unless absolutely necessary.\n"
)


def default_tool_name(agent_name: str) -> str:
    return "transfer_to_" + re.sub(r"\s+", "_", agent_name.strip().lower())


def default_tool_description(agent_name: str) -> str:
    return f"Transfer the conversation to the {agent_name} agent"


def handoff_prompt_prefix(instructions: str = "") -> str:
    """Prefix *instructions* with the guidance every handoff receiver should get."""
    if not instructions:
        return RECOMMENDED_PROMPT_PREFIX
    return f"{RECOMMENDED_PROMPT_PREFIX}\n{instructions}"


class HandoffArguments(BaseModel):
    reason: Optional[str] = Field(default=None, description="Why the conversation is being transferred")


@dataclass(frozen=True, slots=True)
class Handoff:
    """Reference to a target agent identity plus optional handoff behaviour."""

    target: str
    tool_name_override: Optional[str] = None
    tool_description_override: Optional[str] = None
    on_handoff: Optional[OnHandoff] = None
    input_type: Optional[Type[BaseModel]] = None
    input_filter: Optional[InputFilter] = None

    def tool_name(self, target_name: str) -> str:
        return self.tool_name_override or default_tool_name(target_name)

    def tool_description(self, target_name: str) -> str:
        return self.tool_description_override or default_tool_description(target_name)

    def arguments_model(self) -> Type[BaseModel]:
        if self.input_type is None:
            return HandoffArguments
        return create_model(
            f"{self.input_type.__name__}HandoffArguments",
            __base__=self.input_type,
            reason=(Optional[str], Field(default=None, description="Why the conversation is being transferred")),
        )

    def to_openai(self, target_name: str) -> Dict[str, Any]:
        schema = self.arguments_model().model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.tool_name(target_name),
                "description": self.tool_description(target_name),
                "parameters": schema,
            },
        }

    def parse_arguments(self, raw: str) -> Tuple[str, Optional[BaseModel]]:
        """Return ``(reason, typed_input)``; bad input yields ``None`` rather than an error."""
        try:
            payload = json.loads(raw or "{}")
        except json.JSONDecodeError:
            logger.warning("Handoff to '%s' received non-JSON arguments", self.target)
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        reason = str(payload.get("reason") or "")
        typed: Optional[BaseModel] = None
        if self.input_type is not None:
            try:
                typed = self.input_type.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Handoff input for '%s' failed validation: %s", self.target, exc)
        return reason, typed

    def prepare_context(self, context: ConversationContext) -> ConversationContext:
        """Apply the input filter to an independent copy of *context*."""
        working = context.copy()
        if self.input_filter is None:
            return working
        return self.input_filter(working)

    async def notify(self, context: ConversationContext, typed_input: Optional[BaseModel]) -> None:
        if self.on_handoff is None:
            return
        outcome = self.on_handoff(context, typed_input)
        if inspect.isawaitable(outcome):
            await outcome


def handoff(
    target: str,
    *,
    tool_name_override: Optional[str] = None,
    tool_description_override: Optional[str] = None,
    on_handoff: Optional[OnHandoff] = None,
    input_type: Optional[Type[BaseModel]] = None,
    input_filter: Optional[InputFilter] = None,
) -> Handoff:
    return Handoff(
        target=target,
        tool_name_override=tool_name_override,
        tool_description_override=tool_description_override,
        on_handoff=on_handoff,
        input_type=input_type,
        input_filter=input_filter,
    )


# Input filters ------------------------------------------------------------


def remove_all_tools(context: ConversationContext) -> ConversationContext:
    """Drop tool results and assistant turns that only requested tools."""
    turns = [
        turn
        for turn in context.turns
        if turn.role != "tool" and not turn.tool_calls
    ]
    return context.with_turns(turns)


def keep_only_last_user_message(context: ConversationContext) -> ConversationContext:
    last = context.latest_user_turn()
    return context.with_turns([last] if last is not None else [])


def compose_filters(*filters: InputFilter) -> InputFilter:
    """Chain filters left to right."""

    def composed(context: ConversationContext) -> ConversationContext:
        for fn in filters:
            context = fn(context)
        return context

    return composed
