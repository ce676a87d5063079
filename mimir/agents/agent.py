"""Agent: a bound configuration of instructions, model, tools and handoffs."""
from __future__ import annotations

import inspect
import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional

from mimir.agents.handoffs import MAX_HANDOFF_DEPTH, Handoff
from mimir.core.errors import BackendError, ClassificationError, HandoffTargetError, UnknownAgentError
from mimir.core.models import (
    AgentDefinition,
    AgentResult,
    ConversationContext,
    ConversationTurn,
    ToolCall,
    ToolResult,
)
from mimir.orchestration.observer import RunObserver
from mimir.services.completions import Completion, CompletionBackend
from mimir.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from mimir.agents.registry import AgentRegistry

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Any]

CAN_HANDLE_PROMPT = (
    "You are {name}. Your job is to determine if you can handle the following query based on "
    "your expertise and available tools. Respond with \"yes\" if you can handle it, or \"no\" "
    "if it would be better handled by another agent."
)


async def emit_text(on_token: Optional[TokenCallback], text: str) -> None:
    """Deliver *text* to a sync or async token callback."""
    if on_token is None or not text:
        return
    outcome = on_token(text)
    if inspect.isawaitable(outcome):
        await outcome


class Agent:
    """
    Runs one AgentDefinition against the completion backend.

    Behaviour differences between agents are data on the definition (instructions, tools,
    handoffs, role). Handoff targets are resolved through ``resolver`` at call time.
    """

    def __init__(
        self,
        definition: AgentDefinition,
        backend: CompletionBackend,
        *,
        resolver: Optional[AgentRegistry] = None,
        max_tool_turns: int = 5,
    ) -> None:
        self.definition = definition
        self.backend = backend
        self.resolver = resolver
        self.max_tool_turns = max(1, max_tool_turns)
        self.tools = ToolRegistry(definition.tools)

    @property
    def identity(self) -> str:
        return self.definition.identity

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def model(self) -> str:
        return self.definition.model

    def __repr__(self) -> str:
        return f"Agent(identity={self.identity!r}, model={self.model!r})"

    # Handoff resolution ---------------------------------------------------

    def _resolve_target(self, target: str) -> AgentDefinition:
        if self.resolver is None:
            raise HandoffTargetError(target)
        try:
            return self.resolver.definition(target)
        except UnknownAgentError as exc:
            raise HandoffTargetError(target) from exc

    def _handoff_tools(self) -> Dict[str, tuple[Handoff, AgentDefinition]]:
        tools: Dict[str, tuple[Handoff, AgentDefinition]] = {}
        for item in self.definition.handoffs:
            target = self._resolve_target(item.target)
            tools[item.tool_name(target.name)] = (item, target)
        return tools

    # Running --------------------------------------------------------------

    def _result(self, content: str, model: Optional[str], tool_results: List[ToolResult]) -> AgentResult:
        return AgentResult(
            content=content,
            agent_name=self.name,
            model=model or self.model,
            agent_id=self.identity,
            tool_results=tool_results or None,
        )

    async def _stream_final(
        self,
        messages: List[Dict[str, Any]],
        observer: RunObserver,
        on_token: TokenCallback,
        model: str,
    ) -> str:
        step_id = observer.open_stream_step(self.definition)
        parts: List[str] = []
        try:
            async for delta in self.backend.stream(
                model=model,
                messages=messages,
                temperature=self.definition.temperature,
            ):
                if observer.cancelled:
                    break
                parts.append(delta)
                observer.append_stream_step(step_id, delta)
                await emit_text(on_token, delta)
        except Exception:
            observer.close_stream_step(step_id, "".join(parts), failed=True)
            raise
        content = "".join(parts)
        observer.close_stream_step(step_id, content)
        return content

    async def run(
        self,
        prompt: Optional[str],
        context: Optional[ConversationContext] = None,
        *,
        observer: Optional[RunObserver] = None,
        on_token: Optional[TokenCallback] = None,
        use_tools: bool = True,
        model: Optional[str] = None,
    ) -> AgentResult:
        """
        Answer *prompt* given prior *context*.

        Tool calls requested by the backend are executed in the order listed and their
        results appended as follow-up turns. The final round is sent without tools so
        the backend has to answer. A handoff call transfers the remainder of the request
        to the target agent and returns its result.

        Raises
        ------
        BackendError
            If a completion call fails.
        HandoffTargetError
            If a handoff names an agent that cannot be resolved.
        """
        observer = observer or RunObserver()
        model = model or self.model
        working = (context or ConversationContext()).copy()
        if not working.handoff_chain:
            working.handoff_chain.append(self.identity)
        if prompt:
            working.turns.append(ConversationTurn(role="user", content=prompt))

        handoffs = self._handoff_tools() if use_tools else {}
        specs: List[Dict[str, Any]] = []
        if use_tools:
            specs = self.tools.to_openai() + [
                item.to_openai(target.name) for item, target in handoffs.values()
            ]

        tool_results: List[ToolResult] = []
        rounds = self.max_tool_turns if specs else 0
        for _ in range(rounds):
            completion = await self.backend.complete(
                model=model,
                messages=self._messages(working),
                temperature=self.definition.temperature,
                tools=specs,
            )
            if not completion.tool_calls:
                await emit_text(on_token, completion.content)
                return self._result(completion.content, completion.model, tool_results)

            working.turns.append(
                ConversationTurn(role="assistant", content=completion.content or None, tool_calls=completion.tool_calls)
            )
            handed_off = await self._process_tool_calls(
                completion, working, handoffs, tool_results, observer, on_token
            )
            if handed_off is not None:
                return handed_off

        if on_token is not None:
            content = await self._stream_final(self._messages(working), observer, on_token, model)
            return self._result(content, model, tool_results)
        completion = await self.backend.complete(
            model=model,
            messages=self._messages(working),
            temperature=self.definition.temperature,
        )
        return self._result(completion.content, completion.model, tool_results)

    def _messages(self, working: ConversationContext) -> List[Dict[str, Any]]:
        return [{"role": "system", "content": self.definition.instructions}] + working.messages()

    async def _process_tool_calls(
        self,
        completion: Completion,
        working: ConversationContext,
        handoffs: Dict[str, tuple[Handoff, AgentDefinition]],
        tool_results: List[ToolResult],
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> Optional[AgentResult]:
        for index, call in enumerate(completion.tool_calls):
            if call.name in handoffs:
                item, target = handoffs[call.name]
                refusal = self._refuse_handoff(target, working)
                if refusal is None:
                    self._answer_transfer(working, completion.tool_calls[index:], target)
                    return await self._handoff(item, target, call, working, observer, on_token)
                result = ToolResult(call_id=call.id, name=call.name, content=refusal, is_error=True)
            else:
                observer.action(f"Calling tool {call.name}", agent=self.definition, metadata={"arguments": call.arguments})
                result = await self.tools.invoke_call(call)
                observer.observation(
                    result.content,
                    agent=self.definition,
                    metadata={"tool": call.name, "isError": result.is_error},
                )
            tool_results.append(result)
            working.turns.append(
                ConversationTurn(role="tool", content=result.content, tool_call_id=call.id, name=call.name)
            )
        return None

    @staticmethod
    def _answer_transfer(working: ConversationContext, calls: List[ToolCall], target: AgentDefinition) -> None:
        # Every listed call needs a tool turn before the conversation moves on
        for position, call in enumerate(calls):
            if position == 0:
                content = json.dumps({"assistant": target.name})
            else:
                content = f"Skipped: the conversation was transferred to {target.name}"
            working.turns.append(ConversationTurn(role="tool", content=content, tool_call_id=call.id, name=call.name))

    @staticmethod
    def _refuse_handoff(target: AgentDefinition, working: ConversationContext) -> Optional[str]:
        if target.identity in working.handoff_chain:
            return f"Error: Handoff to {target.name} refused; it already handled this conversation"
        if len(working.handoff_chain) > MAX_HANDOFF_DEPTH:
            return f"Error: Handoff to {target.name} refused; maximum handoff depth reached"
        return None

    async def _handoff(
        self,
        item: Handoff,
        target: AgentDefinition,
        call: ToolCall,
        working: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> AgentResult:
        reason, typed_input = item.parse_arguments(call.arguments)
        received = item.prepare_context(working)
        received.handoff_chain.append(target.identity)
        await item.notify(received, typed_input)

        logger.info("Handoff from %s to %s (%s)", self.name, target.name, reason or "no reason given")
        observer.handoff(self.definition, target, reason)
        observer.agent_finished(self.definition)
        observer.agent_started(target, reason or f"Handoff from {self.name}")

        target_agent = self.resolver.get_or_create(target.identity)
        result = await target_agent.run(None, received, observer=observer, on_token=on_token)
        observer.agent_finished(target)
        result.metadata["handoff"] = {"from": self.name, "to": target.name, "reason": reason}
        return result

    async def stream(
        self,
        prompt: str,
        context: Optional[ConversationContext] = None,
        *,
        observer: Optional[RunObserver] = None,
    ) -> AsyncIterator[str]:
        """Yield the tokens of a tool-free answer as they are generated."""
        working = (context or ConversationContext()).copy()
        working.turns.append(ConversationTurn(role="user", content=prompt))
        async for delta in self.backend.stream(
            model=self.model,
            messages=self._messages(working),
            temperature=self.definition.temperature,
        ):
            if observer is not None and observer.cancelled:
                return
            yield delta

    async def verdict(self, query: str) -> bool:
        """
        Ask the backend whether this agent should take *query*.

        Raises
        ------
        ClassificationError
            If the classification call fails.
        """
        try:
            completion = await self.backend.complete(
                model=self.model,
                messages=[
                    {"role": "system", "content": CAN_HANDLE_PROMPT.format(name=self.name)},
                    {"role": "user", "content": query},
                ],
                temperature=0.3,
                max_tokens=10,
            )
        except BackendError as exc:
            raise ClassificationError(f"can_handle classification for {self.name} failed: {exc}") from exc
        return completion.content.strip().lower() == "yes"

    async def can_handle(self, query: str) -> bool:
        """Yes/no fitness check. Never raises; failures count as ``False``."""
        try:
            return await self.verdict(query)
        except ClassificationError as exc:
            logger.warning("%s", exc)
            return False
