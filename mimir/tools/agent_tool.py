"""Agent-as-tool adapter: lets one agent call another like an ordinary function tool."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from mimir.core.errors import HandoffTargetError
from mimir.core.models import AgentResult, ConversationContext
from mimir.orchestration.observer import RunObserver
from mimir.tools.registry import ToolDefinition

logger = logging.getLogger(__name__)


class AgentToolArgs(BaseModel):
    query: str = Field(..., description="The user query to be processed by the specialized agent")
    context: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional context to provide to the agent"
    )


class AgentToolAdapter:
    """
    Wraps an Agent's ``run`` as a tool for one request.

    The child runs on an empty conversation owned by the parent request (same user,
    chat and handoff chain). Successful results are collected in :attr:`results`.
    """

    def __init__(
        self,
        agent: Any,
        name: str,
        description: str,
        *,
        parent_context: Optional[ConversationContext] = None,
        observer: Optional[RunObserver] = None,
        on_token: Any = None,
    ) -> None:
        self.agent = agent
        self.name = name
        self.description = description
        self.parent_context = parent_context or ConversationContext()
        self.observer = observer or RunObserver()
        self.on_token = on_token
        self.results: List[AgentResult] = []

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=AgentToolArgs,
            executor=self,
        )

    def _child_context(self, extra: Optional[Dict[str, Any]]) -> ConversationContext:
        child = self.parent_context.with_turns([])
        child.metadata.update(extra or {})
        child.metadata["calledAsTool"] = True
        child.metadata["calledByTool"] = self.name
        return child

    async def __call__(self, query: str, context: Optional[Dict[str, Any]] = None) -> str:
        definition = self.agent.definition
        self.observer.agent_started(definition, query)
        try:
            result = await self.agent.run(
                query,
                self._child_context(context),
                observer=self.observer,
                on_token=self.on_token,
            )
        except HandoffTargetError:
            self.observer.agent_finished(definition, success=False)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Error executing agent as tool (%s): %s", self.name, exc)
            self.observer.agent_finished(definition, success=False)
            return f"Error executing {self.agent.name}: {str(exc) or type(exc).__name__}"

        self.observer.agent_finished(definition)
        self.results.append(result)
        structured = result.metadata.get("structured_output")
        if structured is not None:
            return json.dumps(
                {"agentName": result.agent_name, "content": result.content, "structuredOutput": structured},
                default=str,
            )
        return result.content
