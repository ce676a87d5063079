"""Agent registry: one cached Agent per logical identity."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from mimir.agents.agent import Agent
from mimir.core.errors import UnknownAgentError
from mimir.core.models import AgentDefinition
from mimir.services.completions import CompletionBackend

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Holds AgentDefinitions and lazily builds Agents from them.

    Construction is synchronous, so concurrent first access from coroutines on one
    event loop cannot interleave. The cache write is a single ``setdefault`` so every
    caller ends up with the instance that was published first.
    """

    def __init__(
        self,
        backend: CompletionBackend,
        definitions: Iterable[AgentDefinition] = (),
        *,
        max_tool_turns: int = 5,
    ) -> None:
        self.backend = backend
        self.max_tool_turns = max_tool_turns
        self._definitions: Dict[str, AgentDefinition] = {}
        self._agents: Dict[str, Agent] = {}
        for definition in definitions:
            self.register_definition(definition)

    def register_definition(self, definition: AgentDefinition) -> AgentDefinition:
        if definition.identity in self._definitions:
            raise ValueError(f"Agent identity '{definition.identity}' is already registered.")
        self._definitions[definition.identity] = definition
        return definition

    def definition(self, identity: str) -> AgentDefinition:
        try:
            return self._definitions[identity]
        except KeyError:
            raise UnknownAgentError(identity) from None

    def find(self, identity_or_name: str) -> Optional[AgentDefinition]:
        """Look up by identity, falling back to a case-insensitive display-name match."""
        definition = self._definitions.get(identity_or_name)
        if definition is not None:
            return definition
        wanted = identity_or_name.strip().lower()
        for candidate in self._definitions.values():
            if candidate.name.lower() == wanted:
                return candidate
        return None

    def list_definitions(self) -> List[AgentDefinition]:
        return list(self._definitions.values())

    def orchestrator(self) -> AgentDefinition:
        for definition in self._definitions.values():
            if definition.is_orchestrator:
                return definition
        raise UnknownAgentError("orchestrator")

    def get_or_create(self, identity: str) -> Agent:
        cached = self._agents.get(identity)
        if cached is not None:
            return cached
        definition = self.definition(identity)
        logger.debug("Creating agent '%s' (%s)", identity, definition.model)
        agent = Agent(definition, self.backend, resolver=self, max_tool_turns=self.max_tool_turns)
        return self._agents.setdefault(identity, agent)

    def reset(self) -> None:
        """Drop every cached Agent; definitions stay registered."""
        self._agents.clear()
