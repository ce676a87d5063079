"""
Research and report pipeline.

The query is classified first. Research tasks go to the Research Agent, report tasks to
the Report Agent, and combined or unclassifiable tasks run both in sequence: the research
notes are gathered silently and handed to the Report Agent, whose answer is streamed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from mimir.agents import catalog
from mimir.agents.agent import TokenCallback
from mimir.agents.registry import AgentRegistry
from mimir.agents.triage import DelegationPolicy, TaskType, TriageResult, phase_payload
from mimir.core.models import AgentDefinition, AgentResult, ConversationContext
from mimir.orchestration.observer import RunObserver

logger = logging.getLogger(__name__)

REPORT_PROMPT = (
    'User asked: "{query}".\n\n'
    "Research Notes:\n{notes}\n\n"
    "Please write a comprehensive report that integrates this information with clear citations."
)

PHASE_MESSAGES = {
    "research": "Starting research phase",
    "report": "Starting report generation",
}


@dataclass
class PipelineResult:
    content: str
    agent: AgentDefinition
    triage: TriageResult
    metadata: Dict[str, Any] = field(default_factory=dict)


class ResearchReportPipeline:
    """Runs classified queries through the Research and/or Report agents."""

    def __init__(self, registry: AgentRegistry, policy: DelegationPolicy) -> None:
        self.registry = registry
        self.policy = policy

    async def run(
        self,
        query: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback] = None,
    ) -> PipelineResult:
        orchestrator = self.registry.orchestrator()
        triage = await self.policy.classify(query, context)
        processed = triage.modified_query or query
        observer.decision(
            f"Classified as {triage.task_type.value}",
            agent=orchestrator,
            metadata=triage.model_dump(by_alias=True, mode="json"),
        )
        observer.triage_complete(triage.task_type.value, triage.confidence, triage.reasoning)

        metadata: Dict[str, Any] = {
            "taskType": triage.task_type.value,
            "triageConfidence": triage.confidence,
            "triageReasoning": triage.reasoning,
            "originalQuery": query,
            "processedQuery": processed,
        }
        if triage.task_type is TaskType.RESEARCH:
            result = await self._phase("research", catalog.RESEARCH, processed, context, observer, on_token)
        elif triage.task_type is TaskType.REPORT:
            result = await self._phase("report", catalog.REPORT, processed, context, observer, on_token)
        else:
            if triage.task_type is TaskType.UNKNOWN:
                logger.info("Unclassified query, running research and report")
            notes = await self._phase("research", catalog.RESEARCH, processed, context, observer, None)
            metadata["researchDataLength"] = len(notes.content)
            prompt = REPORT_PROMPT.format(query=processed, notes=notes.content)
            result = await self._phase("report", catalog.REPORT, prompt, context, observer, on_token)

        metadata["model"] = result.model
        return PipelineResult(
            content=result.content,
            agent=self.registry.definition(result.agent_id or catalog.REPORT),
            triage=triage,
            metadata=metadata,
        )

    async def _phase(
        self,
        domain: str,
        identity: str,
        prompt: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenCallback],
    ) -> AgentResult:
        definition = self.registry.definition(identity)
        agent = self.registry.get_or_create(identity)
        observer.phase_start(domain, message=PHASE_MESSAGES[domain])
        observer.agent_started(definition, prompt)
        try:
            result = await agent.run(prompt, context, observer=observer, on_token=on_token)
        except Exception:
            observer.agent_finished(definition, success=False)
            raise
        observer.agent_finished(definition)
        observer.phase_complete(domain, **phase_payload(domain, result.content))
        return result
