"""
Delegation policy: answer directly or hand the request to a specialist.

A cheap word-count/keyword heuristic picks the path to try first. On the delegate
path the backend sees every specialist as a callable tool and its function-call
choice is final. Any backend failure on either path falls back to a plain,
tool-free run of the orchestrator.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mimir.agents import catalog
from mimir.agents.agent import Agent, TokenCallback, emit_text
from mimir.agents.registry import AgentRegistry
from mimir.core.errors import BackendError
from mimir.core.models import AgentResult, ConversationContext, ConversationTurn
from mimir.orchestration.observer import RunObserver
from mimir.services.completions import CompletionBackend
from mimir.tools.agent_tool import AgentToolAdapter
from mimir.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

COMPLEX_KEYWORDS = (
    "code", "program", "develop", "build", "create", "implement",
    "research", "find", "search", "analyze", "data", "statistics",
    "write", "essay", "article", "content", "blog", "report",
    "complex", "difficult", "challenging", "step by step", "workflow",
    "advice", "recommend", "suggestion", "buy", "purchase", "invest",
    "decision", "compare", "difference", "better", "best", "worst",
    "should i", "how do i", "what should", "help me",
)


@dataclass(frozen=True)
class DelegationTarget:
    identity: str
    label: str
    domain: str
    description: str


DELEGATION_TOOLS: Dict[str, DelegationTarget] = {
    "research_task": DelegationTarget(
        catalog.RESEARCH,
        "Research",
        "research",
        "Use this function when the user query requires research, information gathering, answering "
        "factual questions, or providing advice on complex decisions (like buying a car, choosing a "
        "house, making investment decisions, etc.).",
    ),
    "coding_task": DelegationTarget(
        catalog.CODING,
        "Coding",
        "coding",
        "Use this function when the user query involves writing code, debugging, or explaining "
        "programming concepts.",
    ),
    "data_analysis_task": DelegationTarget(
        catalog.DATA_ANALYSIS,
        "Data Analysis",
        "data_analysis",
        "Use this function when the user query involves analyzing data, statistics, or creating "
        "visualizations.",
    ),
    "writing_task": DelegationTarget(
        catalog.WRITING,
        "Writing",
        "writing",
        "Use this function when the user query involves writing, editing, or improving text content.",
    ),
}

DELEGATE_SUFFIX = """

For complex queries, determine which specialized agent is best suited to handle it.
You have access to the following functions:
- research_task: for queries requiring research or factual information
- coding_task: for queries involving code or programming
- data_analysis_task: for queries involving data analysis or visualization
- writing_task: for queries involving writing or content creation

If you can handle the query directly, do so. Otherwise, call the appropriate function."""

RATIONALE_PROMPT = (
    "You are Mimir, the chief AI. You've decided to delegate the user's query to the {label} Agent. "
    "Briefly explain why this agent is best suited for this query in 1-2 sentences."
)

CLASSIFY_INSTRUCTIONS = """You are a task classification AI. Analyze the user's query and classify it into one of these task types:

- research: the query needs web search to find current or specific factual information
- report: the query asks to analyze, summarize or format existing information; no new research is needed
- combined: the query needs both research and report generation
- unknown: the query does not clearly fit any category above

Call the classify_query function with your classification."""

# Confidence attached to decisions that were not made by a backend function call.
HEURISTIC_CONFIDENCE = 0.6
FALLBACK_CONFIDENCE = 0.0

# Streamed between an interrupted answer and the one that replaces it
RESUME_SEPARATOR = "\n\n"

_URL = re.compile(r"https?://[^\s\]]+")
_BRACKET_CITATION = re.compile(r"\[[^\]]+\]")


class TaskType(str, Enum):
    RESEARCH = "research"
    REPORT = "report"
    COMBINED = "combined"
    UNKNOWN = "unknown"


class TriageResult(BaseModel):
    """Outcome of ``classify_query``."""

    model_config = ConfigDict(populate_by_name=True)

    task_type: TaskType = Field(alias="taskType", description="The task type classification")
    confidence: float = Field(ge=0, le=1, description="Confidence score (0-1)")
    reasoning: str = Field(description="Explanation of why this task type was chosen")
    modified_query: Optional[str] = Field(
        default=None, alias="modifiedQuery", description="Optional improved version of the query"
    )

    def summary(self, query: str) -> str:
        text = (
            f"Analyzed your query. This appears to be a {self.task_type.value} task.\n\n"
            f"Reasoning: {self.reasoning}\n\n"
        )
        if self.modified_query and self.modified_query != query:
            text += f"Suggested query reformulation: {self.modified_query}\n\n"
        return text


@dataclass
class DelegationResult:
    """An AgentResult plus how the policy arrived at it."""

    result: AgentResult
    path: str
    task_type: str
    confidence: float
    reasoning: str
    tool_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TokenTranscript:
    """
    Token callback that remembers what it already delivered.

    When an attempt dies after streaming part of its answer, the partial text cannot be
    taken back from the consumer. :meth:`interrupt` closes it off with a separator, and
    the final content becomes the full transcript so the tokens still add up to it.
    """

    def __init__(self, on_token: TokenCallback) -> None:
        self.on_token = on_token
        self.parts: List[str] = []
        self.interrupted = False

    async def __call__(self, text: str) -> None:
        if not text:
            return
        self.parts.append(text)
        await emit_text(self.on_token, text)

    @property
    def text(self) -> str:
        return "".join(self.parts)

    async def interrupt(self) -> None:
        if not self.parts or self.parts[-1] == RESUME_SEPARATOR:
            return
        self.interrupted = True
        await self(RESUME_SEPARATOR)


def _tool_schema() -> Dict[str, Any]:
    schema = TriageResult.model_json_schema(by_alias=True)
    schema.pop("title", None)
    return {
        "type": "function",
        "function": {
            "name": "classify_query",
            "description": "Classify the user query into the appropriate task type",
            "parameters": schema,
        },
    }


class DelegationPolicy:
    """Routes one request to a direct answer or to a specialist agent."""

    def __init__(
        self,
        registry: AgentRegistry,
        backend: CompletionBackend,
        *,
        fast_model: str,
        simple_query_words: int = 10,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.fast_model = fast_model
        self.simple_query_words = simple_query_words

    @property
    def orchestrator(self) -> Agent:
        return self.registry.get_or_create(self.registry.orchestrator().identity)

    def is_simple_query(self, prompt: str) -> bool:
        """Short AND free of domain keywords. Blank prompts count as simple."""
        text = prompt.strip().lower()
        if not text:
            return True
        if len(text.split()) >= self.simple_query_words:
            return False
        return not any(keyword in text for keyword in COMPLEX_KEYWORDS)

    async def decide(
        self,
        prompt: str,
        context: Optional[ConversationContext] = None,
        *,
        observer: Optional[RunObserver] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> DelegationResult:
        observer = observer or RunObserver()
        context = context or ConversationContext()
        orchestrator = self.orchestrator.definition
        transcript = TokenTranscript(on_token) if on_token is not None else None
        try:
            if self.is_simple_query(prompt):
                logger.info("Direct path for query (%d words)", len(prompt.split()))
                decision = await self._direct(prompt, context, observer, transcript)
            else:
                logger.info("Delegate path for query (%d words)", len(prompt.split()))
                decision = await self._delegate(prompt, context, observer, transcript)
        except BackendError as exc:
            logger.error("Delegation failed, falling back to a direct run: %s", exc)
            observer.error(f"Delegation failed: {exc}", agent=orchestrator)
            if transcript is not None:
                await transcript.interrupt()
            result = await self.orchestrator.run(
                prompt, context, observer=observer, on_token=transcript, use_tools=False
            )
            decision = DelegationResult(
                result=result,
                path="fallback",
                task_type="direct",
                confidence=FALLBACK_CONFIDENCE,
                reasoning=f"Fallback after backend error: {exc}",
            )
        if transcript is not None and transcript.interrupted:
            decision.result.content = transcript.text
            decision.result.metadata["interrupted"] = True
        return decision

    async def _direct(
        self,
        prompt: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenTranscript],
    ) -> DelegationResult:
        reasoning = "Simple query answered directly"
        observer.decision(reasoning, agent=self.orchestrator.definition, metadata={"path": "direct"})
        observer.triage_complete("direct", HEURISTIC_CONFIDENCE, reasoning)
        result = await self.orchestrator.run(
            prompt,
            context,
            observer=observer,
            on_token=on_token,
            use_tools=False,
            model=self.fast_model,
        )
        return DelegationResult(
            result=result,
            path="direct",
            task_type="direct",
            confidence=HEURISTIC_CONFIDENCE,
            reasoning=reasoning,
        )

    async def _delegate(
        self,
        prompt: str,
        context: ConversationContext,
        observer: RunObserver,
        on_token: Optional[TokenTranscript],
    ) -> DelegationResult:
        orchestrator = self.orchestrator
        tools = ToolRegistry()
        adapters: Dict[str, AgentToolAdapter] = {}
        for tool_name, target in DELEGATION_TOOLS.items():
            adapter = AgentToolAdapter(
                self.registry.get_or_create(target.identity),
                tool_name,
                target.description,
                parent_context=context,
                observer=observer,
                on_token=on_token,
            )
            adapters[tool_name] = adapter
            tools.register(adapter.definition())

        messages = (
            [{"role": "system", "content": orchestrator.definition.instructions + DELEGATE_SUFFIX}]
            + context.messages()
            + [{"role": "user", "content": prompt}]
        )
        completion = await self.backend.complete(
            model=orchestrator.model,
            messages=messages,
            temperature=orchestrator.definition.temperature,
            tools=tools.to_openai(),
            tool_choice="auto",
        )

        if not completion.tool_calls:
            reasoning = "Answered directly by the orchestrator"
            observer.decision(reasoning, agent=orchestrator.definition, metadata={"path": "delegate"})
            observer.triage_complete("direct", 1.0, reasoning)
            await emit_text(on_token, completion.content)
            result = AgentResult(
                content=completion.content,
                agent_name=orchestrator.name,
                model=completion.model,
                agent_id=orchestrator.identity,
            )
            return DelegationResult(result=result, path="delegate", task_type="direct", confidence=1.0, reasoning=reasoning)

        call = completion.tool_calls[0]
        if len(completion.tool_calls) > 1:
            logger.info("Backend requested %d delegations; honouring '%s'", len(completion.tool_calls), call.name)
        target = DELEGATION_TOOLS.get(call.name)
        label = target.label if target else call.name
        domain = target.domain if target else "unknown"

        reasoning = await self._rationale(label, prompt)
        observer.decision(
            f"Delegating to the {label} Agent",
            agent=orchestrator.definition,
            metadata={"tool": call.name, "reasoning": reasoning},
        )
        observer.triage_complete(domain, 1.0, reasoning)
        observer.phase_start(domain, agent=f"{label} Agent")

        outcome = await tools.invoke_call(call)
        adapter = adapters.get(call.name)
        if adapter is not None and adapter.results and not outcome.is_error:
            result = adapter.results[-1]
            observer.phase_complete(domain, **phase_payload(domain, result.content))
        else:
            logger.warning("Delegation via '%s' failed: %s", call.name, outcome.content)
            observer.phase_complete(domain, error=outcome.content)
            if on_token is not None:
                await on_token.interrupt()
            recovery = context.with_turns(
                context.turns
                + [
                    ConversationTurn(role="user", content=prompt),
                    ConversationTurn(role="assistant", content=completion.content or None, tool_calls=[call]),
                    ConversationTurn(role="tool", content=outcome.content, tool_call_id=call.id, name=call.name),
                ]
            )
            result = await orchestrator.run(
                None, recovery, observer=observer, on_token=on_token, use_tools=False
            )

        result.metadata["delegationReasoning"] = reasoning
        return DelegationResult(
            result=result,
            path="delegate",
            task_type=domain,
            confidence=1.0,
            reasoning=reasoning,
            tool_name=call.name,
        )

    async def _rationale(self, label: str, prompt: str) -> str:
        try:
            completion = await self.backend.complete(
                model=self.fast_model,
                messages=[
                    {"role": "system", "content": RATIONALE_PROMPT.format(label=label)},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                max_tokens=100,
            )
        except BackendError as exc:
            logger.warning("Delegation rationale call failed: %s", exc)
            return f"Delegated to the {label} Agent."
        return completion.content.strip() or f"Delegated to the {label} Agent."

    async def classify(self, prompt: str, context: Optional[ConversationContext] = None) -> TriageResult:
        """
        Classify *prompt* with a forced ``classify_query`` call.

        Output that cannot be parsed yields ``combined`` with confidence 0.5. Backend
        failures propagate as :class:`BackendError`.
        """
        orchestrator = self.orchestrator
        messages = (
            [{"role": "system", "content": CLASSIFY_INSTRUCTIONS}]
            + (context.messages() if context else [])
            + [{"role": "user", "content": prompt}]
        )
        completion = await self.backend.complete(
            model=orchestrator.model,
            messages=messages,
            temperature=0.3,
            tools=[_tool_schema()],
            tool_choice={"type": "function", "function": {"name": "classify_query"}},
        )
        raw = next(
            (call.arguments for call in completion.tool_calls if call.name == "classify_query"),
            completion.content,
        )
        try:
            return TriageResult.model_validate(json.loads(raw or ""))
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Failed to parse triage response: %s", exc)
            return TriageResult(
                task_type=TaskType.COMBINED,
                confidence=0.5,
                reasoning="Failed to parse the model response. Defaulting to combined task type.",
                modified_query=prompt,
            )


def count_citations(text: str) -> int:
    """Distinct URLs and bracketed references in *text*; never less than one."""
    citations = set(_URL.findall(text)) | set(_BRACKET_CITATION.findall(text))
    return len(citations) or 1


def phase_payload(domain: str, content: str) -> Dict[str, Any]:
    if domain == "research":
        return {"sources": count_citations(content), "researchDataLength": len(content)}
    return {"contentLength": len(content)}
