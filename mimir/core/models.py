"""Core data models shared across orchestration components."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from mimir.agents.handoffs import Handoff
    from mimir.tools.registry import ToolDefinition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class AgentRole(Enum):
    """Role tag inspected instead of class identity."""

    ORCHESTRATOR = "orchestrator"
    SPECIALIST = "specialist"


@dataclass(slots=True)
class AgentDefinition:
    """Bound configuration an Agent is constructed from."""

    identity: str
    name: str
    instructions: str
    model: str
    temperature: float = 0.7
    tools: Tuple[ToolDefinition, ...] = ()
    handoffs: Tuple[Handoff, ...] = ()
    role: AgentRole = AgentRole.SPECIALIST
    agent_type: str = "specialized"
    icon: str = "🤖"
    description: str = ""

    def __post_init__(self) -> None:
        names = [tool.name for tool in self.tools]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(
                f"Agent '{self.identity}' declares duplicate tool names: {sorted(duplicates)}"
            )

    @property
    def is_orchestrator(self) -> bool:
        return self.role is AgentRole.ORCHESTRATOR

    def describe(self) -> Dict[str, str]:
        return {
            "id": self.identity,
            "name": self.name,
            "type": self.agent_type,
            "icon": self.icon,
            "role": self.role.value,
        }


@dataclass(slots=True)
class ToolCall:
    """A function call requested by the completion backend."""

    id: str
    name: str
    arguments: str = "{}"

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ConversationTurn:
    """One {role, content} entry of a conversation."""

    role: str
    content: Optional[str]
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message() for call in self.tool_calls]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == "tool":
            message["name"] = self.name
        return message


@dataclass(slots=True)
class ConversationContext:
    """Per-request conversation state; never shared across requests."""

    turns: List[ConversationTurn] = field(default_factory=list)
    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    handoff_chain: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_messages(cls, messages: Optional[List[Dict[str, Any]]], **kwargs: Any) -> ConversationContext:
        turns = [ConversationTurn(role=m["role"], content=m.get("content")) for m in messages or []]
        return cls(turns=turns, **kwargs)

    def copy(self) -> ConversationContext:
        """Return an independent copy that can be mutated freely."""
        return dataclasses.replace(
            self,
            turns=list(self.turns),
            handoff_chain=list(self.handoff_chain),
            metadata=dict(self.metadata),
        )

    def with_turns(self, turns: List[ConversationTurn]) -> ConversationContext:
        clone = self.copy()
        clone.turns = list(turns)
        return clone

    def latest_user_turn(self) -> Optional[ConversationTurn]:
        for turn in reversed(self.turns):
            if turn.role == "user":
                return turn
        return None

    def messages(self) -> List[Dict[str, Any]]:
        return [turn.to_message() for turn in self.turns]


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool call, always a string for the model."""

    call_id: str
    name: str
    content: str
    is_error: bool = False


@dataclass(slots=True)
class AgentResult:
    """Final output of Agent.run."""

    content: str
    agent_name: str
    model: str
    agent_id: str = ""
    tool_results: Optional[List[ToolResult]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TaskStatus(Enum):
    """AgentTask status; transitions only move forward."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _TASK_RANK[self]

    @property
    def is_final(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR)

    def can_become(self, other: TaskStatus) -> bool:
        if self.is_final:
            return False
        return other.rank > self.rank


_TASK_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.ERROR: 2,
}


@dataclass(slots=True)
class AgentTask:
    """External-facing record of one agent run."""

    id: str
    description: str
    agent: str
    status: TaskStatus = TaskStatus.PENDING
    user_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    parent_task_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class SpanType(Enum):
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"
    DECISION = "decision"
    HANDOFF = "handoff"
    ERROR = "error"


class SpanStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


class TraceStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(slots=True)
class TraceSpan:
    """One recorded orchestration step."""

    id: str
    trace_id: str
    type: SpanType
    message: str
    parent_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: SpanStatus = SpanStatus.COMPLETED
    agent_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "traceId": self.trace_id,
            "parentId": self.parent_id,
            "type": self.type.value,
            "message": self.message,
            "metadata": self.metadata,
            "status": self.status.value,
            "agentName": self.agent_name,
            "createdAt": _iso(self.created_at),
            "closedAt": _iso(self.closed_at),
        }


@dataclass(slots=True)
class Trace:
    """Ordered tree of spans for one orchestration run."""

    id: str
    name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    spans: List[TraceSpan] = field(default_factory=list)
    status: TraceStatus = TraceStatus.RUNNING
    summary: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status is TraceStatus.RUNNING

    def to_dict(self, include_steps: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "metadata": self.metadata,
            "status": self.status.value,
            "summary": self.summary,
            "startTime": _iso(self.started_at),
            "endTime": _iso(self.ended_at),
        }
        if include_steps:
            payload["steps"] = [span.to_dict() for span in self.spans]
        return payload


class WorkState(Enum):
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class AgentStatus:
    """Snapshot published to the status feed."""

    id: str
    name: str
    type: str
    task: str
    status: WorkState = WorkState.WORKING
    progress: int = 0
    start_time: datetime = field(default_factory=utcnow)
    last_update_time: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "task": self.task,
            "status": self.status.value,
            "progress": self.progress,
            "startTime": _iso(self.start_time),
            "lastUpdateTime": _iso(self.last_update_time),
        }
