"""Error taxonomy for the delegation engine."""
from __future__ import annotations

from typing import Optional


class MimirError(Exception):
    """Base class for every error raised by this package."""


class BackendError(MimirError):
    """The completion backend call failed or returned something malformed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(BackendError):
    """The completion backend rejected our credentials."""


class ToolError(MimirError):
    """Base for failures that are fed back to the model as tool output."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class UnknownToolError(ToolError):
    """The model requested a tool that is not registered."""


class ToolValidationError(ToolError):
    """Tool arguments failed the tool's parameter schema."""


class ToolExecutionError(ToolError):
    """The tool executor raised."""


class HandoffTargetError(MimirError):
    """A handoff referenced an agent identity that cannot be resolved."""

    def __init__(self, target: str) -> None:
        super().__init__(f"Handoff target '{target}' could not be resolved")
        self.target = target


class ClassificationError(MimirError):
    """A can_handle classification call failed; callers treat it as 'no'."""


class UnknownAgentError(MimirError, KeyError):
    """No AgentDefinition is registered under the requested identity."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"No agent registered for identity '{identity}'")
        self.identity = identity

    def __str__(self) -> str:
        return str(self.args[0])


class EmptyQueryError(MimirError, ValueError):
    """The query was empty or whitespace-only."""


class InvalidTaskTransition(MimirError):
    """An AgentTask status update would move backwards."""


class RequestTimeoutError(MimirError):
    """The request did not finish within the configured deadline."""


def format_tool_error(error: ToolError) -> str:
    """Render a tool failure as the string the model sees."""
    if isinstance(error, UnknownToolError):
        return f"Error: Tool {error.tool_name} not found"
    if isinstance(error, ToolValidationError):
        return f"Error: Invalid arguments for tool '{error.tool_name}': {error}"
    return f"Error executing tool '{error.tool_name}': {error}"


def is_authentication_error(error: BaseException) -> bool:
    return isinstance(error, AuthenticationError)