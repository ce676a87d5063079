"""
Tool invocation subsystem.

Tools are named, schema-described functions the completion backend may ask us to run. Each tool
carries a pydantic model describing its parameters; arguments coming from the model are validated
against it before the executor runs. Failures never escape :meth:`ToolRegistry.invoke`: they are
rendered as strings and fed back to the model so the conversation can continue.
"""
from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from mimir.core.errors import (
    HandoffTargetError,
    ToolError,
    ToolExecutionError,
    ToolValidationError,
    UnknownToolError,
    format_tool_error,
)
from mimir.core.models import ToolCall, ToolResult

logger = logging.getLogger(__name__)

Executor = Callable[..., Any]


class NoArguments(BaseModel):
    """Parameter model for tools that take no arguments."""


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Name, description, parameter schema and executor of one tool."""

    name: str
    description: str
    parameters: Type[BaseModel]
    executor: Executor

    def json_schema(self) -> Dict[str, Any]:
        schema = self.parameters.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }


def function_tool(
    name: str,
    description: str,
    parameters: Optional[Type[BaseModel]] = None,
) -> Callable[[Executor], ToolDefinition]:
    """
    Decorator turning a plain or async function into a :class:`ToolDefinition`.

        @function_tool("web_search", "Search the web", WebSearchArgs)
        async def web_search(query: str) -> str:
            ...
    """

    def wrapper(fn: Executor) -> ToolDefinition:
        return ToolDefinition(
            name=name,
            description=description,
            parameters=parameters or NoArguments,
            executor=fn,
        )

    return wrapper


def stringify_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class ToolRegistry:
    """Looks up tools by name, validates their arguments and runs them."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: Dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> ToolDefinition:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered.")
        logger.debug("Registering tool '%s'", tool.name)
        self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def to_openai(self) -> List[Dict[str, Any]]:
        return [tool.to_openai() for tool in self._tools.values()]

    @staticmethod
    def parse_arguments(
        tool: ToolDefinition, arguments: Union[str, Mapping[str, Any], None]
    ) -> BaseModel:
        """Validate raw model arguments against the tool's parameter model."""
        if arguments is None or arguments == "":
            payload: Any = {}
        elif isinstance(arguments, str):
            try:
                payload = json.loads(arguments)
            except json.JSONDecodeError as exc:
                raise ToolValidationError(tool.name, f"arguments are not valid JSON ({exc.msg})") from exc
        else:
            payload = dict(arguments)
        try:
            return tool.parameters.model_validate(payload)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ToolValidationError(tool.name, details) from exc

    async def call(self, name: str, arguments: Union[str, Mapping[str, Any], None] = None) -> str:
        """
        Run tool *name* and return its string result.

        Raises
        ------
        UnknownToolError
            If no tool is registered under *name*.
        ToolValidationError
            If *arguments* fail the tool's parameter model.
        ToolExecutionError
            If the executor raises.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name, f"Tool '{name}' is not registered.")

        parsed = self.parse_arguments(tool, arguments)
        try:
            logger.debug("Executing tool '%s' with args=%s", name, parsed)
            result = tool.executor(**parsed.model_dump())
            if inspect.isawaitable(result):
                result = await result
        except HandoffTargetError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool '%s' raised an error: %s", name, exc)
            logger.debug("Tool '%s' traceback", name, exc_info=True)
            raise ToolExecutionError(name, str(exc) or type(exc).__name__) from exc
        return stringify_result(result)

    async def invoke(self, name: str, arguments: Union[str, Mapping[str, Any], None] = None) -> str:
        """Like :meth:`call`, but tool failures come back as a tool-error string."""
        try:
            return await self.call(name, arguments)
        except ToolError as exc:
            return format_tool_error(exc)

    async def invoke_call(self, call: ToolCall) -> ToolResult:
        try:
            content = await self.call(call.name, call.arguments)
        except ToolError as exc:
            return ToolResult(call_id=call.id, name=call.name, content=format_tool_error(exc), is_error=True)
        return ToolResult(call_id=call.id, name=call.name, content=content)
