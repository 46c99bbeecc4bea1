"""Tool definitions, parameter schema lowering, and the tool execution engine."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .errors import SchemaError, ToolExecutionError
from .messages import Message, ToolCall, ToolResult, ToolResultBlock
from .trace import TraceRecorder

logger = logging.getLogger(__name__)

PARAM_TYPES = ("string", "number", "boolean", "array", "object")

NO_RESULT_PLACEHOLDER = "No result returned"


# ---------------------------------------------------------------------------
# Parameter schema
# ---------------------------------------------------------------------------


@dataclass
class ToolParam:
    """Internal parameter schema node; nests through ``items`` and ``properties``."""

    type: str
    key: Optional[str] = None
    description: Optional[str] = None
    required: bool = False
    enum: Optional[List[Any]] = None
    items: Optional["ToolParam"] = None
    properties: Optional[List["ToolParam"]] = None
    limit: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Union["ToolParam", Dict[str, Any]]) -> "ToolParam":
        if isinstance(data, ToolParam):
            return data
        items = data.get("items")
        properties = data.get("properties")
        return cls(
            type=data.get("type", "string"),
            key=data.get("key"),
            description=data.get("description"),
            required=bool(data.get("required", False)),
            enum=data.get("enum"),
            items=cls.from_dict(items) if items is not None else None,
            properties=[cls.from_dict(p) for p in properties] if properties is not None else None,
            limit=data.get("limit"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        for name in ("key", "description", "enum", "limit"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.required:
            data["required"] = True
        if self.items is not None:
            data["items"] = self.items.to_dict()
        if self.properties is not None:
            data["properties"] = [p.to_dict() for p in self.properties]
        return data


def _describe(param: ToolParam) -> str:
    return json.dumps(param.to_dict(), default=str)


def clean_param(param: ToolParam, required_list: Optional[List[str]] = None) -> Dict[str, Any]:
    """Recursively lower a :class:`ToolParam` into a JSON-schema dict.

    Required property keys are appended to ``required_list`` so the enclosing
    object can publish them.
    """
    if param.required and param.key and required_list is not None:
        required_list.append(param.key)

    out: Dict[str, Any] = {"type": param.type}
    if param.description is not None:
        out["description"] = param.description

    if param.type == "array":
        if param.items is None:
            raise SchemaError(f"Array parameters must have items defined - {_describe(param)}")
        out["items"] = clean_param(param.items)
        return out

    if param.type == "object":
        if param.properties is None:
            raise SchemaError(f"Object parameters must have properties defined - {_describe(param)}")
        object_required: List[str] = []
        properties: Dict[str, Any] = {}
        for prop in param.properties:
            if not prop.key:
                raise SchemaError(f"Object properties must have keys defined - {_describe(prop)}")
            properties[prop.key] = clean_param(prop, object_required)
        out["properties"] = properties
        out["required"] = object_required
        return out

    if param.type in ("string", "number"):
        if param.enum is not None:
            out["enum"] = list(param.enum)
        return out

    if param.type == "boolean":
        return out

    raise SchemaError(f"Unsupported parameter type '{param.type}' - {_describe(param)}")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def _always_enabled(agent: Any) -> bool:
    return True


@dataclass
class Tool:
    """A callable exposed to the model.

    ``target(call, agent)`` may be sync or async and returns a string or a
    JSON-serialisable dict. ``enabled(agent)`` gates whether the tool is
    offered to the model on a given request.
    """

    name: str
    description: str
    target: Callable[..., Any]
    params: List[ToolParam] = field(default_factory=list)
    enabled: Callable[[Any], bool] = _always_enabled
    cache: bool = False

    def __post_init__(self) -> None:
        self.params = [ToolParam.from_dict(p) for p in self.params]
        for param in self.params:
            if not param.key:
                raise SchemaError(f"Tool '{self.name}' parameters must have keys defined - {_describe(param)}")

    def parameters_schema(self) -> Dict[str, Any]:
        return clean_param(ToolParam(type="object", properties=self.params))


def tool_parameters_schema(tool: Tool) -> Dict[str, Any]:
    return tool.parameters_schema()


# ---------------------------------------------------------------------------
# Execution engine
# ---------------------------------------------------------------------------


class ToolExecutor:
    """Runs the tool calls of a message sequentially and collects their results."""

    def __init__(self, trace: Optional[TraceRecorder] = None) -> None:
        self.trace = trace

    def resolve(
        self,
        name: str,
        tools: Iterable[Tool],
        agent: Any,
        allowlist: Optional[Iterable[Tool]] = None,
    ) -> Optional[Tool]:
        for tool in allowlist or []:
            if tool.name == name:
                return tool
        for tool in tools:
            if tool.name == name and tool.enabled(agent):
                return tool
        return None

    async def _invoke(self, tool: Tool, call: ToolCall, agent: Any) -> Union[str, Dict[str, Any]]:
        result = tool.target(call, agent)
        if inspect.isawaitable(result):
            result = await result
        if not result:
            logger.warning("Tool execution returned no result for %s()", call.fn_name)
            return NO_RESULT_PLACEHOLDER
        if not isinstance(result, (str, dict)):
            raise ToolExecutionError(
                f"Tool {call.fn_name}() did not return a string, instead returned {type(result).__name__}"
            )
        return result

    async def execute_call(
        self,
        call: ToolCall,
        tools: Iterable[Tool],
        agent: Any,
        *,
        allowlist: Optional[Iterable[Tool]] = None,
        request_id: str = "",
    ) -> ToolResult:
        if self.trace is not None:
            self.trace.start(
                "tool_execution",
                request_id,
                span=call.id,
                tool_name=call.fn_name,
                tool_call_id=call.id,
                args=call.fn_args,
            )
        try:
            if call.error:
                raise ToolExecutionError(call.error)
            tool = self.resolve(call.fn_name, tools, agent, allowlist)
            if tool is None:
                raise ToolExecutionError(f"No tool found to handle call for {call.fn_name}()")
            result = await self._invoke(tool, call, agent)
        except Exception as exc:
            message = f"Tool Execution Failed for {call.fn_name}() - {str(exc) or 'Unknown'}"
            logger.warning(message)
            if self.trace is not None:
                self.trace.end("tool_execution", request_id, "error", span=call.id, tool_name=call.fn_name, error=message)
            return ToolResult(id=call.id, fn_name=call.fn_name, result=message, error=True, call=call)

        if self.trace is not None:
            self.trace.end("tool_execution", request_id, "success", span=call.id, tool_name=call.fn_name, result=result)
        return ToolResult(id=call.id, fn_name=call.fn_name, result=result, error=False, call=call)

    async def execute(
        self,
        message: Message,
        tools: Iterable[Tool],
        agent: Any,
        *,
        allowlist: Optional[Iterable[Tool]] = None,
        request_id: str = "",
    ) -> Message:
        """Execute every tool call in ``message`` in order.

        Failures never propagate: each one becomes an error :class:`ToolResult`.
        """
        tools = list(tools)
        allowlist = list(allowlist or [])
        blocks = []
        for call in message.get_tool_calls():
            result = await self.execute_call(call, tools, agent, allowlist=allowlist, request_id=request_id)
            blocks.append(ToolResultBlock(tool_result=result))
        return Message("user", blocks)


__all__ = [
    "PARAM_TYPES",
    "NO_RESULT_PLACEHOLDER",
    "ToolParam",
    "clean_param",
    "Tool",
    "tool_parameters_schema",
    "ToolExecutor",
]
