"""Provider-agnostic conversation model.

A message is a role plus an ordered list of typed content blocks. Providers
translate to and from this shape; the agent only ever stores these objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

ROLES = ("system", "user", "assistant")

IMAGE_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp", "image/url")

STOP_REASONS = (
    "natural",
    "tool_call",
    "content_filter",
    "max_tokens",
    "unsupported",
    "unknown",
)


# ---------------------------------------------------------------------------
# Tool call / result payloads
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A function call emitted by the model."""

    id: str
    fn_name: str
    fn_args: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "fn_name": self.fn_name, "fn_args": self.fn_args}
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id")),
            fn_name=str(data.get("fn_name")),
            fn_args=dict(data.get("fn_args") or {}),
            error=data.get("error"),
        )


@dataclass
class ToolResult:
    """Outcome of executing a :class:`ToolCall`."""

    id: str
    fn_name: str
    result: Union[str, Dict[str, Any]]
    error: bool = False
    call: Optional[ToolCall] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "fn_name": self.fn_name,
            "result": self.result,
            "error": self.error,
        }
        if self.call is not None:
            data["call"] = self.call.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResult":
        call = data.get("call")
        return cls(
            id=str(data.get("id")),
            fn_name=str(data.get("fn_name")),
            result=data.get("result", ""),
            error=bool(data.get("error", False)),
            call=ToolCall.from_dict(call) if isinstance(call, dict) else None,
        )


@dataclass
class Image:
    data: str
    type: str = "image/png"

    def __post_init__(self) -> None:
        if self.type not in IMAGE_TYPES:
            raise ValueError(f"Unsupported image type '{self.type}'")


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    cache: bool = False
    type: ClassVar[str] = "text"


@dataclass
class ToolCallBlock:
    tool_call: ToolCall
    cache: bool = False
    type: ClassVar[str] = "tool_call"


@dataclass
class ToolResultBlock:
    tool_result: ToolResult
    cache: bool = False
    type: ClassVar[str] = "tool_result"


@dataclass
class ReasoningBlock:
    reasoning: str
    redacted: bool = False
    signature: Optional[str] = None
    cache: bool = False
    type: ClassVar[str] = "reasoning"


@dataclass
class ImageBlock:
    image: Image
    cache: bool = False
    type: ClassVar[str] = "image"


ContentBlock = Union[TextBlock, ToolCallBlock, ToolResultBlock, ReasoningBlock, ImageBlock]


def block_to_dict(block: ContentBlock) -> Dict[str, Any]:
    data: Dict[str, Any] = {"type": block.type}
    if isinstance(block, TextBlock):
        data["text"] = block.text
    elif isinstance(block, ToolCallBlock):
        data["tool_call"] = block.tool_call.to_dict()
    elif isinstance(block, ToolResultBlock):
        data["tool_result"] = block.tool_result.to_dict()
    elif isinstance(block, ReasoningBlock):
        data["reasoning"] = block.reasoning
        if block.redacted:
            data["redacted"] = True
        if block.signature is not None:
            data["signature"] = block.signature
    elif isinstance(block, ImageBlock):
        data["image"] = {"data": block.image.data, "type": block.image.type}
    else:
        raise TypeError(f"Unknown content block {block!r}")
    if block.cache:
        data["cache"] = True
    return data


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    block_type = data.get("type")
    cache = bool(data.get("cache", False))
    if block_type == "text":
        return TextBlock(text=str(data.get("text", "")), cache=cache)
    if block_type == "tool_call":
        return ToolCallBlock(tool_call=ToolCall.from_dict(data.get("tool_call") or {}), cache=cache)
    if block_type == "tool_result":
        return ToolResultBlock(tool_result=ToolResult.from_dict(data.get("tool_result") or {}), cache=cache)
    if block_type == "reasoning":
        return ReasoningBlock(
            reasoning=str(data.get("reasoning", "")),
            redacted=bool(data.get("redacted", False)),
            signature=data.get("signature"),
            cache=cache,
        )
    if block_type == "image":
        image = data.get("image") or {}
        return ImageBlock(image=Image(data=str(image.get("data", "")), type=image.get("type", "image/png")), cache=cache)
    raise ValueError(f"Unknown content block type '{block_type}'")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class Message:
    """One conversation turn: a role and its ordered content blocks."""

    def __init__(
        self,
        role: str,
        blocks: Optional[List[ContentBlock]] = None,
        *,
        content: Optional[str] = None,
        id: Optional[Union[str, int]] = None,
    ) -> None:
        if role not in ROLES:
            raise ValueError(f"Invalid message role '{role}'")
        if content is not None and blocks is not None:
            raise ValueError("Cannot provide both content and blocks to Message")
        self.id = id
        self.role = role
        if content is not None:
            self.blocks: List[ContentBlock] = [TextBlock(text=content)]
        else:
            self.blocks = list(blocks or [])

    def __repr__(self) -> str:
        return f"Message(role={self.role!r}, blocks={self.blocks!r}, id={self.id!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.role == other.role and self.id == other.id and self.blocks == other.blocks

    # --- block views ------------------------------------------------------
    def get_text(self) -> str:
        return "\n".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def get_tool_calls(self) -> List[ToolCall]:
        return [b.tool_call for b in self.blocks if isinstance(b, ToolCallBlock)]

    def get_tool_results(self) -> List[ToolResult]:
        return [b.tool_result for b in self.blocks if isinstance(b, ToolResultBlock)]

    def get_reasoning(self) -> str:
        return "\n".join(
            b.reasoning for b in self.blocks if isinstance(b, ReasoningBlock) and not b.redacted
        )

    def get_images(self) -> List[Image]:
        return [b.image for b in self.blocks if isinstance(b, ImageBlock)]

    @property
    def content(self) -> str:
        return self.get_text()

    def has_tool_calls(self) -> bool:
        return any(isinstance(b, ToolCallBlock) for b in self.blocks)

    def has_tool_results(self) -> bool:
        return any(isinstance(b, ToolResultBlock) for b in self.blocks)

    def copy(self) -> "Message":
        return Message(self.role, list(self.blocks), id=self.id)

    # --- serialisation ----------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "blocks": [block_to_dict(b) for b in self.blocks]}
        if self.id is not None:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        if "content" in data and "blocks" not in data:
            return cls(data.get("role", "user"), content=str(data.get("content") or ""), id=data.get("id"))
        return cls(
            data.get("role", "user"),
            [block_from_dict(b) for b in data.get("blocks") or []],
            id=data.get("id"),
        )


def user_message(content: Optional[str] = None, *, blocks: Optional[List[ContentBlock]] = None, id=None) -> Message:
    return Message("user", blocks, content=content, id=id)


def assistant_message(content: Optional[str] = None, *, blocks: Optional[List[ContentBlock]] = None, id=None) -> Message:
    return Message("assistant", blocks, content=content, id=id)


def system_message(
    content: Optional[str] = None,
    *,
    blocks: Optional[List[ContentBlock]] = None,
    cache: bool = False,
    id=None,
) -> Message:
    message = Message("system", blocks, content=content, id=id)
    for block in message.blocks:
        block.cache = cache
    return message


# ---------------------------------------------------------------------------
# Completion results
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cache_read_tokens": self.cache_read_tokens,
        }


@dataclass
class Completion:
    """Canonical result of one provider request."""

    message: Message
    provider: str
    model: str
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = "unknown"


@dataclass
class StreamChunk:
    """Emitted after each network chunk while streaming."""

    id: str
    provider: str
    model: str
    delta: Message
    buffer: Message
    stop_reason: Optional[str] = None
    usage: Usage = field(default_factory=Usage)


# ---------------------------------------------------------------------------
# History sanitation
# ---------------------------------------------------------------------------


def _is_tool_call_message(message: Message) -> bool:
    return message.role == "assistant" and message.has_tool_calls()


def _is_tool_result_message(message: Message) -> bool:
    return message.role == "user" and message.has_tool_results()


def _pairs(call_message: Message, result_message: Message) -> bool:
    call_ids = {c.id for c in call_message.get_tool_calls()}
    result_ids = {r.id for r in result_message.get_tool_results()}
    return call_ids == result_ids


def sanitize_messages(messages: List[Message]) -> List[Message]:
    """Drop tool calls and tool results that are not paired with each other.

    Operates on ``messages`` in place and also returns it. A tool-call
    message must be immediately followed by a user message carrying results
    for exactly the same call ids; a tool-result message must be immediately
    preceded by such a call message.
    """
    i = 0
    while i < len(messages):
        current = messages[i]
        if _is_tool_call_message(current):
            if i == len(messages) - 1:
                messages.pop()
                continue
            nxt = messages[i + 1]
            if _is_tool_result_message(nxt) and _pairs(current, nxt):
                i += 1
                continue
            del messages[i]
            continue
        if _is_tool_result_message(current):
            prev = messages[i - 1] if i > 0 else None
            if prev is not None and _is_tool_call_message(prev) and _pairs(prev, current):
                i += 1
                continue
            del messages[i]
            continue
        i += 1
    return messages


__all__ = [
    "ROLES",
    "IMAGE_TYPES",
    "STOP_REASONS",
    "ToolCall",
    "ToolResult",
    "Image",
    "TextBlock",
    "ToolCallBlock",
    "ToolResultBlock",
    "ReasoningBlock",
    "ImageBlock",
    "ContentBlock",
    "block_to_dict",
    "block_from_dict",
    "Message",
    "user_message",
    "assistant_message",
    "system_message",
    "Usage",
    "Completion",
    "StreamChunk",
    "sanitize_messages",
]
