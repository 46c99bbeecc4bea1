"""JSON envelopes exchanged with a realtime client and their routing onto an agent."""

from __future__ import annotations

import base64
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import MagmaError
from .messages import Message, StreamChunk, Usage

logger = logging.getLogger(__name__)


class EnvelopeType(str, Enum):
    MESSAGE = "message"
    AUDIO_CHUNK = "audio.chunk"
    AUDIO_COMMIT = "audio.commit"
    CONFIG = "config"
    ABORT = "abort"
    USAGE = "usage"
    ERROR = "error"
    STREAM_CHUNK = "stream.chunk"


@dataclass
class Envelope:
    type: EnvelopeType
    data: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({"type": self.type.value, "data": self.data})

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Envelope":
        try:
            doc = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed envelope: {e}") from e
        if not isinstance(doc, dict) or "type" not in doc:
            raise ValueError("Malformed envelope: expected an object with a 'type' field")
        try:
            kind = EnvelopeType(doc["type"])
        except ValueError as e:
            raise ValueError(f"Unknown envelope type '{doc['type']}'") from e
        data = doc.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Malformed envelope: 'data' must be an object")
        return cls(type=kind, data=data)

    # --- constructors -----------------------------------------------------
    @classmethod
    def audio_chunk(cls, chunk: Union[bytes, str]) -> "Envelope":
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        return cls(EnvelopeType.AUDIO_CHUNK, {"audio": base64.b64encode(chunk).decode("ascii")})

    @classmethod
    def commit(cls) -> "Envelope":
        return cls(EnvelopeType.AUDIO_COMMIT)

    @classmethod
    def abort(cls) -> "Envelope":
        return cls(EnvelopeType.ABORT)

    @classmethod
    def message(cls, message: Message) -> "Envelope":
        return cls(EnvelopeType.MESSAGE, message.to_dict())

    @classmethod
    def config(cls, **settings: Any) -> "Envelope":
        return cls(EnvelopeType.CONFIG, dict(settings))

    @classmethod
    def usage(cls, usage: Usage) -> "Envelope":
        return cls(EnvelopeType.USAGE, usage.to_dict())

    @classmethod
    def error(cls, message: str) -> "Envelope":
        return cls(EnvelopeType.ERROR, {"message": message})


def _stream_chunk_from_dict(data: Dict[str, Any]) -> StreamChunk:
    return StreamChunk(
        id=str(data.get("id", "")),
        provider=str(data.get("provider", "")),
        model=str(data.get("model", "")),
        delta=Message.from_dict(data.get("delta") or {"role": "assistant", "blocks": []}),
        buffer=Message.from_dict(data.get("buffer") or {"role": "assistant", "blocks": []}),
        stop_reason=data.get("stop_reason"),
        usage=Usage(**(data.get("usage") or {})),
    )


async def _call(hook: Any, *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        return await result
    return result


async def dispatch_envelope(agent: Any, envelope: Envelope) -> Optional[Message]:
    """Route an inbound envelope to the matching agent hook.

    Tool-call messages are executed and the tool-result message is returned;
    any other message is appended to history. ``config`` payloads are merged
    into ``agent.state["realtime_config"]``.
    """
    kind = envelope.type
    data = envelope.data

    if kind is EnvelopeType.MESSAGE:
        message = Message.from_dict(data)
        if message.role == "assistant" and message.has_tool_calls():
            return await agent.executor.execute(message, agent.tools, agent)
        agent.add_message(message)
        return None

    if kind is EnvelopeType.AUDIO_CHUNK:
        try:
            chunk = base64.b64decode(data.get("audio", ""), validate=True)
        except ValueError as e:
            raise ValueError(f"Invalid audio payload: {e}") from e
        await _call(agent.on_audio_chunk, chunk)
    elif kind is EnvelopeType.AUDIO_COMMIT:
        await _call(agent.on_audio_commit)
    elif kind is EnvelopeType.ABORT:
        agent.kill()
        await _call(agent.on_abort)
    elif kind is EnvelopeType.STREAM_CHUNK:
        await _call(agent.on_stream_chunk, _stream_chunk_from_dict(data))
    elif kind is EnvelopeType.USAGE:
        await _call(agent.on_usage_update, Usage(**data))
    elif kind is EnvelopeType.ERROR:
        await _call(agent.on_error, MagmaError(str(data.get("message") or "Unknown error"), details=data))
    elif kind is EnvelopeType.CONFIG:
        agent.state.setdefault("realtime_config", {}).update(data)
    else:  # pragma: no cover - enum is exhaustive
        logger.warning("Unhandled envelope type %s", kind)
    return None


__all__ = ["EnvelopeType", "Envelope", "dispatch_envelope"]
