"""Magma agent: provider-agnostic completion orchestration with tools and middleware."""

from .agent import MagmaAgent
from .cancellation import AbortSignal, CancellationManager, RequestContext, run_cancellable
from .config import AgentSettings, ProviderConfig, load_agent_settings
from .errors import (
    CatastrophicMiddlewareFailure,
    ConfigError,
    MagmaError,
    MiddlewareError,
    ProviderError,
    RateLimitExhausted,
    RequestAborted,
    SchemaError,
    ToolExecutionError,
    ToolNotFoundError,
)
from .jobs import Job, JobScheduler
from .logging_utils import configure_logging
from .messages import (
    Completion,
    Image,
    ImageBlock,
    Message,
    ReasoningBlock,
    StreamChunk,
    TextBlock,
    ToolCall,
    ToolCallBlock,
    ToolResult,
    ToolResultBlock,
    Usage,
    assistant_message,
    sanitize_messages,
    system_message,
    user_message,
)
from .middleware import Middleware, MiddlewarePipeline
from .providers import CompletionConfig, Provider, provider_registry
from .realtime import Envelope, EnvelopeType, dispatch_envelope
from .tools import Tool, ToolExecutor, ToolParam, clean_param
from .trace import TraceAnalyzer, TraceEvent, TraceRecorder
from .utilities import Hook, Utilities, combine_utilities

__version__ = "0.1.0"

__all__ = [
    "MagmaAgent",
    "AbortSignal",
    "CancellationManager",
    "RequestContext",
    "run_cancellable",
    "AgentSettings",
    "ProviderConfig",
    "load_agent_settings",
    "CatastrophicMiddlewareFailure",
    "ConfigError",
    "MagmaError",
    "MiddlewareError",
    "ProviderError",
    "RateLimitExhausted",
    "RequestAborted",
    "SchemaError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "Job",
    "JobScheduler",
    "configure_logging",
    "Completion",
    "Image",
    "ImageBlock",
    "Message",
    "ReasoningBlock",
    "StreamChunk",
    "TextBlock",
    "ToolCall",
    "ToolCallBlock",
    "ToolResult",
    "ToolResultBlock",
    "Usage",
    "assistant_message",
    "sanitize_messages",
    "system_message",
    "user_message",
    "Middleware",
    "MiddlewarePipeline",
    "CompletionConfig",
    "Provider",
    "provider_registry",
    "Envelope",
    "EnvelopeType",
    "dispatch_envelope",
    "Tool",
    "ToolExecutor",
    "ToolParam",
    "clean_param",
    "TraceAnalyzer",
    "TraceEvent",
    "TraceRecorder",
    "Hook",
    "Utilities",
    "combine_utilities",
]
