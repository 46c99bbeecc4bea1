"""Agent turn orchestration.

:class:`MagmaAgent` owns the conversation history and drives one turn from
the latest user message to a final assistant message, running middleware,
provider requests and tool calls along the way.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .cancellation import CancellationManager, RequestContext
from .config import (
    DEFAULT_MAX_TURN_RESTARTS,
    DEFAULT_MESSAGE_CONTEXT,
    PROVIDERS,
    AgentSettings,
    ProviderConfig,
)
from .errors import CatastrophicMiddlewareFailure, MagmaError, ProviderError, RequestAborted, ToolNotFoundError
from .jobs import Job, JobScheduler
from .messages import Completion, ImageBlock, Message, StreamChunk, ToolResult, Usage, sanitize_messages, system_message
from .middleware import (
    ON_COMPLETION,
    ON_MAIN_FINISH,
    ON_TOOL_EXECUTION,
    POST_PROCESS,
    PRE_COMPLETION,
    PRE_TOOL_EXECUTION,
    Middleware,
    MiddlewarePipeline,
    PipelineOutcome,
)
from .providers import CompletionConfig, provider_registry
from .tools import Tool, ToolExecutor
from .trace import TraceEvent, TraceRecorder
from .utilities import Hook, Utilities, combine_utilities

logger = logging.getLogger(__name__)

_CONFIG_OVERRIDES = ("tool_choice", "temperature", "max_tokens", "stream")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class MagmaAgent:
    """Conversational agent bound to one provider configuration.

    Subclasses register behaviour by overriding :meth:`get_tools`,
    :meth:`get_middleware`, :meth:`get_hooks`, :meth:`get_jobs` and
    :meth:`get_system_prompts`, or by passing :class:`Utilities` bundles.
    Event hooks (``on_error``, ``on_stream_chunk``, ``on_usage_update`` ...)
    may be overridden with sync or async methods.
    """

    def __init__(
        self,
        agent_id: Optional[str] = None,
        provider_config: Optional[ProviderConfig] = None,
        *,
        message_context: int = DEFAULT_MESSAGE_CONTEXT,
        stream: bool = False,
        utilities: Optional[Iterable[Utilities]] = None,
        trace_path: Optional[str] = None,
        max_turn_restarts: int = DEFAULT_MAX_TURN_RESTARTS,
    ) -> None:
        self.agent_id = agent_id
        self.message_context = message_context
        self.stream = stream
        self.max_turn_restarts = max_turn_restarts
        self.state: Dict[str, Any] = {}
        self.usage = Usage()

        self.system_prompts: List[Message] = []

        self._messages: List[Message] = []
        self._extra_utilities: List[Utilities] = list(utilities or [])
        self._registered: Optional[Utilities] = None

        self.trace_recorder = TraceRecorder(trace_path)
        self.cancellation = CancellationManager()
        self.pipeline = MiddlewarePipeline(trace=self.trace_recorder)
        self.executor = ToolExecutor(trace=self.trace_recorder)
        self.job_scheduler = JobScheduler()

        self.provider_config: ProviderConfig
        self.set_provider_config(provider_config or ProviderConfig())

        logger.debug("Agent initialized")

    @classmethod
    def from_settings(cls, settings: AgentSettings, *, client: Any = None, **kwargs: Any) -> "MagmaAgent":
        agent = cls(
            agent_id=settings.agent_id,
            provider_config=settings.provider_config(client),
            message_context=settings.message_context,
            stream=settings.stream,
            trace_path=settings.trace_path,
            max_turn_restarts=settings.max_turn_restarts,
            **kwargs,
        )
        agent.system_prompts = [system_message(text) for text in settings.system_prompts]
        return agent

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def get_tools(self) -> List[Tool]:
        return []

    def get_middleware(self) -> List[Middleware]:
        return []

    def get_hooks(self) -> List[Hook]:
        return []

    def get_jobs(self) -> List[Job]:
        return []

    def get_system_prompts(self) -> List[Message]:
        return list(self.system_prompts)

    @property
    def utilities(self) -> Utilities:
        # Resolved once so middleware ids (and their retry counters) stay stable.
        if self._registered is None:
            own = Utilities(
                tools=list(self.get_tools()),
                middleware=list(self.get_middleware()),
                hooks=list(self.get_hooks()),
                jobs=list(self.get_jobs()),
            )
            self._registered = combine_utilities([own, *self._extra_utilities])
        return self._registered

    def refresh_utilities(self) -> None:
        self._registered = None

    def add_utilities(self, utilities: Utilities) -> None:
        self._extra_utilities.append(utilities)
        self.refresh_utilities()

    @property
    def tools(self) -> List[Tool]:
        return self.utilities.tools

    @property
    def middleware(self) -> List[Middleware]:
        return self.utilities.middleware

    @property
    def hooks(self) -> List[Hook]:
        return self.utilities.hooks

    @property
    def jobs(self) -> List[Job]:
        return self.utilities.jobs

    def enabled_tools(self) -> List[Tool]:
        return [tool for tool in self.tools if tool.enabled(self)]

    # ------------------------------------------------------------------
    # Provider configuration
    # ------------------------------------------------------------------
    @staticmethod
    def validate_provider_config(provider_config: ProviderConfig) -> ProviderConfig:
        if provider_config.client is None and not provider_config.provider:
            raise ValueError("Provider client or provider must be defined")
        if provider_config.provider not in PROVIDERS:
            raise ValueError("Invalid provider")
        return provider_config

    def set_provider_config(self, provider_config: ProviderConfig) -> None:
        self.provider_config = self.validate_provider_config(provider_config)

    @property
    def provider_name(self) -> str:
        return str(self.provider_config.provider)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def add_message(self, message: Union[Message, Dict[str, Any]]) -> None:
        if isinstance(message, dict):
            message = Message.from_dict(message)
        if self.provider_name in ("anthropic", "google"):
            for block in message.blocks:
                if isinstance(block, ImageBlock) and block.image.type == "image/url":
                    raise ValueError(f"Image URLs are not supported by {self.provider_name.capitalize()}")
        self._messages.append(message)

    def set_messages(self, messages: Sequence[Message]) -> None:
        self._messages = list(messages)

    def remove_message(self, filter=None) -> None:
        """Remove messages matching ``filter``, or the last message when no filter is given."""
        if filter is not None:
            self._messages = [m for m in self._messages if not filter(m)]
        elif self._messages:
            self._messages.pop()

    def get_messages(self, slice: int = DEFAULT_MESSAGE_CONTEXT) -> List[Message]:
        if slice == -1:
            return list(self._messages)
        messages = self._messages[-slice:] if slice > 0 else []
        if messages and messages[0].role == "user" and messages[0].has_tool_results():
            messages = messages[1:]
        return messages

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def processing(self) -> bool:
        return self.cancellation.processing

    @property
    def trace(self) -> List[TraceEvent]:
        return self.trace_recorder.events

    def kill(self) -> None:
        """Abort every in-flight request; they resolve to ``None``."""
        self.cancellation.kill()

    async def cleanup(self) -> None:
        try:
            await _maybe_await(self.on_cleanup())
        except Exception as exc:
            logger.error("Error during cleanup: %s", exc or "Unknown")
        finally:
            self.kill()
            self._messages = []
            self.pipeline.reset()
            self.trace_recorder.close()
            logger.debug("Agent cleanup complete")

    def schedule_jobs(self, *, verbose: bool = False) -> List[str]:
        return self.job_scheduler.schedule(self.jobs, agent=self, verbose=verbose)

    def cancel_jobs(self) -> None:
        self.job_scheduler.cancel()

    async def run_hook(self, name: str, request: Any) -> Any:
        for hook in self.hooks:
            if hook.name == name:
                return await _maybe_await(hook.handler(request, self))
        raise LookupError(f"No hook registered with name '{name}'")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def main(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        parent_request_ids: Iterable[str] = (),
    ) -> Optional[Message]:
        """Run one turn and return the final assistant message.

        Steps: ``preCompletion`` middleware over the latest user message, the
        provider request, ``onCompletion`` middleware, then the tool loop
        (``preToolExecution`` -> tools -> ``onToolExecution`` -> request
        again) until the model answers without tool calls. ``onMainFinish``
        and ``postProcess`` transform only the returned message.

        Returns ``None`` when the turn was superseded by a newer request or
        killed. Errors go to :meth:`on_error`, which re-raises by default.
        ``config`` may override ``tool_choice``, ``temperature``,
        ``max_tokens``, ``stream`` or swap ``provider_config`` for this call.
        """
        overrides = dict(config or {})
        provider_config = overrides.pop("provider_config", None)
        ctx = self.cancellation.begin(parent_request_ids)
        self.trace_recorder.start("main", ctx.request_id)
        status = "success"
        try:
            if provider_config is None:
                provider_config = self.provider_config
            else:
                self.validate_provider_config(provider_config)
            result = await self._run_turn(ctx, overrides, provider_config)
            if result is None:
                status = "abort"
            return result
        except Exception as exc:
            status = "error"
            await _maybe_await(self.on_error(exc))
            return None
        finally:
            self.cancellation.finish(ctx)
            self.trace_recorder.end("main", ctx.request_id, status)

    async def trigger(
        self,
        name: Optional[str] = None,
        tool: Optional[Tool] = None,
        add_to_conversation: bool = False,
    ) -> Optional[Union[Message, ToolResult]]:
        """Force the model to call one tool.

        With ``add_to_conversation`` false only the :class:`ToolResult` is
        returned and history is untouched. Otherwise the call and its result
        are appended and the turn continues as in :meth:`main`.
        """
        if tool is None:
            tool = next((t for t in self.tools if t.name == name), None)
        if tool is None:
            raise ToolNotFoundError("No tool found to trigger")

        ctx = self.cancellation.begin()
        self.trace_recorder.start("trigger", ctx.request_id, tool_name=tool.name)
        status = "success"
        try:
            result = await self._run_trigger(ctx, tool, add_to_conversation)
            if result is None:
                status = "abort"
            return result
        except Exception as exc:
            status = "error"
            await _maybe_await(self.on_error(exc))
            return None
        finally:
            self.cancellation.finish(ctx)
            self.trace_recorder.end("trigger", ctx.request_id, status)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _run_stage(self, trigger: str, message: Message, ctx: RequestContext) -> Optional[PipelineOutcome]:
        """Run one middleware stage; ``None`` means the request was aborted meanwhile."""
        outcome = await self.pipeline.run(trigger, message, self.middleware, self, request_id=ctx.request_id)
        if ctx.signal.aborted:
            return None
        if outcome is None:
            raise CatastrophicMiddlewareFailure(
                f"Critical {trigger} middleware failed after {self.pipeline.max_retries} attempts",
                trigger=trigger,
            )
        return outcome

    def _rollback_with_error(self, error_text: str) -> None:
        if self._messages and self._messages[-1].role != "user":
            self._messages.pop()
        self._messages.append(system_message(error_text))

    async def _run_turn(
        self,
        ctx: RequestContext,
        overrides: Dict[str, Any],
        provider_config: ProviderConfig,
    ) -> Optional[Message]:
        last = self._messages[-1] if self._messages else None
        if last is not None and last.role == "user":
            outcome = await self._run_stage(PRE_COMPLETION, last, ctx)
            if outcome is None:
                return None
            if outcome.failed:
                self._remove(last)
                return Message("assistant", content=outcome.error_text)
            self._replace(last, outcome.message)
        return await self._completion_loop(ctx, overrides, provider_config)

    def _replace(self, old: Message, new: Message) -> None:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index] is old:
                self._messages[index] = new
                return

    def _remove(self, message: Message) -> None:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index] is message:
                del self._messages[index]
                return

    async def _completion_loop(
        self,
        ctx: RequestContext,
        overrides: Dict[str, Any],
        provider_config: ProviderConfig,
    ) -> Optional[Message]:
        iterations = 0
        while True:
            if ctx.signal.aborted:
                return None
            if iterations > self.max_turn_restarts:
                raise MagmaError(
                    f"Turn exceeded {self.max_turn_restarts} restarts",
                    details={"request_id": ctx.request_id},
                )
            iterations += 1

            completion = await self._request_completion(ctx, overrides, provider_config)
            if completion is None:
                return None
            self._messages.append(completion.message)

            outcome = await self._run_stage(ON_COMPLETION, completion.message, ctx)
            if outcome is None:
                return None
            if outcome.failed:
                self._rollback_with_error(outcome.error_text)
                continue
            message = outcome.message
            self._replace(completion.message, message)

            if message.has_tool_calls():
                results = await self._execute_tool_calls(message, ctx, commit=True)
                if results is None:
                    return None
                self._messages.append(results)
                continue

            final = message
            restart = False
            for trigger in (ON_MAIN_FINISH, POST_PROCESS):
                outcome = await self._run_stage(trigger, final, ctx)
                if outcome is None:
                    return None
                if outcome.failed:
                    self._rollback_with_error(outcome.error_text)
                    restart = True
                    break
                final = outcome.message
            if restart:
                continue
            return final

    async def _execute_tool_calls(
        self,
        message: Message,
        ctx: RequestContext,
        *,
        allowlist: Optional[List[Tool]] = None,
        commit: bool,
    ) -> Optional[Message]:
        """Run the tool stages for ``message``; ``None`` when aborted at any await."""
        outcome = await self._run_stage(PRE_TOOL_EXECUTION, message, ctx)
        if outcome is None:
            return None
        call_message = outcome.message
        if commit:
            self._replace(message, call_message)
        results = await self.executor.execute(
            call_message,
            self.tools,
            self,
            allowlist=allowlist,
            request_id=ctx.request_id,
        )
        if ctx.signal.aborted:
            return None
        outcome = await self._run_stage(ON_TOOL_EXECUTION, results, ctx)
        if outcome is None:
            return None
        return outcome.message

    async def _run_trigger(self, ctx: RequestContext, tool: Tool, add_to_conversation: bool) -> Optional[Union[Message, ToolResult]]:
        completion = await self._request_completion(
            ctx,
            {"tool_choice": tool.name},
            self.provider_config,
            tools=[tool],
        )
        if completion is None:
            return None
        call_message = completion.message
        if not call_message.has_tool_calls():
            raise ProviderError(
                f"Provider did not call the triggered tool {tool.name}()",
                details={"provider": self.provider_name},
            )

        if not add_to_conversation:
            results = await self._execute_tool_calls(call_message, ctx, allowlist=[tool], commit=False)
            if results is None:
                return None
            return results.get_tool_results()[0]

        self._messages.append(call_message)
        results = await self._execute_tool_calls(call_message, ctx, allowlist=[tool], commit=True)
        if results is None:
            return None
        self._messages.append(results)
        return await self.main(parent_request_ids=ctx.lineage)

    async def _request_completion(
        self,
        ctx: RequestContext,
        overrides: Dict[str, Any],
        provider_config: ProviderConfig,
        *,
        tools: Optional[List[Tool]] = None,
    ) -> Optional[Completion]:
        provider_name = str(provider_config.provider)
        provider = provider_registry.create_provider(provider_name)
        messages = [*self.get_system_prompts(), *self.get_messages(self.message_context)]
        sanitize_messages(messages)

        config = CompletionConfig(
            provider_config=provider_config,
            messages=messages,
            tools=tools if tools is not None else self.enabled_tools(),
            temperature=0,
            stream=self.stream,
        )
        for key in _CONFIG_OVERRIDES:
            if key in overrides:
                setattr(config, key, overrides[key])

        self.trace_recorder.start(
            "completion",
            ctx.request_id,
            provider=provider_name,
            model=config.model,
        )
        try:
            completion = await provider.make_completion_request(
                config,
                self._dispatch_stream_chunk if config.stream else None,
                0,
                ctx.signal,
            )
        except RequestAborted:
            logger.info("Request was aborted")
            self.trace_recorder.end("completion", ctx.request_id, "abort")
            return None
        except Exception as exc:
            self.trace_recorder.end("completion", ctx.request_id, "error", error=str(exc))
            raise

        if ctx.signal.aborted:
            # settled after supersession; the result is discarded
            self.trace_recorder.end("completion", ctx.request_id, "abort")
            return None

        self.trace_recorder.end(
            "completion",
            ctx.request_id,
            "success",
            stop_reason=completion.stop_reason,
            usage=completion.usage.to_dict(),
        )
        self.usage = self.usage + completion.usage
        await _maybe_await(self.on_usage_update(completion.usage))
        return completion

    async def _dispatch_stream_chunk(self, chunk: StreamChunk) -> None:
        await _maybe_await(self.on_stream_chunk(chunk))

    # ------------------------------------------------------------------
    # Event hooks
    # ------------------------------------------------------------------
    async def setup(self, opts: Optional[Dict[str, Any]] = None) -> Optional[Message]:
        return None

    async def receive(self, message: Any) -> None:
        return None

    def on_error(self, error: Exception) -> None:
        raise error

    def on_stream_chunk(self, chunk: Optional[StreamChunk]) -> None:
        return None

    def on_usage_update(self, usage: Usage) -> None:
        return None

    def on_cleanup(self) -> None:
        return None

    def on_connect(self) -> None:
        return None

    def on_disconnect(self) -> None:
        return None

    def on_audio_chunk(self, chunk: bytes) -> None:
        return None

    def on_audio_commit(self) -> None:
        return None

    def on_abort(self) -> None:
        return None


__all__ = ["MagmaAgent"]
