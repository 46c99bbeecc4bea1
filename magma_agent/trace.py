"""Side-channel trace events emitted while an agent turn runs."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

logger = logging.getLogger(__name__)

TRACE_TYPES = ("trigger", "main", "completion", "middleware", "tool_execution")
TRACE_PHASES = ("start", "end")
TRACE_STATUSES = ("success", "error", "abort")


@dataclass
class TraceEvent:
    type: str
    phase: str
    request_id: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "phase": self.phase,
            "requestId": self.request_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass
class TraceSpan:
    type: str
    start_event: TraceEvent
    end_event: TraceEvent

    @property
    def duration(self) -> float:
        return self.end_event.timestamp - self.start_event.timestamp


class TraceRecorder:
    """Collects trace events in memory and optionally appends them to a JSONL file."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.events: List[TraceEvent] = []
        self.path = path or os.environ.get("MAGMA_TRACE_PATH")
        self._sink: Optional[TextIO] = None
        if self.path:
            trace_file = Path(self.path)
            trace_file.parent.mkdir(parents=True, exist_ok=True)
            self._sink = trace_file.open("a", encoding="utf-8")
            logger.debug("Writing trace events to %s", trace_file)

    @property
    def closed(self) -> bool:
        return self._sink is None

    def record(
        self,
        type: str,
        phase: str,
        request_id: str,
        *,
        status: Optional[str] = None,
        **data: Any,
    ) -> TraceEvent:
        event = TraceEvent(
            type=type,
            phase=phase,
            request_id=request_id,
            timestamp=time.time() * 1000,
            data=data,
            status=status,
        )
        self.events.append(event)
        self._write(event)
        return event

    def start(self, type: str, request_id: str, **data: Any) -> TraceEvent:
        return self.record(type, "start", request_id, **data)

    def end(self, type: str, request_id: str, status: str, **data: Any) -> TraceEvent:
        return self.record(type, "end", request_id, status=status, **data)

    def _write(self, event: TraceEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink.write(json.dumps(event.to_dict(), separators=(",", ":"), default=str) + "\n")
            self._sink.flush()
        except (OSError, ValueError) as exc:
            logger.debug("Dropping trace event for %s: %s", event.request_id, exc)

    def clear(self) -> None:
        self.events.clear()

    def close(self) -> None:
        """Close the JSONL sink; later events are kept in memory only."""
        sink, self._sink = self._sink, None
        if sink is not None:
            try:
                sink.close()
            except OSError as exc:
                logger.debug("Failed to close trace file %s: %s", self.path, exc)


class TraceAnalyzer:
    """Pairs start/end events into spans and summarises them."""

    def __init__(self, events: List[TraceEvent]) -> None:
        self.events = list(events)

    def _create_spans(self, event_type: str) -> List[TraceSpan]:
        spans: List[TraceSpan] = []
        open_events: Dict[str, List[TraceEvent]] = {}
        for event in self.events:
            if event.type != event_type:
                continue
            key = f"{event.request_id}-{event.type}-{event.data.get('span', '')}"
            if event.phase == "start":
                open_events.setdefault(key, []).append(event)
            elif event.phase == "end":
                pending = open_events.get(key)
                if pending:
                    spans.append(TraceSpan(type=event_type, start_event=pending.pop(), end_event=event))
        return spans

    def get_middleware_executions(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": span.start_event.data.get("middleware"),
                "duration": span.duration,
                "status": span.end_event.status,
                "request_id": span.start_event.request_id,
                "start_time": span.start_event.timestamp,
                "end_time": span.end_event.timestamp,
                "payload": span.start_event.data.get("payload"),
                "result": span.end_event.data.get("result"),
                "error": span.end_event.data.get("error"),
            }
            for span in self._create_spans("middleware")
        ]

    def get_tool_executions(self) -> List[Dict[str, Any]]:
        return [
            {
                "tool_name": span.start_event.data.get("tool_name"),
                "duration": span.duration,
                "status": span.end_event.status,
                "request_id": span.start_event.request_id,
                "start_time": span.start_event.timestamp,
                "end_time": span.end_event.timestamp,
                "args": span.start_event.data.get("args"),
                "result": span.end_event.data.get("result"),
                "error": span.end_event.data.get("error"),
                "tool_call_id": span.start_event.data.get("tool_call_id"),
            }
            for span in self._create_spans("tool_execution")
        ]

    def get_events_by_request_id(self, request_id: str) -> List[TraceEvent]:
        return [e for e in self.events if e.request_id == request_id]

    def get_event_flow(self) -> List[Dict[str, Any]]:
        return [
            {
                "timestamp": event.timestamp,
                "type": event.type,
                "phase": event.phase,
                "request_id": event.request_id,
                "details": self._event_details(event),
            }
            for event in sorted(self.events, key=lambda e: e.timestamp)
        ]

    def _event_details(self, event: TraceEvent) -> str:
        if event.type in ("completion", "main", "trigger"):
            label = event.type.capitalize()
            if event.phase == "start":
                return f"{label} started"
            return f"{label} ended with status: {event.status}"
        if event.type == "tool_execution":
            name = event.data.get("tool_name")
            if event.phase == "start":
                return f"Tool execution started: {name}"
            return f"Tool execution ended: {name} ({event.status})"
        if event.type == "middleware":
            name = event.data.get("middleware")
            if event.phase == "start":
                return f"Middleware started: {name}"
            return f"Middleware ended: {name} ({event.status})"
        return f"{event.type} {event.phase}"


__all__ = [
    "TRACE_TYPES",
    "TRACE_PHASES",
    "TRACE_STATUSES",
    "TraceEvent",
    "TraceSpan",
    "TraceRecorder",
    "TraceAnalyzer",
]
