"""
Structured event emission for servers and connections.

Every state transition and dispatch outcome is emitted as a named event with
keyword fields. The default sink forwards events to structlog; embedders and
tests can inject their own sink to observe the same events without parsing
log text.

Example:
    sink = MemoryEventSink()
    server = CommandServer(port=0, commands=table, sink=sink)
    ...
    assert sink.names() == ["listener_state", "listener_state", ...]
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog

logger = structlog.get_logger()

# Events not listed here are logged at info level
EVENT_LEVELS: Dict[str, str] = {
    "command_dispatched": "debug",
    "unknown_command": "warning",
    "invalid_arguments": "warning",
    "handler_error": "warning",
    "admission_rejected": "warning",
    "send_failed": "warning",
    "decoding_error": "error",
    "connection_failed": "error",
}


class EventSink(Protocol):
    """Receiver of structured server events."""

    def emit(self, event: str, **fields: Any) -> None:
        ...


class StructlogEventSink:
    """Logs every event through structlog."""

    def __init__(self, log: Optional[Any] = None, levels: Optional[Dict[str, str]] = None):
        self._log = log or logger
        self._levels = dict(EVENT_LEVELS)
        if levels:
            self._levels.update(levels)

    def emit(self, event: str, **fields: Any) -> None:
        level = self._levels.get(event, "info")
        getattr(self._log, level)(event, **fields)


class MemoryEventSink:
    """Keeps emitted events in memory, optionally forwarding them."""

    def __init__(self, forward: Optional[EventSink] = None):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self._forward = forward

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))
        if self._forward is not None:
            self._forward.emit(event, **fields)

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> List[Dict[str, Any]]:
        """Fields of every recorded event with the given name."""
        return [fields for name, fields in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


default_sink = StructlogEventSink()
