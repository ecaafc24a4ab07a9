"""
Core data models
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ConnectionState(str, Enum):
    """Transport connection state"""

    SETUP = "setup"
    PREPARING = "preparing"
    READY = "ready"
    WAITING = "waiting"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ListenerState(str, Enum):
    """Listening socket state"""

    SETUP = "setup"
    WAITING = "waiting"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ServerMode(str, Enum):
    """How many clients a server services at once"""

    MULTI_CLIENT = "multi"
    SINGLE_CLIENT = "single"


class FramingPolicy(str, Enum):
    """How a received chunk is split into messages"""

    WHOLE_BUFFER = "whole_buffer"  # one message per chunk
    LINES = "lines"  # one message per line


class DispatchOutcome(str, Enum):
    """Result of matching a message against the command table"""

    HANDLED = "handled"
    UNKNOWN_COMMAND = "unknown_command"
    INVALID_ARGUMENTS = "invalid_arguments"
    HANDLER_ERROR = "handler_error"


class ConnectionStats(BaseModel):
    """Snapshot of one client connection"""

    peer: Optional[str] = None
    state: ConnectionState
    status: str
    active: bool
    created_at: datetime = Field(default_factory=datetime.utcnow)
    bytes_received: int = 0
    bytes_sent: int = 0
    messages_dispatched: int = 0
    unknown_commands: int = 0
    invalid_arguments: int = 0
    handler_errors: int = 0


class ServerStats(BaseModel):
    """Snapshot of a listening server"""

    host: str
    port: int
    mode: ServerMode
    framing: FramingPolicy
    state: ListenerState
    status: str
    active_connections: int = 0
    accepted: int = 0
    rejected: int = 0
