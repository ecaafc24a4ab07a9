"""
Transport Abstraction Layer

Provides the byte-stream interface a CommandConnection drives: state
notifications, bounded receives, sends and cancellation. StreamTransport
implements it on top of the asyncio streams handed out by
asyncio.start_server; tests can substitute an in-memory transport.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from cmdserver.exceptions import ReceiveError, SendError, TransportError
from cmdserver.models import ConnectionState

logger = structlog.get_logger()

StateHandler = Callable[[ConnectionState, Optional[Exception]], None]


@dataclass
class ReceiveResult:
    """Completion of one receive call."""

    data: bytes = b""
    is_complete: bool = False  # peer closed its side
    error: Optional[Exception] = None


class ConnectionTransport(ABC):
    """
    Abstract base class for a connected byte stream.

    State changes are pushed to the handler installed by start(). receive()
    never raises for network failures; they are returned in
    ReceiveResult.error so the caller decides how to tear down.
    """

    def __init__(self) -> None:
        self._state = ConnectionState.SETUP
        self._state_error: Optional[Exception] = None
        self._state_handler: Optional[StateHandler] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def peer(self) -> Optional[str]:
        """Remote "host:port", when known."""
        return None

    @property
    def peer_host(self) -> Optional[str]:
        peer = self.peer
        if peer is None:
            return None
        return peer.rsplit(":", 1)[0]

    def start(self, state_handler: Optional[StateHandler] = None) -> None:
        """Install the state handler and bring the transport up."""
        self._state_handler = state_handler
        self._set_state(ConnectionState.PREPARING)
        self._set_state(ConnectionState.READY)

    def clear_state_handler(self) -> None:
        self._state_handler = None

    def _set_state(self, state: ConnectionState, error: Optional[Exception] = None) -> None:
        self._state = state
        self._state_error = error
        handler = self._state_handler
        if handler is not None:
            handler(state, error)

    @abstractmethod
    async def receive(self, minimum: int = 1, maximum: int = 512) -> ReceiveResult:
        """
        Receive between minimum and maximum bytes.

        Returns fewer than minimum bytes only together with is_complete
        or an error.
        """
        pass

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Send data to the peer.

        Raises:
            SendError: On communication failures
        """
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Close the stream. Calling cancel() again is a no-op."""
        pass

    async def wait_closed(self) -> None:
        """Wait until the underlying stream is fully closed."""
        return None


class StreamTransport(ConnectionTransport):
    """
    TCP stream transport over an asyncio reader/writer pair.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        super().__init__()
        self._reader: Optional[asyncio.StreamReader] = reader
        self._writer: Optional[asyncio.StreamWriter] = writer
        self._closing_writer: Optional[asyncio.StreamWriter] = None

        peername = writer.get_extra_info("peername")
        if peername:
            self._peer: Optional[str] = f"{peername[0]}:{peername[1]}"
        else:
            self._peer = None

    @property
    def peer(self) -> Optional[str]:
        return self._peer

    def start(self, state_handler: Optional[StateHandler] = None) -> None:
        self._state_handler = state_handler
        self._set_state(ConnectionState.PREPARING)
        if self._writer is None or self._writer.is_closing():
            self._set_state(
                ConnectionState.FAILED,
                TransportError("Stream closed before start"),
            )
            return
        self._set_state(ConnectionState.READY)

    async def receive(self, minimum: int = 1, maximum: int = 512) -> ReceiveResult:
        if self._reader is None:
            return ReceiveResult(error=ReceiveError("Transport cancelled"))

        chunks: list[bytes] = []
        total = 0
        try:
            while True:
                chunk = await self._reader.read(maximum - total)
                if not chunk:
                    # Connection closed by peer
                    return ReceiveResult(b"".join(chunks), is_complete=True)
                chunks.append(chunk)
                total += len(chunk)
                if total >= minimum or total >= maximum:
                    return ReceiveResult(b"".join(chunks))
        except OSError as e:
            error = ReceiveError(
                f"Failed to receive data from {self._peer}",
                details={"error": str(e)},
            )
            self._set_state(ConnectionState.FAILED, error)
            return ReceiveResult(b"".join(chunks), error=error)

    async def send(self, data: bytes) -> None:
        if self._writer is None or self._writer.is_closing():
            raise SendError("Not connected", details={"peer": self._peer})

        try:
            self._writer.write(data)
            await self._writer.drain()
        except Exception as e:
            raise SendError(
                f"Failed to send data to {self._peer}",
                details={"error": str(e), "data_size": len(data)},
            )

    def cancel(self) -> None:
        if self._writer is None:
            return

        writer = self._writer
        self._writer = None
        self._reader = None
        self._closing_writer = writer
        try:
            writer.close()
        except Exception as e:
            logger.warning(
                "stream_close_failed",
                peer=self._peer,
                error=str(e),
                error_type=type(e).__name__,
            )
        self._set_state(ConnectionState.CANCELLED)
        self._state_handler = None

    async def wait_closed(self) -> None:
        writer = self._closing_writer
        if writer is None:
            return
        self._closing_writer = None
        try:
            await writer.wait_closed()
        except Exception as e:
            logger.debug(
                "stream_wait_closed_failed",
                peer=self._peer,
                error=str(e),
                error_type=type(e).__name__,
            )
