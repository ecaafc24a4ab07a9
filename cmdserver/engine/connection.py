"""
Command Connection - state machine for one client connection.

Owns a ConnectionTransport exclusively, tracks its lifecycle and drives the
receive loop:

    receive chunk -> decode -> parse messages -> dispatch each in order
      -> end of stream?   connection_did_end()
      -> error?           connection_did_fail()
      -> otherwise        receive again

A new receive is only issued after every message of the previous chunk has
been dispatched, so handlers of one connection run strictly in arrival
order. Handler failures never end the connection; transport failure, end
of stream and undecodable input do, and only this connection.

Subclasses customise behaviour by overriding build_commands() to register
bound methods, and the unknown_command() / invalid_arguments() hooks.
"""
from __future__ import annotations

import asyncio
import codecs
from datetime import datetime
from typing import Callable, List, Optional, Set

import structlog

from cmdserver.config import Settings, settings as default_settings
from cmdserver.events import EventSink, default_sink
from cmdserver.exceptions import DecodingError, TransportError
from cmdserver.engine.command_table import CommandTable, DispatchResult
from cmdserver.engine.message_parser import Message, MessageParser
from cmdserver.engine.transport import ConnectionTransport
from cmdserver.models import (
    ConnectionState,
    ConnectionStats,
    DispatchOutcome,
    FramingPolicy,
)

logger = structlog.get_logger()

CloseCallback = Callable[["CommandConnection", Optional[Exception]], None]

_STATUS_TEXT = {
    ConnectionState.SETUP: "Setup",
    ConnectionState.PREPARING: "Preparing",
    ConnectionState.READY: "Ready",
    ConnectionState.CANCELLED: "Cancelled",
}


class CommandConnection:
    """
    An individual client connection.

    The command table is normally shared by every connection of a server
    and is only read here. Override build_commands() for a table per
    connection.

    stop() never interrupts a handler that is already running: the receive
    loop finishes the current dispatch, skips the rest of the chunk and
    exits. Handlers are expected to return promptly. Exceptions raised by
    the unknown_command() / invalid_arguments() hooks are logged and
    ignored.
    """

    def __init__(
        self,
        transport: ConnectionTransport,
        commands: Optional[CommandTable] = None,
        framing: FramingPolicy = FramingPolicy.WHOLE_BUFFER,
        settings: Optional[Settings] = None,
        sink: Optional[EventSink] = None,
    ):
        self.settings = settings or default_settings
        self.sink: EventSink = sink or default_sink
        self.transport: Optional[ConnectionTransport] = transport
        self.peer = transport.peer
        self.framing = FramingPolicy(framing)

        self.state = ConnectionState.SETUP
        self.status = _STATUS_TEXT[ConnectionState.SETUP]
        self.last_error: Optional[Exception] = None

        self._shared_commands = commands
        self.commands = self.build_commands()

        self.parser = MessageParser(
            self.framing,
            buffer_partial=self.settings.buffer_partial_lines,
        )
        # multibyte sequences may straddle receive boundaries
        self._decoder = codecs.getincrementaldecoder(self.settings.encoding)()

        self._task: Optional[asyncio.Task] = None
        self._send_tasks: Set[asyncio.Task] = set()
        self._close_callbacks: List[CloseCallback] = []
        self._released_transport: Optional[ConnectionTransport] = None
        self._dispatching = False

        # Statistics
        self.created_at = datetime.utcnow()
        self.bytes_received = 0
        self.bytes_sent = 0
        self.messages_dispatched = 0
        self.unknown_commands = 0
        self.invalid_argument_count = 0
        self.handler_errors = 0

    # ------------------------------------------------------------------
    # Customisation points
    # ------------------------------------------------------------------

    def build_commands(self) -> CommandTable:
        """Return the command table this connection dispatches against."""
        if self._shared_commands is not None:
            return self._shared_commands
        return CommandTable()

    def unknown_command(self, command: str, arguments: List[str]) -> None:
        """Called after an unmatched message has been reported."""
        pass

    def invalid_arguments(self, command: str, arguments: List[str]) -> None:
        """Called after a handler rejected its arguments."""
        pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.transport is not None

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Run callback(connection, error) once when the transport is released."""
        self._close_callbacks.append(callback)

    def start(self) -> None:
        """Start the transport and the receive loop on the running event loop."""
        if self._task is not None or self.transport is None:
            return

        loop = asyncio.get_running_loop()
        self.transport.start(self.connection_state_update)
        if self.transport is None:
            # failed while starting
            self._task = loop.create_task(self._wait_transport_closed())
            return
        self._task = loop.create_task(self.await_commands())

    async def wait_closed(self) -> None:
        """Wait for the receive loop and any pending sends to finish."""
        pending: List[asyncio.Task] = list(self._send_tasks)
        if self._task is not None:
            pending.append(self._task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # the receive task may have been cancelled before it ever ran
        await self._wait_transport_closed()

    def connection_state_update(
        self,
        new_state: ConnectionState,
        error: Optional[Exception] = None,
    ) -> None:
        """Record a transport state change."""
        self.state = new_state
        if new_state == ConnectionState.WAITING:
            self.status = f"Waiting {error}"
        elif new_state == ConnectionState.FAILED:
            self.status = f"Failed {error}"
        else:
            self.status = _STATUS_TEXT[new_state]

        self.sink.emit(
            "connection_state",
            peer=self.peer,
            state=new_state.value,
            status=self.status,
        )

        if new_state in (ConnectionState.WAITING, ConnectionState.FAILED):
            self.connection_did_fail(error or TransportError(self.status))

    def connection_did_fail(self, error: Exception) -> None:
        """The connection failed. Stop everything."""
        self.last_error = error
        self.sink.emit(
            "connection_failed",
            peer=self.peer,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.stop(error)

    def connection_did_end(self) -> None:
        """The peer closed the connection without error."""
        self.sink.emit("connection_ended", peer=self.peer)
        self.stop(None)

    def stop(self, error: Optional[Exception] = None) -> None:
        """
        Release the transport.

        The state handler is cleared before cancelling and the transport
        reference is dropped. Stopping an already stopped connection is a
        no-op.
        """
        transport = self.transport
        if transport is None:
            return

        self.transport = None
        self._released_transport = transport
        transport.clear_state_handler()
        transport.cancel()

        self.state = ConnectionState.CANCELLED
        self.status = _STATUS_TEXT[ConnectionState.CANCELLED]
        self.sink.emit(
            "connection_state",
            peer=self.peer,
            state=self.state.value,
            status=self.status,
        )

        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            # a running handler completes; the loop exits after it returns
            if task is not current and not self._dispatching:
                task.cancel()

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self, error)
            except Exception as e:
                logger.warning(
                    "close_callback_failed",
                    peer=self.peer,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    async def await_commands(self) -> None:
        """Listen for commands and dispatch them until the connection ends."""
        try:
            while self.transport is not None:
                result = await self.transport.receive(
                    self.settings.receive_min_bytes,
                    self.settings.receive_max_bytes,
                )
                self.bytes_received += len(result.data)

                if result.data or result.is_complete:
                    try:
                        text = self._decode(result.data, final=result.is_complete)
                    except DecodingError as e:
                        self.sink.emit(
                            "decoding_error",
                            peer=self.peer,
                            error=str(e),
                            size=len(result.data),
                            preview=result.data[:32].hex(),
                        )
                        self.connection_did_fail(e)
                        return
                    if text:
                        await self.parse_network_data(text)

                if self.transport is None:
                    # stopped while dispatching
                    return

                if result.is_complete:
                    for message in self.parser.flush():
                        await self.dispatch_message(message)
                        if self.transport is None:
                            return
                    self.connection_did_end()
                    return
                elif result.error is not None:
                    self.connection_did_fail(result.error)
                    return
        except Exception as e:
            logger.error(
                "receive_loop_failed",
                peer=self.peer,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.connection_did_fail(e)
        finally:
            await self._wait_transport_closed()

    def _decode(self, data: bytes, final: bool = False) -> str:
        try:
            return self._decoder.decode(data, final)
        except UnicodeDecodeError as e:
            raise DecodingError(
                f"Received data is not valid {self.settings.encoding}",
                details={"error": str(e), "size": len(data)},
            )

    async def _wait_transport_closed(self) -> None:
        transport = self._released_transport
        if transport is not None:
            self._released_transport = None
            await transport.wait_closed()

    async def parse_network_data(self, text: str) -> List[DispatchResult]:
        """Parse a decoded chunk and dispatch its messages in order."""
        results = []
        for message in self.parser.feed(text):
            results.append(await self.dispatch_message(message))
            if self.transport is None:
                break
        return results

    async def dispatch_message(self, message: Message) -> DispatchResult:
        self._dispatching = True
        try:
            result = await self.commands.dispatch(message)
        finally:
            self._dispatching = False
        arguments = list(message.arguments)

        if result.outcome == DispatchOutcome.HANDLED:
            self.messages_dispatched += 1
            self.sink.emit(
                "command_dispatched",
                peer=self.peer,
                command=message.command,
                arguments=arguments,
            )
        elif result.outcome == DispatchOutcome.UNKNOWN_COMMAND:
            self.unknown_commands += 1
            self.sink.emit(
                "unknown_command",
                peer=self.peer,
                command=message.command,
                arg_count=message.arg_count,
                arguments=arguments,
            )
            self._run_hook(self.unknown_command, message.command, arguments)
        elif result.outcome == DispatchOutcome.INVALID_ARGUMENTS:
            self.invalid_argument_count += 1
            self.sink.emit(
                "invalid_arguments",
                peer=self.peer,
                command=message.command,
                arguments=arguments,
                reason=getattr(result.error, "reason", ""),
            )
            self._run_hook(self.invalid_arguments, message.command, arguments)
        else:
            self.handler_errors += 1
            self.sink.emit(
                "handler_error",
                peer=self.peer,
                command=message.command,
                arguments=arguments,
                error=str(result.error),
                error_type=type(result.error).__name__,
            )
        return result

    def _run_hook(
        self,
        hook: Callable[[str, List[str]], None],
        command: str,
        arguments: List[str],
    ) -> None:
        try:
            hook(command, arguments)
        except Exception as e:
            logger.warning(
                "hook_failed",
                peer=self.peer,
                hook=getattr(hook, "__name__", repr(hook)),
                command=command,
                error=str(e),
                error_type=type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_string(self, text: str) -> "asyncio.Task[bool]":
        """
        Send a line to the peer without blocking.

        The line terminator is appended. The returned task resolves to True
        once the data is handed to the transport and to False if the send
        failed; failures are also logged. Callers may ignore it.
        """
        payload = (text + self.settings.line_terminator).encode(self.settings.encoding)
        task = asyncio.get_running_loop().create_task(self._send(payload))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return task

    async def _send(self, payload: bytes) -> bool:
        transport = self.transport
        if transport is None:
            self.sink.emit(
                "send_failed",
                peer=self.peer,
                error="Not connected",
                data_size=len(payload),
            )
            return False

        try:
            await transport.send(payload)
        except TransportError as e:
            self.sink.emit(
                "send_failed",
                peer=self.peer,
                error=str(e),
                error_type=type(e).__name__,
                data_size=len(payload),
            )
            return False

        self.bytes_sent += len(payload)
        return True

    def get_stats(self) -> ConnectionStats:
        return ConnectionStats(
            peer=self.peer,
            state=self.state,
            status=self.status,
            active=self.active,
            created_at=self.created_at,
            bytes_received=self.bytes_received,
            bytes_sent=self.bytes_sent,
            messages_dispatched=self.messages_dispatched,
            unknown_commands=self.unknown_commands,
            invalid_arguments=self.invalid_argument_count,
            handler_errors=self.handler_errors,
        )
