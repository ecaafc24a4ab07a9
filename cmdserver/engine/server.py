"""
Command Server - TCP listener and admission control.

Accepts client connections on a port and wires each one to a
CommandConnection. Two modes are supported:

- MULTI_CLIENT: every accepted client gets its own independent connection.
- SINGLE_CLIENT: at most one connection is active. While the admission slot
  is occupied further clients are refused and closed; the slot is cleared
  when the active connection ends or fails.

Listener status is tracked separately from the status of its connections.
"""
from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set, Type

import structlog

from cmdserver.config import Settings, settings as default_settings
from cmdserver.events import EventSink, default_sink
from cmdserver.exceptions import ListenerError
from cmdserver.engine.command_table import CommandTable
from cmdserver.engine.connection import CommandConnection
from cmdserver.engine.transport import ConnectionTransport, StreamTransport
from cmdserver.models import FramingPolicy, ListenerState, ServerMode, ServerStats

logger = structlog.get_logger()

# Framing used by each mode unless overridden
DEFAULT_FRAMING: Dict[ServerMode, FramingPolicy] = {
    ServerMode.MULTI_CLIENT: FramingPolicy.WHOLE_BUFFER,
    ServerMode.SINGLE_CLIENT: FramingPolicy.LINES,
}


class CommandServer:
    """
    A TCP server dispatching line commands.

    Example usage:
        commands = CommandTable()
        commands.register("PING", 0, lambda args: None)

        server = CommandServer(port=9999, commands=commands)
        await server.serve_forever()
    """

    def __init__(
        self,
        port: Optional[int] = None,
        host: Optional[str] = None,
        mode: Optional[ServerMode] = None,
        commands: Optional[CommandTable] = None,
        connection_class: Type[CommandConnection] = CommandConnection,
        framing: Optional[FramingPolicy] = None,
        settings: Optional[Settings] = None,
        sink: Optional[EventSink] = None,
    ):
        """
        Initialize the server. Nothing is bound until start().

        Args:
            port: Port to listen on (0 picks a free port)
            host: Interface to bind to
            mode: MULTI_CLIENT or SINGLE_CLIENT
            commands: Command table shared by all connections
            connection_class: CommandConnection subclass to create per client
            framing: Message framing; defaults to the mode's framing
            settings: Settings to use instead of the global settings
            sink: Event sink for status and dispatch events
        """
        self.settings = settings or default_settings
        self.port = self.settings.port if port is None else port
        self.host = host or self.settings.host
        self.mode = ServerMode(mode or self.settings.mode)

        framing = framing or self.settings.framing
        self.framing = FramingPolicy(framing) if framing else DEFAULT_FRAMING[self.mode]

        self.commands = commands if commands is not None else CommandTable()
        self.connection_class = connection_class
        self.sink: EventSink = sink or default_sink

        self.state = ListenerState.SETUP
        self.server_status = ""

        # Admission slot (SINGLE_CLIENT). Only touched from the event loop
        # thread, which serialises accepts and connection teardown.
        self.connection: Optional[CommandConnection] = None
        self.connections: Set[CommandConnection] = set()

        self.accepted = 0
        self.rejected = 0

        self._server: Optional[asyncio.AbstractServer] = None
        self._closing: Set[asyncio.Task] = set()
        self.server_state_update(ListenerState.SETUP)

    async def __aenter__(self) -> "CommandServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def listening(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Bind the listening socket."""
        if self._server is not None:
            return

        self.commands.freeze()
        try:
            self._server = await asyncio.start_server(
                self._handle_client, self.host, self.port
            )
        except OSError as e:
            error = ListenerError(
                f"Failed to listen on {self.host}:{self.port}",
                details={"error": str(e)},
            )
            self.server_state_update(ListenerState.FAILED, error)
            raise error from e

        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        self.server_state_update(ListenerState.READY)

    async def serve_forever(self) -> None:
        """Start if needed and serve until cancelled."""
        await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop listening and stop every live connection."""
        server, self._server = self._server, None
        if server is not None:
            server.close()

        connections = list(self.connections)
        for connection in connections:
            connection.stop()
        pending = [connection.wait_closed() for connection in connections]
        pending.extend(self._closing)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if server is not None:
            await server.wait_closed()
            self.server_state_update(ListenerState.CANCELLED)

    def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.accept(StreamTransport(reader, writer))

    def accept(self, transport: ConnectionTransport) -> Optional[CommandConnection]:
        """
        Admit a new client connection.

        Returns the started connection, or None when the admission slot is
        occupied (SINGLE_CLIENT) and the client was refused.
        """
        if self.mode == ServerMode.SINGLE_CLIENT:
            if self.connection is not None:
                self.rejected += 1
                self.sink.emit(
                    "admission_rejected",
                    peer=transport.peer,
                    active_peer=self.connection.peer,
                    reason="Currently only one connection is allowed",
                )
                transport.cancel()
                self._track_closing(transport)
                return None

            connection = self._create_connection(transport)
            self.connection = connection
            host = transport.peer_host
            if host:
                self.server_status = f"Connection from {host} is active"
            connection.add_close_callback(self._release_slot)
        else:
            connection = self._create_connection(transport)

        self.accepted += 1
        self.connections.add(connection)
        connection.add_close_callback(self._forget_connection)
        self.sink.emit(
            "connection_admitted",
            peer=connection.peer,
            mode=self.mode.value,
            framing=self.framing.value,
        )
        connection.start()
        return connection

    def _track_closing(self, transport: ConnectionTransport) -> None:
        task = asyncio.get_running_loop().create_task(transport.wait_closed())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _create_connection(self, transport: ConnectionTransport) -> CommandConnection:
        return self.connection_class(
            transport,
            commands=self.commands,
            framing=self.framing,
            settings=self.settings,
            sink=self.sink,
        )

    def _release_slot(
        self,
        connection: CommandConnection,
        error: Optional[Exception],
    ) -> None:
        if self.connection is not connection:
            return
        self.connection = None
        if error is not None:
            self.server_status = "Connection failed"
        else:
            self.server_status = "Connection ended.  Ready for new connection."
        self.sink.emit(
            "slot_released",
            peer=connection.peer,
            status=self.server_status,
        )

    def _forget_connection(
        self,
        connection: CommandConnection,
        error: Optional[Exception],
    ) -> None:
        self.connections.discard(connection)

    def send_string(self, text: str) -> Optional["asyncio.Task[bool]"]:
        """
        Send a line to the active client (SINGLE_CLIENT).

        Returns None when no client is connected.
        """
        if self.connection is None:
            logger.debug("send_without_connection", port=self.port)
            return None
        return self.connection.send_string(text)

    def server_state_update(
        self,
        state: ListenerState,
        error: Optional[Exception] = None,
    ) -> None:
        """Record a listener state change."""
        self.state = state
        if state == ListenerState.SETUP:
            self.server_status = "Setting up Server"
        elif state == ListenerState.WAITING:
            self.server_status = f"Waiting with status: {error}"
        elif state == ListenerState.READY:
            self.server_status = "Ready for connections"
        elif state == ListenerState.FAILED:
            self.server_status = f"Failed with status: {error}"
        elif state == ListenerState.CANCELLED:
            self.server_status = "Server cancelled"

        self.sink.emit(
            "listener_state",
            host=self.host,
            port=self.port,
            state=state.value,
            status=self.server_status,
        )

    def get_stats(self) -> ServerStats:
        return ServerStats(
            host=self.host,
            port=self.port,
            mode=self.mode,
            framing=self.framing,
            state=self.state,
            status=self.server_status,
            active_connections=len(self.connections),
            accepted=self.accepted,
            rejected=self.rejected,
        )
