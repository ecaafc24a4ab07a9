"""
Custom Exception Hierarchy for the command server

Provides structured exceptions for configuration, protocol and transport
failures. All custom exceptions inherit from CommandServerError.
"""
from typing import List, Optional, Sequence


class CommandServerError(Exception):
    """
    Base exception for all command-server errors.

    All custom exceptions should inherit from this class to allow
    catching every server error with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration Errors

class ConfigurationError(CommandServerError):
    """
    Invalid configuration or command registration.

    Raised at setup time, before any connection starts receiving.
    """
    pass


class DuplicateCommandError(ConfigurationError):
    """Two registrations share the same (name, arity) pair."""
    def __init__(self, name: str, arity: int):
        super().__init__(
            f"Command {name!r} with {arity} arguments is already registered",
            {"name": name, "arity": arity},
        )
        self.name = name
        self.arity = arity


class TableFrozenError(ConfigurationError):
    """Registration attempted after the command table was frozen."""
    pass


# Protocol Errors

class ProtocolError(CommandServerError):
    """
    Errors in the line protocol spoken by clients.

    Recovered locally; the connection keeps running.
    """
    pass


class UnknownCommandError(ProtocolError):
    """No registration matches the command name and argument count."""
    def __init__(self, command: str, arguments: Sequence[str]):
        super().__init__(
            f"Unknown command {command!r} with {len(arguments)} arguments",
            {"command": command, "arguments": list(arguments)},
        )
        self.command = command
        self.arguments: List[str] = list(arguments)


class InvalidArgumentsError(ProtocolError):
    """
    A handler rejected the values of its arguments.

    Raised by command handlers; the dispatcher reports it as a warning.
    """
    def __init__(self, arguments: Sequence[str], reason: str = "", command: Optional[str] = None):
        message = f"Invalid arguments {list(arguments)}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"command": command, "arguments": list(arguments)})
        self.arguments: List[str] = list(arguments)
        self.reason = reason
        self.command = command


class DecodingError(ProtocolError):
    """Received bytes are not valid text in the configured encoding."""
    pass


# Network and Transport Errors

class TransportError(CommandServerError):
    """
    Network transport failures.

    Fatal to the connection that raised them, never to the server.
    """
    pass


class SendError(TransportError):
    """Failed to send data to the peer."""
    pass


class ReceiveError(TransportError):
    """Failed to receive data from the peer."""
    pass


class ListenerError(TransportError):
    """The listening socket could not be set up."""
    pass
