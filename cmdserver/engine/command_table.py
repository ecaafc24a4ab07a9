"""
Command Table - registration and dispatch of line commands.

A command is identified by its name together with its arity (the exact
number of positional arguments). Lookup is exact on both; there is no
variadic matching. Registering the same (name, arity) twice fails at setup
time so dispatch is never ambiguous.

Example usage:
    commands = CommandTable()

    @commands.command("SET", 2)
    def set_value(args):
        key, value = args
        ...

    commands.register("PING", 0, lambda args: None)
    commands.freeze()

    result = await commands.dispatch(Message("SET", ("x", "5")))
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from cmdserver.exceptions import (
    ConfigurationError,
    DuplicateCommandError,
    InvalidArgumentsError,
    TableFrozenError,
    UnknownCommandError,
)
from cmdserver.engine.message_parser import Message
from cmdserver.models import DispatchOutcome

# Handlers take the ordered argument list; they may be plain functions or
# coroutine functions.
Handler = Callable[[List[str]], Any]


@dataclass(frozen=True)
class CommandRegistration:
    """A command name, its arity and the handler to call."""

    name: str
    arity: int
    handler: Handler


@dataclass
class DispatchResult:
    """What happened to one message."""

    outcome: DispatchOutcome
    message: Message
    error: Optional[BaseException] = None

    @property
    def handled(self) -> bool:
        return self.outcome == DispatchOutcome.HANDLED


class CommandTable:
    """Ordered set of command registrations."""

    def __init__(self, registrations: Optional[List[Tuple[str, int, Handler]]] = None):
        self._registrations: Dict[Tuple[str, int], CommandRegistration] = {}
        self._frozen = False
        for name, arity, handler in registrations or []:
            self.register(name, arity, handler)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, name: str, arity: int, handler: Handler) -> CommandRegistration:
        """
        Add a command.

        Raises:
            TableFrozenError: The table is already in use by a server
            DuplicateCommandError: (name, arity) is already registered
            ConfigurationError: Malformed name, arity or handler
        """
        if self._frozen:
            raise TableFrozenError(
                f"Cannot register {name!r}: command table is frozen",
                details={"name": name, "arity": arity},
            )
        if not isinstance(name, str) or not name or name.split() != [name]:
            raise ConfigurationError(
                f"Command name must be a single non-empty token, got {name!r}",
                details={"name": name},
            )
        if isinstance(arity, bool) or not isinstance(arity, int) or arity < 0:
            raise ConfigurationError(
                f"Arity of {name!r} must be a non-negative integer, got {arity!r}",
                details={"name": name, "arity": arity},
            )
        if not callable(handler):
            raise ConfigurationError(
                f"Handler for {name!r} is not callable",
                details={"name": name, "arity": arity},
            )

        key = (name, arity)
        if key in self._registrations:
            raise DuplicateCommandError(name, arity)

        registration = CommandRegistration(name, arity, handler)
        self._registrations[key] = registration
        return registration

    def command(self, name: str, arity: int) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""
        def decorator(handler: Handler) -> Handler:
            self.register(name, arity, handler)
            return handler
        return decorator

    def freeze(self) -> "CommandTable":
        self._frozen = True
        return self

    def match(self, name: str, arg_count: int) -> Optional[CommandRegistration]:
        return self._registrations.get((name, arg_count))

    def names(self) -> List[str]:
        """Distinct command names in registration order."""
        return list(dict.fromkeys(reg.name for reg in self))

    def __iter__(self) -> Iterator[CommandRegistration]:
        return iter(self._registrations.values())

    def __len__(self) -> int:
        return len(self._registrations)

    def __contains__(self, key: object) -> bool:
        return key in self._registrations

    async def dispatch(self, message: Message) -> DispatchResult:
        """
        Invoke the handler registered for a message.

        The handler runs to completion (awaited when it returns an
        awaitable) before dispatch returns. Handler failures are reported
        in the result rather than raised.
        """
        registration = self.match(message.command, message.arg_count)
        if registration is None:
            return DispatchResult(
                DispatchOutcome.UNKNOWN_COMMAND,
                message,
                UnknownCommandError(message.command, message.arguments),
            )

        arguments = list(message.arguments)
        try:
            outcome = registration.handler(arguments)
            if inspect.isawaitable(outcome):
                await outcome
        except InvalidArgumentsError as e:
            if e.command is None:
                e.command = message.command
            return DispatchResult(DispatchOutcome.INVALID_ARGUMENTS, message, e)
        except Exception as e:
            return DispatchResult(DispatchOutcome.HANDLER_ERROR, message, e)

        return DispatchResult(DispatchOutcome.HANDLED, message)
