"""
Demo command set served by the command-line entry point.

    PING            -> PONG
    ECHO <text>     -> <text>
    SET <key> <v>   -> OK
    GET <key>       -> <v> or NOT_FOUND
    ADD <a> <b>     -> a + b (integers only)
    HELP            -> list of commands
    QUIT            -> BYE, then the connection closes
"""
from __future__ import annotations

from typing import Dict, List

from cmdserver.exceptions import InvalidArgumentsError
from cmdserver.engine.command_table import CommandTable
from cmdserver.engine.connection import CommandConnection


class DemoConnection(CommandConnection):
    """Connection with a small per-client key/value store."""

    def build_commands(self) -> CommandTable:
        self.values: Dict[str, str] = {}
        return CommandTable([
            ("PING", 0, self.ping),
            ("ECHO", 1, self.echo),
            ("SET", 2, self.set_value),
            ("GET", 1, self.get_value),
            ("ADD", 2, self.add),
            ("HELP", 0, self.help),
            ("QUIT", 0, self.quit),
        ]).freeze()

    def ping(self, args: List[str]) -> None:
        self.send_string("PONG")

    def echo(self, args: List[str]) -> None:
        self.send_string(args[0])

    def set_value(self, args: List[str]) -> None:
        key, value = args
        self.values[key] = value
        self.send_string("OK")

    def get_value(self, args: List[str]) -> None:
        self.send_string(self.values.get(args[0], "NOT_FOUND"))

    def add(self, args: List[str]) -> None:
        try:
            a, b = (int(arg) for arg in args)
        except ValueError:
            raise InvalidArgumentsError(args, "expected two integers", command="ADD")
        self.send_string(str(a + b))

    def help(self, args: List[str]) -> None:
        usage = ", ".join(f"{reg.name}/{reg.arity}" for reg in self.commands)
        self.send_string(f"COMMANDS {usage}")

    async def quit(self, args: List[str]) -> None:
        await self.send_string("BYE")
        self.stop()

    def unknown_command(self, command: str, arguments: List[str]) -> None:
        self.send_string(f"ERR unknown command {command} with {len(arguments)} arguments")

    def invalid_arguments(self, command: str, arguments: List[str]) -> None:
        self.send_string(f"ERR invalid arguments for {command}")
