"""
Message Parser - splits received text into commands and arguments.

Two framing policies are supported and must be chosen explicitly:

- WHOLE_BUFFER: a received chunk is one message. The first token is the
  command and every other token, across embedded newlines, is an argument.
- LINES: the chunk is split on newlines and each line is its own message.

Tokens are separated by any whitespace. Empty tokens are dropped, so
repeated delimiters never produce empty arguments or empty command names.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from cmdserver.models import FramingPolicy


@dataclass(frozen=True)
class Message:
    """One parsed command line."""

    command: str
    arguments: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def arg_count(self) -> int:
        return len(self.arguments)


def tokenize(text: str) -> List[str]:
    """Split on whitespace and newlines, discarding empty tokens."""
    return text.split()


def parse_message(text: str) -> Message | None:
    """Parse a single message; None when the text holds no tokens."""
    tokens = tokenize(text)
    if not tokens:
        return None
    return Message(tokens[0], tuple(tokens[1:]))


def parse_messages(text: str, policy: FramingPolicy) -> List[Message]:
    """Parse a complete buffer under the given framing policy."""
    if policy == FramingPolicy.WHOLE_BUFFER:
        message = parse_message(text)
        return [message] if message is not None else []

    messages = []
    for line in text.splitlines():
        message = parse_message(line)
        if message is not None:
            messages.append(message)
    return messages


class MessageParser:
    """
    Stateful parser for one connection.

    Without buffering every chunk is parsed on its own. With
    buffer_partial enabled (LINES policy only) a trailing line that has not
    been terminated yet is held back and prefixed to the next chunk, so a
    command split across two receives is parsed once, whole. flush()
    releases whatever is still held when the stream ends.
    """

    def __init__(self, policy: FramingPolicy, buffer_partial: bool = False):
        self.policy = FramingPolicy(policy)
        self.buffer_partial = buffer_partial and self.policy == FramingPolicy.LINES
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, text: str) -> List[Message]:
        if not self.buffer_partial:
            return parse_messages(text, self.policy)

        text = self._pending + text
        lines = text.splitlines(keepends=True)
        if lines and lines[-1] == lines[-1].splitlines()[0]:
            # last line has no terminator yet
            self._pending = lines.pop()
        else:
            self._pending = ""
        return parse_messages("".join(lines), self.policy)

    def flush(self) -> List[Message]:
        text, self._pending = self._pending, ""
        if not text:
            return []
        return parse_messages(text, self.policy)
