"""
Base Channel

Contract shared by the physical (serial) and virtual channels, plus the
framing and acknowledgment rules of the wire protocol:

- one command per line, terminated by a single line terminator;
- a reply is acknowledged when its last non-empty line is exactly ``ok``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from fabbot.core.errors import CommandValidationError
from fabbot.core.logging_utils import LoggerLike, ensure_component_logger

DEFAULT_LINE_TERMINATOR = "\n"
ACK_TOKEN = "ok"


def expand_code(code: str, terminator: str = DEFAULT_LINE_TERMINATOR) -> str:
    """Frame a raw command for the wire: the text plus one terminator."""
    return f"{code}{terminator}"


def reply_lines(reply: Optional[str]) -> list[str]:
    """Split a reply into non-empty lines, tolerating DOS line endings."""
    if not reply:
        return []
    return [segment.rstrip("\r") for segment in reply.split("\n") if segment.rstrip("\r")]


def validate_reply(command: object, reply: Optional[str]) -> bool:
    """True when the last line of ``reply`` is exactly ``ok``."""
    lines = reply_lines(reply)
    return bool(lines) and lines[-1] == ACK_TOKEN


def is_reply_complete(line: str) -> bool:
    """Whether a received line terminates the reply to the current command."""
    return line == ACK_TOKEN or line.startswith(ACK_TOKEN + " ") or line.startswith("!!")


class BaseChannel(ABC):
    """
    Owns the wire to one device.

    Subclasses implement ``open``, ``transmit`` and ``close``; ``write``
    frames a command, transmits it and returns the raw reply text.
    """

    def __init__(self, line_terminator: str = DEFAULT_LINE_TERMINATOR, logger: LoggerLike = None):
        self.logger = ensure_component_logger(logger, fallback_name=type(self).__name__)
        self.line_terminator = line_terminator
        self.port: Optional[str] = None
        self.baudrate: Optional[int] = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def expand(self, code: str) -> str:
        return expand_code(code, self.line_terminator)

    @abstractmethod
    async def open(self, port: Optional[str], baudrate: int, primer: Optional[str] = None) -> None:
        """Open the connection and send the priming command.

        Raises:
            ChannelError: if the port cannot be opened.
            CommandValidationError: if the primer is not acknowledged.
        """
        ...

    @abstractmethod
    async def transmit(self, frame: str) -> str:
        """Send an already framed command and return the full reply text.

        Raises:
            ChannelError: on I/O failure or when the channel is closed.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def write(self, command_text: str) -> str:
        return await self.transmit(self.expand(command_text))

    async def _prime(self, primer: Optional[str]) -> None:
        if not primer:
            return
        reply = await self.write(primer)
        if not validate_reply(primer, reply):
            raise CommandValidationError(primer, reply, 1)
        self.logger.debug("Primer %s acknowledged", primer)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


__all__ = [
    "ACK_TOKEN",
    "BaseChannel",
    "DEFAULT_LINE_TERMINATOR",
    "expand_code",
    "is_reply_complete",
    "reply_lines",
    "validate_reply",
]
