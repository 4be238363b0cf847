"""
Virtual Channel

Software stand-in for a device. Performs no I/O: opening and closing take
``connect_delay`` seconds, every command takes ``command_delay`` seconds and
is acknowledged with ``ok``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Optional

from fabbot.core.errors import ChannelError
from fabbot.core.logging_utils import LoggerLike

from .base_channel import ACK_TOKEN, DEFAULT_LINE_TERMINATOR, BaseChannel

TRANSCRIPT_LENGTH = 1000


class VirtualChannel(BaseChannel):
    """Simulated channel with fixed latency that always succeeds."""

    def __init__(
        self,
        connect_delay: float = 1.0,
        command_delay: float = 0.05,
        line_terminator: str = DEFAULT_LINE_TERMINATOR,
        logger: LoggerLike = None,
    ):
        super().__init__(line_terminator=line_terminator, logger=logger)
        self.connect_delay = connect_delay
        self.command_delay = command_delay
        # Most recent frames, oldest first.
        self.transcript: Deque[str] = deque(maxlen=TRANSCRIPT_LENGTH)

    async def open(self, port: Optional[str], baudrate: int, primer: Optional[str] = None) -> None:
        if self._open:
            self.logger.warning("Virtual channel already open")
            return
        if self.connect_delay > 0:
            await asyncio.sleep(self.connect_delay)
        self.port = port or "virtual"
        self.baudrate = baudrate
        self._open = True
        self.logger.info("Virtual channel open (simulated %d baud)", baudrate)
        await self._prime(primer)

    async def transmit(self, frame: str) -> str:
        if not self._open:
            raise ChannelError("Cannot write to virtual channel: channel is not open")
        if self.command_delay > 0:
            await asyncio.sleep(self.command_delay)
        self.transcript.append(frame)
        self.logger.debug("Virtual write: %r", frame)
        return f"{ACK_TOKEN}{self.line_terminator}"

    async def close(self) -> None:
        if not self._open:
            return
        if self.connect_delay > 0:
            await asyncio.sleep(self.connect_delay)
        self._open = False
        self.logger.info("Virtual channel closed")


__all__ = ["VirtualChannel"]
