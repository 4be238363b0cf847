"""
Serial Channel

Physical channel over a USB serial port. Wraps pyserial with an async
interface; every blocking call runs in a worker thread so the event loop
keeps serving the rest of the bot.
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional

import serial

from fabbot.core.errors import ChannelError
from fabbot.core.logging_utils import LoggerLike

from .base_channel import DEFAULT_LINE_TERMINATOR, BaseChannel, is_reply_complete

DEFAULT_READ_TIMEOUT = 0.1
DEFAULT_WRITE_TIMEOUT = 2.0
DEFAULT_RESYNC_WINDOW = 1.0


class SerialChannel(BaseChannel):
    """
    USB serial channel to a g-code speaking device.

    A reply is every line received after a frame is written, up to and
    including the line that completes it (``ok`` or a ``!!`` fault).
    With ``reply_timeout`` of 0 a silent device stalls the caller until a
    reply arrives or the channel is closed.

    A timed-out reply may still arrive later. The channel then discards
    pending input before the next frame, reading until the line stays
    quiet for one read timeout (at most ``resync_window`` seconds), so a
    late ``ok`` is never taken as the next command's acknowledgment.
    """

    def __init__(
        self,
        line_terminator: str = DEFAULT_LINE_TERMINATOR,
        reply_timeout: float = 0.0,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        resync_window: float = DEFAULT_RESYNC_WINDOW,
        logger: LoggerLike = None,
    ):
        """
        Args:
            line_terminator: Appended to every command frame.
            reply_timeout: Seconds to wait for a complete reply; 0 waits forever.
            read_timeout: pyserial per-read timeout (seconds).
            write_timeout: pyserial write timeout (seconds).
            resync_window: Upper bound for draining stale input after a timeout.
            logger: Injected logger.
        """
        super().__init__(line_terminator=line_terminator, logger=logger)
        self.reply_timeout = reply_timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.resync_window = resync_window
        self._serial: Optional[serial.Serial] = None
        self._needs_resync = False

    @property
    def needs_resync(self) -> bool:
        return self._needs_resync

    @property
    def is_open(self) -> bool:
        return self._open and self._serial is not None and self._serial.is_open

    async def open(self, port: Optional[str], baudrate: int, primer: Optional[str] = None) -> None:
        if self.is_open:
            self.logger.warning("Already connected to %s", self.port)
            return
        if not port:
            raise ChannelError("No serial port resolved for this device")

        self.port = port
        self.baudrate = baudrate
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port=port,
                baudrate=baudrate,
                timeout=self.read_timeout,
                write_timeout=self.write_timeout,
            )
            await asyncio.to_thread(self._serial.reset_input_buffer)
            await asyncio.to_thread(self._serial.reset_output_buffer)
        except (serial.SerialException, OSError) as e:
            self._serial = None
            raise ChannelError(f"Failed to open {port}: {e}") from e

        self._open = True
        self.logger.info("Connected to %s at %d baud", port, baudrate)

        try:
            await self._prime(primer)
        except Exception:
            await self.close()
            raise

    async def transmit(self, frame: str) -> str:
        if not self.is_open:
            raise ChannelError(f"Cannot write to {self.port}: channel is not open")

        if self._needs_resync:
            await self._discard_stale_input()

        try:
            await asyncio.to_thread(self._serial.write, frame.encode("ascii", errors="replace"))
            await asyncio.to_thread(self._serial.flush)
        except (serial.SerialException, OSError) as e:
            raise ChannelError(f"Write error on {self.port}: {e}") from e
        self.logger.debug("Wrote to %s: %r", self.port, frame)

        return await self._read_reply(frame)

    async def _read_reply(self, frame: str) -> str:
        lines: List[str] = []
        partial = b""
        deadline = time.monotonic() + self.reply_timeout if self.reply_timeout > 0 else None

        while True:
            if deadline is not None and time.monotonic() > deadline:
                self._needs_resync = True
                raise ChannelError(
                    f"No complete reply to {frame.strip()!r} within {self.reply_timeout:.1f}s"
                )
            if not self.is_open:
                raise ChannelError(f"Channel {self.port} closed while awaiting a reply")

            try:
                raw = await asyncio.to_thread(self._serial.readline)
            except (serial.SerialException, OSError) as e:
                raise ChannelError(f"Read error on {self.port}: {e}") from e

            # readline() returns a partial line when the read timeout expires
            partial += raw
            if not partial.endswith(b"\n"):
                continue

            text = partial.decode("ascii", errors="replace")
            partial = b""
            lines.append(text)
            line = text.strip()
            self.logger.debug("Read from %s: %s", self.port, line)
            if is_reply_complete(line):
                return "".join(lines)

    async def _discard_stale_input(self) -> None:
        deadline = time.monotonic() + self.resync_window
        discarded = 0
        try:
            await asyncio.to_thread(self._serial.reset_input_buffer)
            while time.monotonic() < deadline:
                raw = await asyncio.to_thread(self._serial.readline)
                if not raw:
                    break
                discarded += 1
        except (serial.SerialException, OSError) as e:
            raise ChannelError(f"Read error on {self.port}: {e}") from e

        self._needs_resync = False
        if discarded:
            self.logger.warning("Discarded %d late line(s) from %s", discarded, self.port)

    async def close(self) -> None:
        if self._serial is None:
            self._open = False
            return
        try:
            await asyncio.to_thread(self._serial.close)
            self.logger.info("Disconnected from %s", self.port)
        except (serial.SerialException, OSError) as e:
            raise ChannelError(f"Error closing {self.port}: {e}") from e
        finally:
            self._serial = None
            self._open = False
            self._needs_resync = False


__all__ = ["SerialChannel", "DEFAULT_READ_TIMEOUT", "DEFAULT_RESYNC_WINDOW", "DEFAULT_WRITE_TIMEOUT"]
