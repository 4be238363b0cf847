"""
Command Queue - The single writer to a bot's channel.

Entries are executed strictly in FIFO order by one worker task, so at most
one command is ever in flight: a frame is transmitted, its reply awaited
and validated, and only then does the next entry start.

Payloads are either raw command text or a ``QueueDirective`` (open / close
the channel). Every entry carries its own expansion and validation
functions and a future that resolves with the reply text.

Failure policy:
- a reply that fails validation is retried according to the queue's
  ``RetryPolicy``; when the attempts are spent the entry fails with
  ``CommandValidationError`` (``max_attempts=1`` aborts immediately);
- channel errors fail the entry at once;
- in either case the queue moves on to the next entry.

``flush()`` abandons entries that have not been sent yet; the entry in
flight is always allowed to finish.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional, Union

from fabbot.core.errors import CommandAbandonedError, CommandValidationError
from fabbot.core.logging_utils import LoggerLike, ensure_component_logger
from fabbot.core.transports.base_channel import BaseChannel, validate_reply

from .retry_policy import RetryPolicy

DEFAULT_MAX_PENDING = 8


class QueueDirective(Enum):
    """Control directives understood by the queue."""
    OPEN = "open"
    CLOSE = "close"


Payload = Union[str, QueueDirective]
ExpandFunc = Callable[[str], str]
ValidateFunc = Callable[[str, Optional[str]], bool]


@dataclass
class QueueEntry:
    """A queued payload and everything needed to execute it."""
    payload: Payload
    expand: ExpandFunc
    validate: ValidateFunc
    future: asyncio.Future
    reply: Optional[str] = None
    attempts: int = 0

    @property
    def is_directive(self) -> bool:
        return isinstance(self.payload, QueueDirective)

    def describe(self) -> str:
        if self.is_directive:
            return f"<{self.payload.value}>"
        return repr(self.payload)


def _consume_outcome(future: asyncio.Future) -> None:
    # Failures are logged by the queue; mark them retrieved so asyncio does
    # not report them again when nobody awaits the entry.
    if not future.cancelled():
        future.exception()


class CommandQueue:
    """
    FIFO command queue with at-most-one-in-flight execution.

    Usage:
        queue = CommandQueue(channel, port="/dev/ttyACM0", baudrate=230400, primer="M501")
        await queue.queue_commands(QueueDirective.OPEN)
        reply = await queue.queue_commands("G28")
    """

    def __init__(
        self,
        channel: BaseChannel,
        port: Optional[str] = None,
        baudrate: int = 230400,
        primer: Optional[str] = None,
        expand: Optional[ExpandFunc] = None,
        validate: Optional[ValidateFunc] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_pending: int = DEFAULT_MAX_PENDING,
        logger: LoggerLike = None,
    ):
        """
        Args:
            channel: The channel this queue exclusively writes to.
            port: Port handed to the channel on an OPEN directive.
            baudrate: Baud rate handed to the channel on an OPEN directive.
            primer: Priming command sent by the channel after opening.
            expand: Default expansion function (defaults to channel framing).
            validate: Default reply validation (defaults to ``validate_reply``).
            retry_policy: Policy for unacknowledged replies (default 3 attempts).
            max_pending: Depth at which ``wait_for_capacity`` blocks.
            logger: Injected logger.
        """
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self.logger = ensure_component_logger(logger, fallback_name="CommandQueue")
        self.channel = channel
        self.port = port
        self.baudrate = baudrate
        self.primer = primer
        self.expand: ExpandFunc = expand or channel.expand
        self.validate: ValidateFunc = validate or validate_reply
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_pending = max_pending

        self._entries: Deque[QueueEntry] = deque()
        self._in_flight: Optional[QueueEntry] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._capacity = asyncio.Event()
        self._capacity.set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Introspection

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending_count(self) -> int:
        """Entries waiting plus the one in flight."""
        return len(self._entries) + (1 if self._in_flight is not None else 0)

    @property
    def in_flight(self) -> Optional[QueueEntry]:
        return self._in_flight

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ------------------------------------------------------------------
    # Intake

    def queue_commands(
        self,
        payload: Payload,
        *,
        expand: Optional[ExpandFunc] = None,
        validate: Optional[ValidateFunc] = None,
    ) -> asyncio.Future:
        """Append ``payload`` and start executing if the queue is idle.

        Returns:
            Future resolving to the reply text (None for directives), or
            failing with the entry's error.
        """
        if not isinstance(payload, (str, QueueDirective)):
            raise TypeError(f"Unsupported queue payload {payload!r}")

        loop = asyncio.get_running_loop()
        entry = QueueEntry(
            payload=payload,
            expand=expand or self.expand,
            validate=validate or self.validate,
            future=loop.create_future(),
        )
        entry.future.add_done_callback(_consume_outcome)
        if self._closed:
            entry.future.set_exception(CommandAbandonedError(f"Command {entry.describe()} rejected: queue shut down"))
            return entry.future

        self._entries.append(entry)
        self._update_events()

        if not self.is_busy:
            self._worker = loop.create_task(self._drain())
        return entry.future

    async def wait_for_capacity(self) -> None:
        """Block while ``max_pending`` entries are queued or in flight."""
        while self.pending_count >= self.max_pending:
            self._capacity.clear()
            await self._capacity.wait()

    async def join(self) -> None:
        """Wait until every queued entry has been resolved."""
        await self._idle.wait()

    def flush(self) -> int:
        """Abandon every entry that has not been sent yet.

        Returns:
            Number of entries abandoned.
        """
        abandoned = 0
        while self._entries:
            entry = self._entries.popleft()
            if not entry.future.done():
                entry.future.set_exception(CommandAbandonedError(f"Command {entry.describe()} abandoned"))
                abandoned += 1
        if abandoned:
            self.logger.info("Abandoned %d queued command(s)", abandoned)
        self._update_events()
        return abandoned

    async def shutdown(self) -> None:
        """Abandon pending entries, interrupt the one in flight and stop the worker.

        Entries queued afterwards fail immediately with ``CommandAbandonedError``.
        """
        self._closed = True
        self.flush()
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._in_flight = None
        self._update_events()

    # ------------------------------------------------------------------
    # Execution

    async def _drain(self) -> None:
        while self._entries:
            entry = self._entries.popleft()
            if entry.future.done():
                continue

            self._in_flight = entry
            try:
                reply = await self._execute(entry)
            except asyncio.CancelledError:
                if not entry.future.done():
                    entry.future.set_exception(CommandAbandonedError(f"Command {entry.describe()} interrupted"))
                raise
            except Exception as e:
                self.logger.error("Command %s failed: %s", entry.describe(), e)
                if not entry.future.done():
                    entry.future.set_exception(e)
            else:
                if not entry.future.done():
                    entry.future.set_result(reply)
            finally:
                self._in_flight = None
                self._update_events()

    async def _execute(self, entry: QueueEntry) -> Optional[str]:
        if entry.payload is QueueDirective.OPEN:
            await self.channel.open(self.port, self.baudrate, self.primer)
            return None
        if entry.payload is QueueDirective.CLOSE:
            await self.channel.close()
            return None

        command = entry.payload
        frame = entry.expand(command)

        async def attempt() -> bool:
            entry.attempts += 1
            entry.reply = await self.channel.transmit(frame)
            return entry.validate(command, entry.reply)

        def on_retry(attempt_number: int, error: Optional[str]) -> None:
            self.logger.warning(
                "Reply to %r not acknowledged (%r); attempt %d/%d",
                command, entry.reply, attempt_number, self.retry_policy.max_attempts,
            )

        result = await self.retry_policy.execute(attempt, on_retry=on_retry)
        if not result.success:
            raise CommandValidationError(command, entry.reply, entry.attempts)
        return entry.reply

    def _update_events(self) -> None:
        if self.pending_count < self.max_pending:
            self._capacity.set()
        if self.pending_count == 0:
            self._idle.set()
        else:
            self._idle.clear()


__all__ = [
    "CommandQueue",
    "DEFAULT_MAX_PENDING",
    "Payload",
    "QueueDirective",
    "QueueEntry",
]
