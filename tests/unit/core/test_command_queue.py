"""
Tests for CommandQueue, RetryPolicy and the reply validation rules.
"""

import asyncio
import logging
from collections import deque
from typing import List, Optional

import pytest

from fabbot.core.connection import CommandQueue, QueueDirective, RetryPolicy
from fabbot.core.errors import (
    ChannelError,
    CommandAbandonedError,
    CommandValidationError,
)
from fabbot.core.transports.base_channel import (
    BaseChannel,
    expand_code,
    is_reply_complete,
    reply_lines,
    validate_reply,
)


class ScriptedChannel(BaseChannel):
    """Channel double that records frames and replies from a script."""

    def __init__(self, replies=None, hold: Optional[asyncio.Event] = None):
        super().__init__()
        self.replies = deque(replies or [])
        self.hold = hold
        self.frames: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.opened_with = None
        self.close_calls = 0

    async def open(self, port, baudrate, primer=None):
        self.opened_with = (port, baudrate, primer)
        self._open = True

    async def transmit(self, frame):
        if not self._open:
            raise ChannelError("closed")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.frames.append(frame)
            if self.hold is not None:
                await self.hold.wait()
            else:
                await asyncio.sleep(0)
            reply = self.replies.popleft() if self.replies else "ok\n"
            if isinstance(reply, Exception):
                raise reply
            return reply
        finally:
            self.in_flight -= 1

    async def close(self):
        self.close_calls += 1
        self._open = False


def _open_channel(**kwargs) -> ScriptedChannel:
    channel = ScriptedChannel(**kwargs)
    channel._open = True
    return channel


class TestReplyValidation:
    """Tests for the acknowledgment rule."""

    def test_dos_line_endings_acknowledged(self):
        assert validate_reply("M105", "T:200\r\nok\r\n")

    def test_error_reply_rejected(self):
        assert not validate_reply("M105", "T:200\r\nerror\r\n")

    def test_plain_ok(self):
        assert validate_reply("G28", "ok\n")
        assert validate_reply("G28", "ok")

    def test_ok_must_be_exact(self):
        assert not validate_reply("M105", "ok T:200\n")
        assert not validate_reply("G28", "OK\n")

    def test_empty_reply_rejected(self):
        assert not validate_reply("G28", "")
        assert not validate_reply("G28", None)

    def test_ok_not_last_rejected(self):
        assert not validate_reply("G28", "ok\nbusy\n")

    def test_reply_lines_drop_blank_segments(self):
        assert reply_lines("echo:busy\r\n\r\nok\r\n") == ["echo:busy", "ok"]

    def test_expand_appends_single_terminator(self):
        assert expand_code("G1 X10") == "G1 X10\n"
        assert expand_code("G1 X10", "\r\n") == "G1 X10\r\n"

    def test_reply_completion_lines(self):
        assert is_reply_complete("ok")
        assert is_reply_complete("ok T:200 /200")
        assert is_reply_complete("!! fault")
        assert not is_reply_complete("echo:busy processing")


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_delay_grows_and_caps(self):
        policy = RetryPolicy(base_delay=0.1, backoff_factor=2.0, max_delay=0.3)
        assert policy.get_delay(1) == 0.0
        assert policy.get_delay(2) == pytest.approx(0.1)
        assert policy.get_delay(3) == pytest.approx(0.2)
        assert policy.get_delay(4) == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_logs_through_injected_logger(self, caplog):
        outcomes = deque([False, True])
        policy = RetryPolicy(max_attempts=2, base_delay=0.0, logger=logging.getLogger("test.retry"))

        async def operation():
            return outcomes.popleft()

        with caplog.at_level(logging.DEBUG, logger="test.retry"):
            await policy.execute(operation)

        assert any(
            record.name == "test.retry" and "Retry attempt 2/2" in record.getMessage()
            for record in caplog.records
        )

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        outcomes = deque([False, False, True])
        policy = RetryPolicy(max_attempts=3, base_delay=0.0)
        retries = []

        async def operation():
            return outcomes.popleft()

        result = await policy.execute(operation, on_retry=lambda n, err: retries.append(n))
        assert result.success
        assert result.attempt_count == 3
        assert len(retries) == 2

    @pytest.mark.asyncio
    async def test_abort_policy_single_attempt(self):
        policy = RetryPolicy.abort_on_failure()
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            return False

        result = await policy.execute(operation)
        assert not result.success
        assert calls == 1

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.0)

        async def operation():
            raise ChannelError("unplugged")

        with pytest.raises(ChannelError):
            await policy.execute(operation)


class TestCommandQueue:
    """Tests for FIFO, single-in-flight execution."""

    @pytest.mark.asyncio
    async def test_fifo_and_single_in_flight(self):
        channel = _open_channel()
        queue = CommandQueue(channel)

        futures = [queue.queue_commands(cmd) for cmd in ("G28", "G1 X10", "M84")]
        replies = await asyncio.gather(*futures)

        assert channel.frames == ["G28\n", "G1 X10\n", "M84\n"]
        assert channel.max_in_flight == 1
        assert replies == ["ok\n", "ok\n", "ok\n"]
        assert queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_second_command_waits_for_first_reply(self):
        hold = asyncio.Event()
        channel = _open_channel(hold=hold)
        queue = CommandQueue(channel)

        first = queue.queue_commands("G28")
        second = queue.queue_commands("G1 X1")
        await asyncio.sleep(0.01)

        assert channel.frames == ["G28\n"]
        assert queue.in_flight is not None and queue.in_flight.payload == "G28"
        assert len(queue) == 1

        hold.set()
        await asyncio.gather(first, second)
        assert channel.frames == ["G28\n", "G1 X1\n"]

    @pytest.mark.asyncio
    async def test_rejected_reply_retried_then_acknowledged(self):
        channel = _open_channel(replies=["error\n", "ok\n"])
        queue = CommandQueue(channel, retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0))

        reply = await queue.queue_commands("G28")

        assert reply == "ok\n"
        assert channel.frames == ["G28\n", "G28\n"]

    @pytest.mark.asyncio
    async def test_retries_exhausted_fail_entry_and_queue_moves_on(self):
        channel = _open_channel(replies=["error\n", "error\n", "ok\n"])
        queue = CommandQueue(channel, retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0))

        failing = queue.queue_commands("G28")
        following = queue.queue_commands("M84")

        with pytest.raises(CommandValidationError) as exc_info:
            await failing
        assert exc_info.value.attempts == 2
        assert exc_info.value.reply == "error\n"
        assert await following == "ok\n"

    @pytest.mark.asyncio
    async def test_abort_policy_fails_on_first_rejection(self):
        channel = _open_channel(replies=["error\n"])
        queue = CommandQueue(channel, retry_policy=RetryPolicy.abort_on_failure())

        with pytest.raises(CommandValidationError):
            await queue.queue_commands("G28")
        assert channel.frames == ["G28\n"]

    @pytest.mark.asyncio
    async def test_channel_error_not_retried(self):
        channel = _open_channel(replies=[ChannelError("write failed")])
        queue = CommandQueue(channel, retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0))

        with pytest.raises(ChannelError):
            await queue.queue_commands("G28")
        assert channel.frames == ["G28\n"]

    @pytest.mark.asyncio
    async def test_open_and_close_directives(self):
        channel = ScriptedChannel()
        queue = CommandQueue(channel, port="/dev/ttyACM0", baudrate=115200, primer="M501")

        assert await queue.queue_commands(QueueDirective.OPEN) is None
        assert channel.opened_with == ("/dev/ttyACM0", 115200, "M501")
        await queue.queue_commands("G28")
        assert await queue.queue_commands(QueueDirective.CLOSE) is None
        assert channel.close_calls == 1
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_per_entry_expand_and_validate(self):
        channel = _open_channel(replies=["done\n"])
        queue = CommandQueue(channel)

        reply = await queue.queue_commands(
            "M115",
            expand=lambda code: f"{code}\r\n",
            validate=lambda code, reply: reply.strip() == "done",
        )
        assert reply == "done\n"
        assert channel.frames == ["M115\r\n"]

    @pytest.mark.asyncio
    async def test_flush_abandons_unsent_but_in_flight_drains(self):
        hold = asyncio.Event()
        channel = _open_channel(hold=hold)
        queue = CommandQueue(channel)

        in_flight = queue.queue_commands("G28")
        pending = [queue.queue_commands(f"G1 X{i}") for i in range(3)]
        await asyncio.sleep(0.01)

        assert queue.flush() == 3
        hold.set()

        assert await in_flight == "ok\n"
        for future in pending:
            with pytest.raises(CommandAbandonedError):
                await future
        assert channel.frames == ["G28\n"]

    @pytest.mark.asyncio
    async def test_wait_for_capacity_blocks_at_max_pending(self):
        hold = asyncio.Event()
        channel = _open_channel(hold=hold)
        queue = CommandQueue(channel, max_pending=2)

        queue.queue_commands("G28")
        queue.queue_commands("G1 X1")
        waiter = asyncio.create_task(queue.wait_for_capacity())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        hold.set()
        await asyncio.wait_for(waiter, timeout=1.0)
        await queue.join()
        assert queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_and_rejects_later_entries(self):
        hold = asyncio.Event()
        channel = _open_channel(hold=hold)
        queue = CommandQueue(channel)

        in_flight = queue.queue_commands("G28")
        await asyncio.sleep(0.01)
        await queue.shutdown()

        with pytest.raises(CommandAbandonedError):
            await in_flight
        with pytest.raises(CommandAbandonedError):
            await queue.queue_commands("M84")
        assert queue.is_closed

    @pytest.mark.asyncio
    async def test_rejects_unknown_payload(self):
        queue = CommandQueue(_open_channel())
        with pytest.raises(TypeError):
            queue.queue_commands(42)

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            CommandQueue(_open_channel(), max_pending=0)
