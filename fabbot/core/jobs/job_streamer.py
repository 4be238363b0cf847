"""
Job Streamer - Feeds a job file into a bot's command queue.

The file is read through a ``LineSource`` that only yields a line when the
streamer asks for the next one, so the reader can never run ahead of the
consumer. For every line the streamer:

1. advances the job's line cursor,
2. strips the trailing ``;`` comment (blank results are skipped),
3. waits for room in the command queue and forwards the command,
4. asks for the next line only if the job is still running.

Lifecycle operations are bracketed by bot transitions:

    start   connected -start-> startingJob -startDone-> processingJob
    pause   processingJob -stop-> stopping -stopDone-> connected
    resume  connected -start-> startingJob -startDone-> processingJob
    stop    processingJob -stop-> stopping -stopDone-> connected
    EOF     same as stop, then the job is marked completed

Compound transitions run under the bot's operation lock so they never
interleave with each other or with single-command execution.
"""

from __future__ import annotations

import asyncio
from functools import partial
from pathlib import Path
from typing import Optional, Union

import aiofiles

from fabbot.core.bot_state_machine import BotEvent, BotState, BotStateMachine
from fabbot.core.connection.command_queue import CommandQueue
from fabbot.core.errors import CommandAbandonedError, JobError
from fabbot.core.files import FileCatalog
from fabbot.core.logging_utils import LoggerLike, ensure_component_logger

from .job import Job, JobState

COMMENT_CHAR = ";"
LINE_ERROR_RETRY_DELAY = 0.5


def strip_comment(line: str) -> str:
    """Drop everything from the first ``;`` on and trim whitespace."""
    return line.split(COMMENT_CHAR, 1)[0].strip()


async def count_lines(path: Union[str, Path]) -> int:
    """Count the lines a ``LineSource`` over ``path`` will yield."""
    count = 0
    async with aiofiles.open(path, "r", encoding="utf-8", errors="replace", newline=None) as f:
        async for _ in f:
            count += 1
    return count


class LineSource:
    """Pull-based line reader over a job file.

    ``\\n``, ``\\r\\n`` and ``\\r`` all end a line; a final line without a
    terminator is still yielded.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._file = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        self._file = await aiofiles.open(self.path, "r", encoding="utf-8", errors="replace", newline=None)

    async def next_line(self) -> Optional[str]:
        """Return the next line without its terminator, or None at end of file."""
        if self._file is None or self._closed:
            raise JobError(f"Line source for {self.path} is not open")
        line = await self._file.readline()
        if line == "":
            return None
        return line.rstrip("\n")

    async def close(self) -> None:
        self._closed = True
        if self._file is not None:
            file, self._file = self._file, None
            await file.close()


class JobStreamer:
    """
    Streams one job at a time for a single bot.

    Usage:
        streamer = JobStreamer(fsm, catalog, lock=bot_lock)
        await streamer.start(job, queue)
        await streamer.pause()
        await streamer.resume()
        await streamer.join()
    """

    def __init__(
        self,
        fsm: BotStateMachine,
        catalog: FileCatalog,
        lock: Optional[asyncio.Lock] = None,
        line_error_delay: float = LINE_ERROR_RETRY_DELAY,
        logger: LoggerLike = None,
    ):
        self.logger = ensure_component_logger(logger, fallback_name="JobStreamer")
        self._fsm = fsm
        self._catalog = catalog
        self._lock = lock or asyncio.Lock()
        self.line_error_delay = line_error_delay

        self._job: Optional[Job] = None
        self._queue: Optional[CommandQueue] = None
        self._source: Optional[LineSource] = None
        self._task: Optional[asyncio.Task] = None
        self._resume = asyncio.Event()

        self.forwarded = 0
        self.failed_commands = 0

    @property
    def job(self) -> Optional[Job]:
        return self._job

    @property
    def is_active(self) -> bool:
        return self._job is not None and not self._job.is_finished

    # ------------------------------------------------------------------
    # Lifecycle operations

    async def start(self, job: Job, queue: CommandQueue) -> None:
        """Open ``job``'s file, count its lines and begin streaming.

        Raises:
            JobError: if another job is active or the file cannot be used.
            InvalidTransitionError: if the bot is not connected.
        """
        async with self._lock:
            if self.is_active:
                raise JobError(f"Job {self._job.id} is still active")

            self._fsm.fire(BotEvent.START)
            source: Optional[LineSource] = None
            try:
                record = self._catalog.get_file(job.file_id)
                path = self._catalog.get_file_path(record)
                source = LineSource(path)
                opened, total = await asyncio.gather(source.open(), count_lines(path), return_exceptions=True)
                for outcome in (opened, total):
                    if isinstance(outcome, BaseException):
                        raise outcome
                job.total_lines = total
                job.current_line = 0
                job.start()
            except Exception as e:
                self.logger.error("Failed to start job %s: %s", job.id, e)
                if source is not None:
                    await source.close()
                self._fsm.fire(BotEvent.START_FAIL)
                raise

            self.logger.info("Bot will process %s with %d lines.", path, total)
            self._job = job
            self._queue = queue
            self._source = source
            self.forwarded = 0
            self.failed_commands = 0
            self._resume.set()
            self._fsm.fire(BotEvent.START_DONE)
            self._task = asyncio.create_task(self._stream(job, source, queue))

    async def pause(self) -> None:
        """Suspend line delivery; commands already queued still complete."""
        async with self._lock:
            job = self._require_active()
            if self._fsm.is_in(BotState.CONNECTED):
                return
            self._fsm.fire(BotEvent.STOP)
            if job.state is JobState.RUNNING:
                job.pause()
            self._resume.clear()
            self._fsm.fire(BotEvent.STOP_DONE)

    async def resume(self) -> None:
        """Continue from the next unread line."""
        async with self._lock:
            job = self._require_active()
            if self._fsm.is_in(BotState.PROCESSING_JOB):
                return
            self._fsm.fire(BotEvent.START)
            if job.state is JobState.PAUSED:
                job.resume()
            self._resume.set()
            self._fsm.fire(BotEvent.START_DONE)

    async def stop(self) -> None:
        """Cancel the job: close the file and abandon unsent commands."""
        async with self._lock:
            job = self._require_active()
            if self._fsm.is_in(BotState.CONNECTED):
                await self._release()
            else:
                self._fsm.fire(BotEvent.STOP)
                try:
                    await self._release()
                except Exception:
                    self._fsm.fire(BotEvent.STOP_FAIL)
                    raise
                self._fsm.fire(BotEvent.STOP_DONE)
            job.cancel()
            self.logger.info("Job %s canceled at line %d", job.id, job.current_line)

    async def abort(self) -> None:
        """Tear the stream down without driving transitions (device unplugged)."""
        async with self._lock:
            job = self._job
            if job is None or job.is_finished:
                return
            await self._release()
            job.cancel()
            self.logger.warning("Job %s aborted at line %d", job.id, job.current_line)

    async def join(self) -> None:
        """Wait for the streaming task to end (completion, cancel or abort)."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Streaming

    async def _stream(self, job: Job, source: LineSource, queue: CommandQueue) -> None:
        try:
            while True:
                await self._resume.wait()
                try:
                    line = await source.next_line()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error("Line source error on %s: %s", source.path, e)
                    await asyncio.sleep(self.line_error_delay)
                    continue

                if line is None:
                    break

                line_number = job.advance()
                command = strip_comment(line)
                if not command:
                    continue

                await queue.wait_for_capacity()
                future = queue.queue_commands(command)
                future.add_done_callback(partial(self._on_command_done, line_number, command))
                self.forwarded += 1

                if not job.is_running:
                    self._resume.clear()

            await self._finish(job, source)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Job %s stream failed at line %d: %s", job.id, job.current_line, e)
            await self._fail(job, source)

    async def _finish(self, job: Job, source: LineSource) -> None:
        async with self._lock:
            # A pause can land while the final read is in progress; the bot
            # is then already back in connected.
            processing = self._fsm.is_in(BotState.PROCESSING_JOB)
            if processing:
                self._fsm.fire(BotEvent.STOP)
            await source.close()
            self.logger.info("Completed reading %s; file closed.", source.path)
            if processing:
                self._fsm.fire(BotEvent.STOP_DONE)
            job.complete()
            self._source = None
            self._task = None

    async def _fail(self, job: Job, source: LineSource) -> None:
        async with self._lock:
            self._source = None
            self._task = None
            if self._fsm.is_in(BotState.PROCESSING_JOB):
                self._fsm.fire(BotEvent.STOP)
            # _finish may have fired STOP before the close failed.
            if self._fsm.is_in(BotState.STOPPING):
                self._fsm.fire(BotEvent.STOP_FAIL)
            if not source.closed:
                try:
                    await source.close()
                except Exception as e:
                    self.logger.error("Failed to close %s: %s", source.path, e)
            if not job.is_finished:
                job.cancel()

    def _on_command_done(self, line_number: int, command: str, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is None or isinstance(error, CommandAbandonedError):
            return
        self.failed_commands += 1
        self.logger.error("Line %d (%s) failed: %s", line_number, command, error)

    async def _release(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        if self._source is not None:
            source, self._source = self._source, None
            await source.close()
        if self._queue is not None:
            self._queue.flush()

    def _require_active(self) -> Job:
        if not self.is_active:
            raise JobError("No active job")
        return self._job


__all__ = ["JobStreamer", "LineSource", "count_lines", "strip_comment"]
