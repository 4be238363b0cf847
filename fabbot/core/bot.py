"""
Bot - The aggregate that owns one controllable device, physical or virtual.

A bot ties together the lifecycle state machine, the device locator, the
command queue (and through it the channel) and the job streamer. External
callers drive it through two intakes:

- ``process_command``: createVirtualBot, destroyVirtualBot, connect, disconnect
- ``process_job_command``: start, pause, resume, cancel (alias stop)

Connect and disconnect return as soon as the bot has entered the
transitional state; the channel work runs in a background task that drives
the matching ``*Done`` or ``*Fail`` event when it finishes.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fabbot.core.bot_state_machine import BotEvent, BotState, BotStateMachine, StateObserver
from fabbot.core.config_manager import BotConfig
from fabbot.core.connection import CommandQueue, QueueDirective, RetryPolicy
from fabbot.core.devices import VIRTUAL_DEVICE, DeviceLocator, UsbDevice
from fabbot.core.errors import ChannelError, JobError, UnsupportedCommandError
from fabbot.core.files import DirectoryFileCatalog, FileCatalog
from fabbot.core.jobs import Job, JobStreamer
from fabbot.core.logging_utils import LoggerLike, ensure_component_logger
from fabbot.core.paths import resolve_project_path
from fabbot.core.transports import BaseChannel, SerialChannel, VirtualChannel

ChannelFactory = Callable[[bool], BaseChannel]

CREATE_VIRTUAL_BOT = "createVirtualBot"
DESTROY_VIRTUAL_BOT = "destroyVirtualBot"
CONNECT = "connect"
DISCONNECT = "disconnect"

JOB_START = "start"
JOB_PAUSE = "pause"
JOB_RESUME = "resume"
JOB_CANCEL = "cancel"
JOB_STOP = "stop"


class Bot:
    """
    One physical-or-virtual device slot.

    Usage:
        bot = Bot(config)
        bot.subscribe(lambda state: print("stateChange", state))
        await bot.initialize()
        await bot.process_command("createVirtualBot")
        await bot.process_command("connect")
        await bot.settle()
        await bot.process_job_command("start", Job(file_id="cube.gcode"))
    """

    def __init__(
        self,
        config: Optional[BotConfig] = None,
        catalog: Optional[FileCatalog] = None,
        *,
        locator: Optional[DeviceLocator] = None,
        channel_factory: Optional[ChannelFactory] = None,
        logger: LoggerLike = None,
    ):
        self.config = config or BotConfig()
        self.logger = ensure_component_logger(logger, fallback_name="Bot")
        self.fsm = BotStateMachine(logger=self.logger.getChild("FSM"))
        self.catalog = catalog or DirectoryFileCatalog(resolve_project_path(self.config.files_dir))
        self._channel_factory = channel_factory or self._create_channel

        self.virtual = False
        self.device: Optional[UsbDevice] = None
        self.port: Optional[str] = None
        self.queue: Optional[CommandQueue] = None

        self._lock = asyncio.Lock()
        self.streamer = JobStreamer(self.fsm, self.catalog, lock=self._lock, logger=self.logger.getChild("Job"))
        self.locator = locator or DeviceLocator(
            self.config.vid,
            self.config.pid,
            scan_interval=self.config.usb_scan_interval,
            logger=self.logger.getChild("Locator"),
        )
        self.locator.set_callbacks(on_detect=self._on_device_found, on_unplug=self._on_device_lost)

        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection

    @property
    def state(self) -> BotState:
        return self.fsm.state

    @property
    def current_job(self) -> Optional[Job]:
        """The active job, if any; finished jobs are released."""
        return self.streamer.job if self.streamer.is_active else None

    @property
    def channel(self) -> Optional[BaseChannel]:
        return self.queue.channel if self.queue else None

    def get_bot(self) -> Dict[str, Any]:
        return {"state": self.fsm.current}

    def subscribe(self, observer: StateObserver) -> None:
        """Register a ``stateChange`` observer (receives the new state name)."""
        self.fsm.subscribe(observer)

    def unsubscribe(self, observer: StateObserver) -> None:
        self.fsm.unsubscribe(observer)

    # ------------------------------------------------------------------
    # Setup / teardown

    async def initialize(self) -> None:
        """Start device discovery. Failures leave the bot unavailable."""
        try:
            await self.locator.start()
        except Exception as e:
            self.logger.error("Device scanner failed to start: %s", e)

    async def shutdown(self) -> None:
        """Cancel any job, disconnect and stop discovery."""
        if self.streamer.is_active:
            try:
                await self.streamer.stop()
            except Exception as e:
                self.logger.error("Failed to stop job during shutdown: %s", e)
                await self.streamer.abort()

        if self.fsm.is_in(BotState.CONNECTED):
            try:
                await self.disconnect()
            except Exception as e:
                self.logger.error("Disconnect during shutdown failed: %s", e)

        await self.locator.stop()
        await self.settle()
        await self._release_queue()
        self.logger.info("Bot shut down in state %s", self.fsm.current)

    async def settle(self) -> None:
        """Wait for every background operation started so far."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    # ------------------------------------------------------------------
    # Lifecycle command intake

    async def process_command(self, command: str) -> Dict[str, Any]:
        """Apply a lifecycle command and return the bot summary.

        Raises:
            UnsupportedCommandError: for unknown tokens; state is untouched.
            InvalidTransitionError: if the command is illegal in the current state.
        """
        if command == CREATE_VIRTUAL_BOT:
            await self.create_virtual_bot()
        elif command == DESTROY_VIRTUAL_BOT:
            await self.destroy_virtual_bot()
        elif command == CONNECT:
            self.connect()
        elif command == DISCONNECT:
            self.disconnect()
        else:
            raise UnsupportedCommandError(command)
        return self.get_bot()

    async def create_virtual_bot(self) -> None:
        if self.virtual:
            return
        self.virtual = True
        try:
            self.detect(VIRTUAL_DEVICE)
        except Exception:
            self.virtual = False
            raise

    async def destroy_virtual_bot(self) -> None:
        if not self.virtual:
            return
        await self.unplug()
        self.virtual = False
        # A physical device may have been attached while the virtual bot ran.
        if self.locator.monitor.is_running:
            await self.locator.refresh()

    def detect(self, device: UsbDevice, port: Optional[str] = None) -> None:
        """Adopt ``device`` and build its command queue (unavailable -> ready)."""
        self.fsm.fire(BotEvent.DETECT)
        try:
            self.queue = self._build_queue(port)
        except Exception as e:
            self.logger.error("Detection of %s failed: %s", device.usb_id, e)
            self.fsm.fire(BotEvent.DETECT_FAIL)
            raise
        self.device = device
        self.port = port
        self.fsm.fire(BotEvent.DETECT_DONE)

    def connect(self) -> asyncio.Task:
        """Enter ``connecting`` and open the channel in the background."""
        self.fsm.fire(BotEvent.CONNECT)
        return self._spawn(
            self._run_directive(QueueDirective.OPEN, BotState.CONNECTING, BotEvent.CONNECT_DONE, BotEvent.CONNECT_FAIL),
            CONNECT,
        )

    def disconnect(self) -> asyncio.Task:
        """Enter ``disconnecting`` and close the channel in the background."""
        self.fsm.fire(BotEvent.DISCONNECT)
        return self._spawn(self._disconnect(), DISCONNECT)

    async def unplug(self) -> None:
        """Tear everything down after the device went away."""
        self.device = None
        self.port = None
        self.fsm.fire(BotEvent.UNPLUG)
        # The queue goes first so nothing holding the lock waits on a dead device.
        await self._release_queue()
        await self.streamer.abort()

    # ------------------------------------------------------------------
    # Commands and jobs

    async def send_gcode(self, text: str) -> Optional[str]:
        """Execute one command outside of (or in between) job lines.

        Returns:
            The acknowledged reply text.
        """
        async with self._lock:
            if self.fsm.is_in(BotState.PROCESSING_JOB):
                enter, done, fail = BotEvent.JOB_TO_GCODE, BotEvent.JOB_GCODE_DONE, BotEvent.JOB_GCODE_FAIL
            else:
                enter, done, fail = BotEvent.CONNECTED_TO_GCODE, BotEvent.CONNECTED_GCODE_DONE, BotEvent.CONNECTED_GCODE_FAIL

            self.fsm.fire(enter)
            try:
                reply = await self._require_queue().queue_commands(text.strip())
            except Exception as e:
                self.logger.error("Command %r failed: %s", text, e)
                if self.fsm.is_in(BotState.PROCESSING_GCODE):
                    self.fsm.fire(fail)
                raise
            if self.fsm.is_in(BotState.PROCESSING_GCODE):
                self.fsm.fire(done)
            return reply

    async def start_job(self, file_id: str) -> Job:
        job = Job(file_id=file_id)
        await self.process_job_command(JOB_START, job)
        return job

    async def process_job_command(self, command: str, job: Optional[Job] = None) -> Dict[str, Any]:
        """Delegate a job lifecycle command to the streamer.

        Returns:
            The affected job's summary.
        """
        if command == JOB_START:
            if job is None:
                raise JobError("A job is required to start")
            await self.streamer.start(job, self._require_queue())
            return job.to_dict()

        active = self.streamer.job
        if command == JOB_PAUSE:
            await self.streamer.pause()
        elif command == JOB_RESUME:
            await self.streamer.resume()
        elif command in (JOB_CANCEL, JOB_STOP):
            await self.streamer.stop()
        else:
            raise UnsupportedCommandError(command)
        return active.to_dict() if active else {}

    # ------------------------------------------------------------------
    # Locator callbacks

    async def _on_device_found(self, device: UsbDevice, port: str) -> None:
        if self.virtual:
            self.logger.info("Ignoring %s on %s while running virtually", device.usb_id, port)
            return
        self.detect(device, port)

    async def _on_device_lost(self, device: UsbDevice) -> None:
        if self.virtual:
            return
        await self.unplug()

    # ------------------------------------------------------------------
    # Internals

    def _create_channel(self, virtual: bool) -> BaseChannel:
        channel_logger = self.logger.getChild("Channel")
        if virtual:
            return VirtualChannel(
                connect_delay=self.config.virtual_delay,
                command_delay=self.config.virtual_command_delay,
                line_terminator=self.config.line_terminator,
                logger=channel_logger,
            )
        return SerialChannel(
            line_terminator=self.config.line_terminator,
            reply_timeout=self.config.reply_timeout,
            logger=channel_logger,
        )

    def _build_queue(self, port: Optional[str]) -> CommandQueue:
        return CommandQueue(
            self._channel_factory(self.virtual),
            port=port,
            baudrate=self.config.baudrate,
            primer=self.config.primer_command,
            retry_policy=RetryPolicy(
                max_attempts=self.config.command_attempts,
                base_delay=self.config.command_retry_delay,
                logger=self.logger.getChild("Retry"),
            ),
            max_pending=self.config.max_pending_commands,
            logger=self.logger.getChild("Queue"),
        )

    def _require_queue(self) -> CommandQueue:
        if self.queue is None:
            raise ChannelError("Bot has no command queue; no device detected")
        return self.queue

    async def _disconnect(self) -> None:
        # A paused job keeps its file open while the bot rests in connected.
        await self.streamer.abort()
        await self._run_directive(
            QueueDirective.CLOSE, BotState.DISCONNECTING, BotEvent.DISCONNECT_DONE, BotEvent.DISCONNECT_FAIL,
        )

    async def _run_directive(
        self,
        directive: QueueDirective,
        pending: BotState,
        done: BotEvent,
        fail: BotEvent,
    ) -> None:
        try:
            await self._require_queue().queue_commands(directive)
        except Exception as e:
            self.logger.error("Channel %s failed: %s", directive.value, e)
            if self.fsm.is_in(pending):
                self.fsm.fire(fail)
            raise
        # An unplug can land while the channel work is in progress.
        if self.fsm.is_in(pending):
            self.fsm.fire(done)
        else:
            self.logger.warning("Channel %s finished after bot moved to %s", directive.value, self.fsm.current)

    async def _release_queue(self) -> None:
        queue, self.queue = self.queue, None
        if queue is None:
            return
        await queue.shutdown()
        try:
            await queue.channel.close()
        except Exception as e:
            self.logger.warning("Error closing channel: %s", e)

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"bot-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.debug("Background %s ended with %s", task.get_name(), error)


__all__ = ["Bot", "ChannelFactory"]
