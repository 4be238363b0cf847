import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from fabbot.core.bot import Bot
from fabbot.core.bot_state_machine import BotState
from fabbot.core.config_manager import BotConfig, get_config_manager
from fabbot.core.logging_config import configure_logging
from fabbot.core.logging_utils import get_module_logger
from fabbot.core.paths import CONFIG_PATH, resolve_project_path


logger = get_module_logger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="fabbot - USB fabrication device controller"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help="Path to the key = value config file (default: config.txt)"
    )

    parser.add_argument(
        "--virtual",
        action="store_true",
        help="Run a virtual bot instead of waiting for a USB device"
    )

    parser.add_argument(
        "--job",
        metavar="FILE_ID",
        help="Stream this catalog file once connected, then exit"
    )

    parser.add_argument(
        "--log-level",
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        default=None,
        help="Logging level (default: log_level from config)"
    )

    parser.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        default=True,
        help="Log to file only"
    )

    return parser.parse_args(argv)


def load_config(config_path: Path) -> BotConfig:
    config_manager = get_config_manager()
    return BotConfig.from_config(config_manager.read_config(config_path), config_manager)


async def _wait_for_state(bot: Bot, state: BotState) -> None:
    reached = asyncio.Event()

    def observer(new_state: str) -> None:
        if new_state == state.value:
            reached.set()

    bot.subscribe(observer)
    try:
        if not bot.fsm.is_in(state):
            await reached.wait()
    finally:
        bot.unsubscribe(observer)


async def _run_job(bot: Bot, file_id: str, stop_event: asyncio.Event) -> None:
    await _wait_for_state(bot, BotState.READY)
    await bot.connect()
    job = await bot.start_job(file_id)
    await bot.streamer.join()
    queue = bot.queue
    if queue is not None:
        await queue.join()
    logger.info("Job %s finished: %s", job.id, job.to_dict())
    stop_event.set()


async def main(argv: Optional[list[str]] = None) -> None:
    """
    Run one bot until SIGINT/SIGTERM (or until ``--job`` finishes).

    Shutdown stops any job, disconnects a connected bot and stops USB
    discovery before the loop exits.
    """
    args = parse_args(argv)
    config = load_config(args.config)

    configure_logging(
        args.log_level or config.log_level,
        console=args.console_output,
        log_file=resolve_project_path(config.log_file),
    )

    logger.info("=" * 60)
    logger.info("fabbot - Device Controller Starting")
    logger.info("=" * 60)
    logger.info("Config: %s", args.config)
    logger.info("Target device: %04x:%04x @ %d baud", config.vid, config.pid, config.baudrate)
    logger.info("Mode: %s", "virtual" if args.virtual else "usb")

    bot = Bot(config)
    bot.subscribe(lambda state: logger.info("stateChange: %s", state))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    job_task: Optional[asyncio.Task] = None
    try:
        if args.virtual:
            await bot.process_command("createVirtualBot")
        else:
            await bot.initialize()

        if args.job:
            job_task = asyncio.create_task(_run_job(bot, args.job, stop_event))
            job_task.add_done_callback(lambda _: stop_event.set())
        elif args.virtual:
            await bot.connect()

        await stop_event.wait()
    finally:
        if job_task is not None:
            if not job_task.done():
                job_task.cancel()
            results = await asyncio.gather(job_task, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.error("Job run failed: %s", results[0])
        await bot.shutdown()

    logger.info("=" * 60)
    logger.info("fabbot - Device Controller Stopped")
    logger.info("=" * 60)


def run(argv: Optional[list[str]] = None) -> int:
    try:
        asyncio.run(main(argv))
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except Exception as exc:  # pragma: no cover - fatal guard
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(run())
