"""Device control core: lifecycle, command queue, channels, jobs and discovery."""

from .bot import Bot
from .bot_state_machine import BOT_EDGES, BotEvent, BotState, BotStateMachine
from .config_manager import BotConfig, ConfigManager, get_config_manager
from .errors import (
    BotError,
    ChannelError,
    CommandAbandonedError,
    CommandValidationError,
    DeviceNotFoundError,
    InvalidTransitionError,
    JobError,
    TransitionTableError,
    UnsupportedCommandError,
)
from .logging_config import configure_logging
from .logging_utils import ComponentLogger, ensure_component_logger, get_module_logger

__all__ = [
    'BOT_EDGES',
    'Bot',
    'BotConfig',
    'BotError',
    'BotEvent',
    'BotState',
    'BotStateMachine',
    'ChannelError',
    'CommandAbandonedError',
    'CommandValidationError',
    'ComponentLogger',
    'ConfigManager',
    'DeviceNotFoundError',
    'InvalidTransitionError',
    'JobError',
    'TransitionTableError',
    'UnsupportedCommandError',
    'configure_logging',
    'ensure_component_logger',
    'get_config_manager',
    'get_module_logger',
]
