import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import aiofiles

from .logging_utils import get_module_logger
from .paths import CONFIG_PATH


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reads ``key = value`` config files with ``#`` comments."""

    def __init__(self):
        self.logger = get_module_logger("ConfigManager")

    # ------------------------------------------------------------------
    # Internal helpers

    def _parse_config_lines(self, lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if '#' in value:
                value = value.split('#')[0].strip()

            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

            config[key] = value

        return config

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Read a config file synchronously; a missing file yields ``{}``."""
        config: Dict[str, str] = {}

        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    config = self._parse_config_lines(f)
            except OSError as e:
                logger.error("Failed to read config %s: %s", config_path, e)

        return config

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        """Async version for use in async contexts."""
        config: Dict[str, str] = {}

        if await asyncio.to_thread(config_path.exists):
            try:
                lines: list[str] = []
                async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                    async for line in f:
                        lines.append(line)
                config = self._parse_config_lines(lines)
            except OSError as e:
                logger.error("Failed to read config %s: %s", config_path, e)

        return config

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        value = config[key].lower()
        return value in ('true', '1', 'yes', 'on')

    def get_int(self, config: Dict[str, str], key: str, default: int = 0, base: int = 10) -> int:
        """Integer value; ``base=0`` also accepts ``0x`` prefixed hex."""
        if key not in config:
            return default

        try:
            return int(config[key], base)
        except ValueError:
            logger.warning("Invalid int value for %s: %s, using default %d", key, config[key], default)
            return default

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        if key not in config:
            return default

        try:
            return float(config[key])
        except ValueError:
            logger.warning("Invalid float value for %s: %s, using default %f", key, config[key], default)
            return default

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager


def _unescape(value: str) -> str:
    # Terminators are written escaped in the config file, e.g. "\r\n".
    return value.encode('utf-8').decode('unicode_escape')


@dataclass(frozen=True)
class BotConfig:
    """Typed settings consumed by the device control core."""
    vid: int = 0x16C0
    pid: int = 0x0483
    baudrate: int = 230400
    virtual_delay: float = 1.0
    virtual_command_delay: float = 0.05
    primer_command: str = "M501"
    line_terminator: str = "\n"
    command_attempts: int = 3
    command_retry_delay: float = 0.1
    reply_timeout: float = 0.0
    max_pending_commands: int = 8
    usb_scan_interval: float = 1.0
    files_dir: str = "files"
    log_level: str = "info"
    log_file: str = "logs/fabbot.log"

    @classmethod
    def from_config(cls, config: Dict[str, str], manager: Optional[ConfigManager] = None) -> "BotConfig":
        cm = manager or get_config_manager()
        defaults = cls()

        attempts = cm.get_int(config, 'command_attempts', defaults.command_attempts)
        if attempts < 1:
            logger.warning("command_attempts must be at least 1, using %d", defaults.command_attempts)
            attempts = defaults.command_attempts

        max_pending = cm.get_int(config, 'max_pending_commands', defaults.max_pending_commands)
        if max_pending < 1:
            logger.warning("max_pending_commands must be at least 1, using %d", defaults.max_pending_commands)
            max_pending = defaults.max_pending_commands

        return cls(
            vid=cm.get_int(config, 'vid', defaults.vid, base=0),
            pid=cm.get_int(config, 'pid', defaults.pid, base=0),
            baudrate=cm.get_int(config, 'baudrate', defaults.baudrate),
            virtual_delay=cm.get_float(config, 'virtual_delay', defaults.virtual_delay),
            virtual_command_delay=cm.get_float(config, 'virtual_command_delay', defaults.virtual_command_delay),
            primer_command=cm.get_str(config, 'primer_command', defaults.primer_command),
            line_terminator=_unescape(cm.get_str(config, 'line_terminator', '\\n')) or defaults.line_terminator,
            command_attempts=attempts,
            command_retry_delay=cm.get_float(config, 'command_retry_delay', defaults.command_retry_delay),
            reply_timeout=max(0.0, cm.get_float(config, 'reply_timeout', defaults.reply_timeout)),
            max_pending_commands=max_pending,
            usb_scan_interval=cm.get_float(config, 'usb_scan_interval', defaults.usb_scan_interval),
            files_dir=cm.get_str(config, 'files_dir', defaults.files_dir),
            log_level=cm.get_str(config, 'log_level', defaults.log_level),
            log_file=cm.get_str(config, 'log_file', defaults.log_file),
        )

    @classmethod
    async def load(cls, config_path: Path = CONFIG_PATH, manager: Optional[ConfigManager] = None) -> "BotConfig":
        cm = manager or get_config_manager()
        config = await cm.read_config_async(config_path)
        return cls.from_config(config, cm)


__all__ = ["BotConfig", "ConfigManager", "get_config_manager"]
