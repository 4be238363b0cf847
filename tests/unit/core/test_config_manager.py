import pytest

from fabbot.core.config_manager import BotConfig, ConfigManager
from fabbot.core.paths import CONFIG_PATH


@pytest.fixture()
def manager():
    return ConfigManager()


def test_parse_skips_comments_and_strips_quotes(tmp_path, manager):
    config_path = tmp_path / "config.txt"
    config_path.write_text(
        "# header\n"
        "vid = 0x16C0   # teensy\n"
        "primer_command = 'M501'\n"
        "not a setting\n"
        "\n",
        encoding="utf-8",
    )

    config = manager.read_config(config_path)
    assert config == {"vid": "0x16C0", "primer_command": "M501"}


def test_missing_file_reads_empty(tmp_path, manager):
    assert manager.read_config(tmp_path / "absent.txt") == {}


@pytest.mark.asyncio
async def test_read_config_async_matches_sync(tmp_path, manager):
    config_path = tmp_path / "config.txt"
    config_path.write_text("baudrate = 115200\nvirtual_delay = 0.5\n", encoding="utf-8")

    assert await manager.read_config_async(config_path) == manager.read_config(config_path)


def test_typed_accessors(manager):
    config = {"flag": "yes", "count": "12", "ratio": "0.25", "hex": "0x483", "bad": "abc"}

    assert manager.get_bool(config, "flag") is True
    assert manager.get_int(config, "count") == 12
    assert manager.get_int(config, "hex", base=0) == 0x483
    assert manager.get_float(config, "ratio") == 0.25
    assert manager.get_int(config, "bad", default=7) == 7
    assert manager.get_str(config, "missing", default="x") == "x"


def test_bot_config_defaults():
    config = BotConfig.from_config({})
    assert config == BotConfig()
    assert config.vid == 5824
    assert config.pid == 1155
    assert config.baudrate == 230400
    assert config.primer_command == "M501"
    assert config.line_terminator == "\n"
    assert config.reply_timeout == 0.0


def test_bot_config_from_values():
    config = BotConfig.from_config({
        "vid": "1234",
        "pid": "0x0001",
        "baudrate": "115200",
        "virtual_delay": "0.2",
        "line_terminator": "\\r\\n",
        "command_attempts": "1",
        "max_pending_commands": "0",
    })

    assert config.vid == 1234
    assert config.pid == 1
    assert config.baudrate == 115200
    assert config.virtual_delay == 0.2
    assert config.line_terminator == "\r\n"
    assert config.command_attempts == 1
    assert config.max_pending_commands == BotConfig.max_pending_commands


@pytest.mark.asyncio
async def test_shipped_config_loads():
    config = await BotConfig.load(CONFIG_PATH)
    assert config.vid == 0x16C0
    assert config.pid == 0x0483
    assert config.line_terminator == "\n"
    assert config.command_attempts == 3
