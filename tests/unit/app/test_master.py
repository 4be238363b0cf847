"""Tests for the command-line entry point."""

from unittest.mock import patch

import pytest

from fabbot.app import master
from fabbot.core.paths import CONFIG_PATH


def test_parse_args_defaults():
    args = master.parse_args([])
    assert args.config == CONFIG_PATH
    assert not args.virtual
    assert args.job is None
    assert args.log_level is None
    assert args.console_output is True


def test_parse_args_options(tmp_path):
    args = master.parse_args([
        "--config", str(tmp_path / "bot.txt"),
        "--virtual",
        "--job", "cube.gcode",
        "--log-level", "debug",
        "--no-console",
    ])
    assert args.config == tmp_path / "bot.txt"
    assert args.virtual
    assert args.job == "cube.gcode"
    assert args.log_level == "debug"
    assert args.console_output is False


@pytest.mark.asyncio
async def test_virtual_job_run_exits_when_done(tmp_path, files_dir, make_job_file):
    make_job_file("cube.gcode", "G28\nG1 X10 ; move\nM84\n")
    config_path = tmp_path / "config.txt"
    config_path.write_text(
        f"files_dir = {files_dir}\n"
        f"log_file = {tmp_path / 'fabbot.log'}\n"
        "virtual_delay = 0.01\n"
        "virtual_command_delay = 0\n",
        encoding="utf-8",
    )

    with patch.object(master, "configure_logging") as configure:
        await master.main(["--config", str(config_path), "--virtual", "--job", "cube.gcode"])

    configure.assert_called_once()
    assert configure.call_args.args[0] == "info"
