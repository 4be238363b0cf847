"""Shared pytest configuration and fixtures for the fabbot test suite."""

import sys
from pathlib import Path
from typing import Callable, List

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring a physical USB device"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require physical hardware",
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --run-hardware is specified."""
    if config.getoption("--run-hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def files_dir(tmp_path) -> Path:
    """Directory served by the job file catalog."""
    path = tmp_path / "files"
    path.mkdir()
    return path


@pytest.fixture
def make_job_file(files_dir) -> Callable[[str, str], Path]:
    """Write a job file into ``files_dir`` and return its path."""

    def _make(name: str, content: str) -> Path:
        path = files_dir / name
        path.write_bytes(content.encode("utf-8"))
        return path

    return _make


@pytest.fixture
def catalog(files_dir):
    from fabbot.core.files import DirectoryFileCatalog
    return DirectoryFileCatalog(files_dir)


@pytest.fixture
def fast_config(files_dir):
    """BotConfig with short virtual delays."""
    from fabbot.core.config_manager import BotConfig
    return BotConfig(
        virtual_delay=0.05,
        virtual_command_delay=0.0,
        command_retry_delay=0.0,
        files_dir=str(files_dir),
    )


@pytest.fixture
def state_log() -> List[str]:
    """List that a stateChange observer can append to."""
    return []


# =============================================================================
# Mock Fixtures
# =============================================================================

@pytest.fixture
def mock_serial_device():
    """Create a mock Marlin-style serial device for testing."""
    from tests.infrastructure.mocks.serial_mocks import MockMarlinDevice
    return MockMarlinDevice()
