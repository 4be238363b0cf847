"""Centralized path constants for fabbot."""

from __future__ import annotations

from pathlib import Path

# Project/package roots
PROJECT_ROOT = Path(__file__).resolve().parents[2]
PACKAGE_ROOT = PROJECT_ROOT / "fabbot"

# Configuration
CONFIG_PATH = PROJECT_ROOT / "config.txt"

# Logging
LOGS_DIR = PROJECT_ROOT / "logs"
DEFAULT_LOG_FILE = LOGS_DIR / "fabbot.log"

# Job files served by the directory catalog
FILES_DIR = PROJECT_ROOT / "files"


def resolve_project_path(value: str | Path) -> Path:
    """Interpret relative config paths against the project root."""
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return PROJECT_ROOT / path


__all__ = [
    'PROJECT_ROOT',
    'PACKAGE_ROOT',
    'CONFIG_PATH',
    'LOGS_DIR',
    'DEFAULT_LOG_FILE',
    'FILES_DIR',
    'resolve_project_path',
]
