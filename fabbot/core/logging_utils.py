"""Component-scoped loggers for fabbot.

Every component receives its logger through its constructor; when none is
given it falls back to ``get_module_logger`` so messages still land under the
``fabbot`` namespace with a ``[Component]`` prefix.
"""

from __future__ import annotations

import logging
from typing import Any, MutableMapping, Optional, Tuple, Union

MODULE_LOGGER_NAMESPACE = "fabbot"
DEFAULT_COMPONENT = "Core"


def _normalize_logger_name(name: Optional[str]) -> str:
    if not name:
        return MODULE_LOGGER_NAMESPACE
    if name.startswith(MODULE_LOGGER_NAMESPACE):
        return name
    return f"{MODULE_LOGGER_NAMESPACE}.{name}"


def _derive_component(name: str) -> str:
    if name.startswith(MODULE_LOGGER_NAMESPACE):
        suffix = name[len(MODULE_LOGGER_NAMESPACE):].lstrip(".")
        return suffix or DEFAULT_COMPONENT
    return name or DEFAULT_COMPONENT


class ComponentLogger(logging.LoggerAdapter):
    """LoggerAdapter that prefixes each message with ``[component]``."""

    def __init__(self, logger: logging.Logger, component: Optional[str] = None) -> None:
        super().__init__(logger, {})
        self.component = component or _derive_component(logger.name)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        text = str(msg)
        prefix = f"[{self.component}]"
        if not text.startswith(prefix):
            text = f"{prefix} {text}"
        return text, kwargs

    @property
    def name(self) -> str:
        return self.logger.name

    def getChild(self, suffix: str) -> "ComponentLogger":
        return ComponentLogger(self.logger.getChild(suffix), component=f"{self.component}.{suffix}")

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ComponentLogger({self.logger.name!r}, component={self.component!r})"


LoggerLike = Union[ComponentLogger, logging.Logger, logging.LoggerAdapter, None]


def get_module_logger(name: Optional[str] = None) -> ComponentLogger:
    """Return a component logger scoped to the fabbot namespace."""
    return ComponentLogger(logging.getLogger(_normalize_logger_name(name)))


def ensure_component_logger(logger: LoggerLike, *, fallback_name: Optional[str] = None) -> ComponentLogger:
    """Wrap an injected logger (or create the module default)."""
    if isinstance(logger, ComponentLogger):
        return logger
    if isinstance(logger, logging.LoggerAdapter):
        return ComponentLogger(logger.logger)
    if isinstance(logger, logging.Logger):
        return ComponentLogger(logger)
    return get_module_logger(fallback_name)


__all__ = [
    "ComponentLogger",
    "LoggerLike",
    "ensure_component_logger",
    "get_module_logger",
]
