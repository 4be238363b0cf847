"""Exception types raised by the fabbot device control core."""

from __future__ import annotations

from typing import Optional


class BotError(RuntimeError):
    """Base class for every error raised by the control core."""


class TransitionTableError(BotError):
    """The lifecycle transition table is malformed."""


class InvalidTransitionError(BotError):
    """An event was fired from a state that does not declare it."""

    def __init__(self, event: str, state: str):
        self.event = event
        self.state = state
        super().__init__(f'Invalid state change action "{event}". State at "{state}".')


class UnsupportedCommandError(BotError):
    """A lifecycle or job command token is not recognised."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f'Command "{command}" is not supported.')


class ChannelError(BotError):
    """Opening, writing to, or closing the hardware channel failed."""


class CommandValidationError(BotError):
    """A command never received an acknowledged reply."""

    def __init__(self, command: str, reply: Optional[str], attempts: int):
        self.command = command
        self.reply = reply
        self.attempts = attempts
        super().__init__(
            f"Command {command!r} not acknowledged after {attempts} attempt(s); last reply {reply!r}"
        )


class CommandAbandonedError(BotError):
    """A queued command was discarded before it was sent."""


class DeviceNotFoundError(BotError):
    """No serial port matches the attached USB device."""


class JobError(BotError):
    """A job operation could not be carried out."""


__all__ = [
    "BotError",
    "ChannelError",
    "CommandAbandonedError",
    "CommandValidationError",
    "DeviceNotFoundError",
    "InvalidTransitionError",
    "JobError",
    "TransitionTableError",
    "UnsupportedCommandError",
]
