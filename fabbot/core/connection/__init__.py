"""
Command delivery to a bot's channel.

- CommandQueue: FIFO, one command in flight, per-entry reply validation
- RetryPolicy: bounded retries for unacknowledged replies
"""

from .command_queue import CommandQueue, DEFAULT_MAX_PENDING, QueueDirective, QueueEntry
from .retry_policy import RetryOutcome, RetryPolicy, RetryResult

__all__ = [
    'CommandQueue',
    'DEFAULT_MAX_PENDING',
    'QueueDirective',
    'QueueEntry',
    'RetryOutcome',
    'RetryPolicy',
    'RetryResult',
]
