"""
Channels to fabrication hardware.

Implementations:
- SerialChannel: USB serial via pyserial
- VirtualChannel: simulated device with fixed latency
"""

from .base_channel import BaseChannel, expand_code, reply_lines, validate_reply
from .serial_channel import SerialChannel
from .virtual_channel import VirtualChannel

__all__ = [
    'BaseChannel',
    'SerialChannel',
    'VirtualChannel',
    'expand_code',
    'reply_lines',
    'validate_reply',
]
