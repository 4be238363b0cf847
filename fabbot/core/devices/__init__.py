"""USB device discovery for fabbot."""

from .device_locator import DeviceLocator, port_usb_ids
from .types import VIRTUAL_DEVICE, UsbDevice, parse_usb_id
from .usb_hotplug import USBHotplugMonitor, enumerate_usb_devices

__all__ = [
    'DeviceLocator',
    'USBHotplugMonitor',
    'UsbDevice',
    'VIRTUAL_DEVICE',
    'enumerate_usb_devices',
    'parse_usb_id',
    'port_usb_ids',
]
