"""
Device Locator - Bridges USB hotplug events to a serial port path.

On attach of a device whose vendor/product ids match the configured target,
the locator scans the system serial ports for one reporting the same ids
and, when found, hands the device and port to ``on_detect``. On detach of a
matching device it calls ``on_unplug`` straight away; no port lookup is
needed to tear down.

A missing port is not an error: the locator retries the lookup on every
monitor scan until the port shows up or the device detaches.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional, Tuple

import serial.tools.list_ports

from fabbot.core.errors import DeviceNotFoundError
from fabbot.core.logging_utils import LoggerLike, ensure_component_logger

from .types import UsbDevice, parse_usb_id
from .usb_hotplug import DEFAULT_CHECK_INTERVAL, USBHotplugMonitor

DetectCallback = Callable[[UsbDevice, str], Awaitable[None]]
UnplugCallback = Callable[[UsbDevice], Awaitable[None]]

_HWID_IDS = re.compile(r"VID:PID=([0-9A-Fa-f]{1,4}):([0-9A-Fa-f]{1,4})")


def port_usb_ids(port_info: Any) -> Tuple[Optional[int], Optional[int]]:
    """Vendor/product ids reported for a serial port, if any."""
    vid = parse_usb_id(getattr(port_info, "vid", None))
    pid = parse_usb_id(getattr(port_info, "pid", None))
    if vid is not None and pid is not None:
        return vid, pid

    match = _HWID_IDS.search(getattr(port_info, "hwid", "") or "")
    if match:
        return int(match.group(1), 16), int(match.group(2), 16)
    return None, None


class DeviceLocator:
    """
    Watches for the target device and resolves its serial port.

    Usage:
        locator = DeviceLocator(0x16C0, 0x0483, on_detect=bot.on_device_found,
                                on_unplug=bot.on_device_lost)
        await locator.start()
    """

    def __init__(
        self,
        vendor_id: int,
        product_id: int,
        on_detect: Optional[DetectCallback] = None,
        on_unplug: Optional[UnplugCallback] = None,
        monitor: Optional[USBHotplugMonitor] = None,
        scan_interval: float = DEFAULT_CHECK_INTERVAL,
        logger: LoggerLike = None,
    ):
        self.logger = ensure_component_logger(logger, fallback_name="DeviceLocator")
        self.vendor_id = vendor_id
        self.product_id = product_id
        self._on_detect = on_detect
        self._on_unplug = on_unplug
        self._monitor = monitor or USBHotplugMonitor(check_interval=scan_interval, logger=self.logger.getChild("USB"))
        self._monitor.set_callbacks(
            on_attach=self.handle_attach,
            on_detach=self.handle_detach,
            on_present=self.handle_present,
        )

        self.device: Optional[UsbDevice] = None
        self.port: Optional[str] = None

    def set_callbacks(
        self,
        on_detect: Optional[DetectCallback] = None,
        on_unplug: Optional[UnplugCallback] = None,
    ) -> None:
        self._on_detect = on_detect
        self._on_unplug = on_unplug

    @property
    def monitor(self) -> USBHotplugMonitor:
        return self._monitor

    @property
    def is_pending(self) -> bool:
        """A matching device is attached but its serial port is not known yet."""
        return self.device is not None and self.port is None

    def matches(self, device: UsbDevice) -> bool:
        return device.vendor_id == self.vendor_id and device.product_id == self.product_id

    async def start(self) -> None:
        """Start hotplug monitoring; devices already attached are handled first."""
        self.logger.info(
            "Watching for USB device %04x:%04x", self.vendor_id, self.product_id
        )
        await self._monitor.start()

    async def stop(self) -> None:
        await self._monitor.stop()

    async def refresh(self) -> None:
        """Re-run attach handling for devices the monitor already knows."""
        for device in self._monitor.devices:
            await self.handle_attach(device)

    async def resolve_port(self) -> str:
        """Find the serial port belonging to the current device.

        Raises:
            DeviceNotFoundError: if no device is known or no port matches.
        """
        device = self.device
        if device is None:
            raise DeviceNotFoundError("No device identity known yet")

        ports = await asyncio.to_thread(serial.tools.list_ports.comports)
        for port_info in ports:
            vid, pid = port_usb_ids(port_info)
            if vid == device.vendor_id and pid == device.product_id:
                return port_info.device
        raise DeviceNotFoundError(f"No serial port reports {device.usb_id}")

    async def handle_attach(self, device: UsbDevice) -> None:
        if not self.matches(device):
            return

        self.device = device
        try:
            self.port = await self.resolve_port()
        except DeviceNotFoundError as e:
            self.logger.info("Device %s attached but not ready: %s", device.usb_id, e)
            return
        await self._detected(device)

    async def handle_present(self, device: UsbDevice) -> None:
        # The tty node can appear after the USB device enumerates.
        if not (self.is_pending and device == self.device):
            return
        try:
            self.port = await self.resolve_port()
        except DeviceNotFoundError as e:
            self.logger.debug("Still waiting for a port for %s: %s", device.usb_id, e)
            return
        await self._detected(device)

    async def handle_detach(self, device: UsbDevice) -> None:
        if not self.matches(device):
            return

        self.logger.info("Device %s detached", device.usb_id)
        self.device = None
        self.port = None
        if self._on_unplug:
            await self._on_unplug(device)

    async def _detected(self, device: UsbDevice) -> None:
        self.logger.info("Device %s found on %s", device.usb_id, self.port)
        if self._on_detect:
            await self._on_detect(device, self.port)


__all__ = ["DeviceLocator", "port_usb_ids"]
