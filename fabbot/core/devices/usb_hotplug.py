"""
USB Hotplug Monitor - Turns periodic USB enumeration into attach/detach events.

pyusb has no portable hotplug callback, so the monitor enumerates the bus
every ``check_interval`` seconds (in a worker thread) and diffs the result
against the previous snapshot. Devices are keyed by bus, address and
vendor/product id, so a replug onto a new address reads as detach + attach.

Usage:
    monitor = USBHotplugMonitor(on_attach=handle_attach, on_detach=handle_detach)
    await monitor.start()   # emits attach for every device already present
    ...
    await monitor.stop()
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import usb.core

from fabbot.core.logging_utils import LoggerLike, ensure_component_logger

from .types import UsbDevice

USBDeviceCallback = Callable[[UsbDevice], Awaitable[None]]

DEFAULT_CHECK_INTERVAL = 1.0


def enumerate_usb_devices() -> List[UsbDevice]:
    """List attached USB devices (blocking)."""
    return [UsbDevice.from_pyusb(dev) for dev in usb.core.find(find_all=True)]


class USBHotplugMonitor:
    """Polls the USB bus and reports devices that appear or disappear."""

    def __init__(
        self,
        on_attach: Optional[USBDeviceCallback] = None,
        on_detach: Optional[USBDeviceCallback] = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        enumerate_devices: Callable[[], List[UsbDevice]] = enumerate_usb_devices,
        on_present: Optional[USBDeviceCallback] = None,
        logger: LoggerLike = None,
    ):
        """
        Args:
            on_attach: Awaited for every newly seen device.
            on_detach: Awaited for every device that disappeared.
            check_interval: Seconds between enumerations.
            enumerate_devices: Blocking enumeration function.
            on_present: Awaited on every later scan for each device that is
                still attached.
            logger: Injected logger.
        """
        self.logger = ensure_component_logger(logger, fallback_name="USBHotplugMonitor")
        self._on_attach = on_attach
        self._on_detach = on_detach
        self._on_present = on_present
        self._check_interval = check_interval
        self._enumerate = enumerate_devices
        self._known: Dict[tuple, UsbDevice] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def set_callbacks(
        self,
        on_attach: Optional[USBDeviceCallback] = None,
        on_detach: Optional[USBDeviceCallback] = None,
        on_present: Optional[USBDeviceCallback] = None,
    ) -> None:
        """Replace the event callbacks."""
        self._on_attach = on_attach
        self._on_detach = on_detach
        self._on_present = on_present

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def devices(self) -> List[UsbDevice]:
        return list(self._known.values())

    async def start(self) -> None:
        """Enumerate once, announce present devices and start polling.

        Raises:
            usb.core.NoBackendError: if no libusb backend is available.
        """
        if self._running:
            return

        await self.scan()
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        self.logger.info("USB hotplug monitor started (%d device(s) present)", len(self._known))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._known.clear()
        self.logger.info("USB hotplug monitor stopped")

    async def scan(self) -> None:
        """Enumerate now and emit events for every change."""
        current = {dev.key: dev for dev in await asyncio.to_thread(self._enumerate)}

        attached = [dev for key, dev in current.items() if key not in self._known]
        detached = [dev for key, dev in self._known.items() if key not in current]
        present = [dev for key, dev in current.items() if key in self._known]
        self._known = current

        for dev in detached:
            self.logger.info("USB device removed: %s (bus %s, address %s)", dev.usb_id, dev.bus, dev.address)
            await self._dispatch(self._on_detach, dev)
        for dev in attached:
            self.logger.debug("USB device attached: %s (bus %s, address %s)", dev.usb_id, dev.bus, dev.address)
            await self._dispatch(self._on_attach, dev)
        for dev in present:
            await self._dispatch(self._on_present, dev)

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._check_interval)
                await self.scan()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in USB hotplug monitor: %s", e)

    async def _dispatch(self, callback: Optional[USBDeviceCallback], dev: UsbDevice) -> None:
        if callback is None:
            return
        try:
            await callback(dev)
        except Exception as e:
            self.logger.error("Error in USB hotplug callback for %s: %s", dev.usb_id, e)


__all__ = ["USBHotplugMonitor", "enumerate_usb_devices", "DEFAULT_CHECK_INTERVAL"]
