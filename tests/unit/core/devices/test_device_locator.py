"""
Tests for USB discovery.

Tests cover:
- UsbDevice construction from pyusb devices and the virtual descriptor
- USBHotplugMonitor attach / detach diffing
- DeviceLocator port resolution and callbacks
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fabbot.core.devices import (
    VIRTUAL_DEVICE,
    DeviceLocator,
    USBHotplugMonitor,
    UsbDevice,
    parse_usb_id,
    port_usb_ids,
)
from fabbot.core.errors import DeviceNotFoundError

TEENSY = UsbDevice(vendor_id=0x16C0, product_id=0x0483, bus=1, address=7)
OTHER = UsbDevice(vendor_id=0x046D, product_id=0x0825, bus=1, address=3)

COMPORTS = "fabbot.core.devices.device_locator.serial.tools.list_ports.comports"


def _port(device, vid=None, pid=None, hwid=""):
    return SimpleNamespace(device=device, vid=vid, pid=pid, hwid=hwid)


class _Enumerator:
    """Enumeration function whose result tests can change."""

    def __init__(self, *devices):
        self.devices = list(devices)

    def __call__(self):
        return list(self.devices)


def _locator(enumerator, **kwargs):
    monitor = USBHotplugMonitor(check_interval=60, enumerate_devices=enumerator)
    return DeviceLocator(0x16C0, 0x0483, monitor=monitor, **kwargs)


class TestUsbDevice:
    """Tests for device identity helpers."""

    def test_from_pyusb(self):
        dev = MagicMock(idVendor=5824, idProduct=1155, bus=2, address=9, port_numbers=(1, 4))
        device = UsbDevice.from_pyusb(dev)

        assert device.vendor_id == 5824
        assert device.product_id == 1155
        assert device.key == (2, 9, 5824, 1155)
        assert device.port_numbers == (1, 4)
        assert device.descriptor["idVendor"] == 5824

    def test_virtual_descriptor(self):
        data = VIRTUAL_DEVICE.to_dict()
        assert data["busNumber"] == 20
        assert data["deviceAddress"] == 19
        assert data["portNumbers"] == [5]
        assert data["deviceDescriptor"]["idVendor"] == 5824
        assert data["deviceDescriptor"]["idProduct"] == 1155
        assert data["deviceDescriptor"]["bNumConfigurations"] == 1

    @pytest.mark.parametrize("value,expected", [
        (5824, 5824),
        ("16c0", 0x16C0),
        ("0x16C0", 0x16C0),
        ("zz", None),
        (None, None),
    ])
    def test_parse_usb_id(self, value, expected):
        assert parse_usb_id(value) == expected

    def test_port_ids_from_attributes(self):
        assert port_usb_ids(_port("/dev/ttyACM0", vid=0x16C0, pid=0x0483)) == (0x16C0, 0x0483)

    def test_port_ids_from_hwid(self):
        port = _port("COM3", hwid="USB VID:PID=16C0:0483 SER=123 LOCATION=1-1")
        assert port_usb_ids(port) == (0x16C0, 0x0483)

    def test_port_without_ids(self):
        assert port_usb_ids(_port("/dev/ttyS0", hwid="n/a")) == (None, None)


class TestUSBHotplugMonitor:
    """Tests for enumeration diffing."""

    @pytest.mark.asyncio
    async def test_start_announces_present_devices(self):
        on_attach = AsyncMock()
        monitor = USBHotplugMonitor(
            on_attach=on_attach, check_interval=60, enumerate_devices=_Enumerator(TEENSY, OTHER),
        )
        await monitor.start()
        try:
            assert monitor.is_running
            assert {call.args[0] for call in on_attach.await_args_list} == {TEENSY, OTHER}
        finally:
            await monitor.stop()

    @pytest.mark.asyncio
    async def test_scan_reports_changes(self):
        enumerator = _Enumerator(TEENSY)
        on_attach, on_detach = AsyncMock(), AsyncMock()
        monitor = USBHotplugMonitor(
            on_attach=on_attach, on_detach=on_detach, enumerate_devices=enumerator,
        )
        await monitor.scan()
        on_attach.reset_mock()

        enumerator.devices = [OTHER]
        await monitor.scan()

        on_detach.assert_awaited_once_with(TEENSY)
        on_attach.assert_awaited_once_with(OTHER)
        assert monitor.devices == [OTHER]

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self):
        on_attach = AsyncMock(side_effect=RuntimeError("boom"))
        monitor = USBHotplugMonitor(on_attach=on_attach, enumerate_devices=_Enumerator(TEENSY))
        await monitor.scan()
        on_attach.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_present_reported_on_later_scans(self):
        on_attach, on_present = AsyncMock(), AsyncMock()
        monitor = USBHotplugMonitor(enumerate_devices=_Enumerator(TEENSY))
        monitor.set_callbacks(on_attach=on_attach, on_present=on_present)

        await monitor.scan()
        on_present.assert_not_awaited()
        await monitor.scan()

        on_attach.assert_awaited_once_with(TEENSY)
        on_present.assert_awaited_once_with(TEENSY)

    @pytest.mark.asyncio
    async def test_enumerates_with_pyusb(self):
        dev = MagicMock(idVendor=0x16C0, idProduct=0x0483, bus=1, address=7, port_numbers=None)
        with patch("fabbot.core.devices.usb_hotplug.usb.core.find", return_value=[dev]) as find:
            monitor = USBHotplugMonitor()
            await monitor.scan()

        find.assert_called_once_with(find_all=True)
        assert monitor.devices[0].key == (1, 7, 0x16C0, 0x0483)


class TestDeviceLocator:
    """Tests for resolving the serial port of the target device."""

    @pytest.mark.asyncio
    async def test_attach_resolves_port_and_detects(self):
        on_detect = AsyncMock()
        locator = _locator(_Enumerator(OTHER, TEENSY), on_detect=on_detect)
        ports = [_port("/dev/ttyS0"), _port("/dev/ttyACM0", vid=0x16C0, pid=0x0483)]

        with patch(COMPORTS, return_value=ports):
            await locator.start()
        await locator.stop()

        on_detect.assert_awaited_once_with(TEENSY, "/dev/ttyACM0")
        assert locator.device == TEENSY
        assert locator.port == "/dev/ttyACM0"

    @pytest.mark.asyncio
    async def test_non_matching_device_ignored(self):
        on_detect = AsyncMock()
        locator = _locator(_Enumerator(), on_detect=on_detect)

        with patch(COMPORTS, return_value=[]) as comports:
            await locator.handle_attach(OTHER)

        on_detect.assert_not_awaited()
        comports.assert_not_called()
        assert locator.device is None

    @pytest.mark.asyncio
    async def test_missing_port_is_not_fatal(self):
        on_detect = AsyncMock()
        locator = _locator(_Enumerator(), on_detect=on_detect)

        with patch(COMPORTS, return_value=[_port("/dev/ttyS0")]):
            await locator.handle_attach(TEENSY)

        on_detect.assert_not_awaited()
        assert locator.port is None

    @pytest.mark.asyncio
    async def test_late_port_detected_on_next_scan(self):
        on_detect = AsyncMock()
        locator = _locator(_Enumerator(TEENSY), on_detect=on_detect)
        port = _port("/dev/ttyACM0", vid=0x16C0, pid=0x0483)

        with patch(COMPORTS, side_effect=[[], [port], [port]]) as comports:
            await locator.monitor.scan()
            assert locator.is_pending
            await locator.monitor.scan()
            await locator.monitor.scan()

        on_detect.assert_awaited_once_with(TEENSY, "/dev/ttyACM0")
        assert comports.call_count == 2
        assert not locator.is_pending

    @pytest.mark.asyncio
    async def test_pending_device_dropped_on_detach(self):
        on_detect, on_unplug = AsyncMock(), AsyncMock()
        enumerator = _Enumerator(TEENSY)
        locator = _locator(enumerator, on_detect=on_detect, on_unplug=on_unplug)

        with patch(COMPORTS, return_value=[]):
            await locator.monitor.scan()
        enumerator.devices = []
        with patch(COMPORTS) as comports:
            await locator.monitor.scan()

        comports.assert_not_called()
        on_detect.assert_not_awaited()
        on_unplug.assert_awaited_once_with(TEENSY)
        assert not locator.is_pending

    @pytest.mark.asyncio
    async def test_set_callbacks_replaces_handlers(self):
        first, second = AsyncMock(), AsyncMock()
        locator = _locator(_Enumerator(TEENSY), on_detect=first)
        locator.set_callbacks(on_detect=second)

        with patch(COMPORTS, return_value=[_port("/dev/ttyACM0", vid=0x16C0, pid=0x0483)]):
            await locator.monitor.scan()

        first.assert_not_awaited()
        second.assert_awaited_once_with(TEENSY, "/dev/ttyACM0")

    @pytest.mark.asyncio
    async def test_resolve_without_device(self):
        locator = _locator(_Enumerator())
        with pytest.raises(DeviceNotFoundError):
            await locator.resolve_port()

    @pytest.mark.asyncio
    async def test_detach_unplugs_without_port_lookup(self):
        on_unplug = AsyncMock()
        locator = _locator(_Enumerator(), on_unplug=on_unplug)
        locator.device, locator.port = TEENSY, "/dev/ttyACM0"

        with patch(COMPORTS) as comports:
            await locator.handle_detach(TEENSY)

        comports.assert_not_called()
        on_unplug.assert_awaited_once_with(TEENSY)
        assert locator.device is None
        assert locator.port is None

    @pytest.mark.asyncio
    async def test_detach_of_other_device_ignored(self):
        on_unplug = AsyncMock()
        locator = _locator(_Enumerator(), on_unplug=on_unplug)
        await locator.handle_detach(OTHER)
        on_unplug.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_replays_known_devices(self):
        on_detect = AsyncMock()
        enumerator = _Enumerator(TEENSY)
        locator = _locator(enumerator, on_detect=on_detect)
        ports = [_port("/dev/ttyACM0", hwid="USB VID:PID=16C0:0483")]

        with patch(COMPORTS, return_value=ports):
            await locator.monitor.scan()
            await locator.refresh()

        assert on_detect.await_count == 2
