"""USB device identity as seen by the locator."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

DESCRIPTOR_FIELDS = (
    "bLength",
    "bDescriptorType",
    "bcdUSB",
    "bDeviceClass",
    "bDeviceSubClass",
    "bDeviceProtocol",
    "bMaxPacketSize0",
    "idVendor",
    "idProduct",
    "bcdDevice",
    "iManufacturer",
    "iProduct",
    "iSerialNumber",
    "bNumConfigurations",
)

_HEX_ID = re.compile(r"^(?:0x)?([0-9a-f]{1,4})$", re.IGNORECASE)


def parse_usb_id(value: Union[int, str, None]) -> Optional[int]:
    """Parse a vendor/product id given as an int or a hex string."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    match = _HEX_ID.match(value.strip())
    if not match:
        return None
    return int(match.group(1), 16)


@dataclass(frozen=True)
class UsbDevice:
    """Identity of one attached USB device."""
    vendor_id: int
    product_id: int
    bus: Optional[int] = None
    address: Optional[int] = None
    port_numbers: Tuple[int, ...] = ()
    descriptor: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> Tuple[Optional[int], Optional[int], int, int]:
        return (self.bus, self.address, self.vendor_id, self.product_id)

    @property
    def usb_id(self) -> str:
        return f"{self.vendor_id:04x}:{self.product_id:04x}"

    @classmethod
    def from_pyusb(cls, dev: Any) -> "UsbDevice":
        """Build from a ``usb.core.Device``."""
        descriptor = {name: getattr(dev, name, None) for name in DESCRIPTOR_FIELDS}
        return cls(
            vendor_id=dev.idVendor,
            product_id=dev.idProduct,
            bus=getattr(dev, "bus", None),
            address=getattr(dev, "address", None),
            port_numbers=tuple(getattr(dev, "port_numbers", None) or ()),
            descriptor=descriptor,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "busNumber": self.bus,
            "deviceAddress": self.address,
            "deviceDescriptor": dict(self.descriptor),
            "portNumbers": list(self.port_numbers),
        }


# Spoofed descriptor used by virtual bots.
VIRTUAL_DEVICE = UsbDevice(
    vendor_id=5824,
    product_id=1155,
    bus=20,
    address=19,
    port_numbers=(5,),
    descriptor={
        "bLength": 18,
        "bDescriptorType": 1,
        "bcdUSB": 512,
        "bDeviceClass": 2,
        "bDeviceSubClass": 0,
        "bDeviceProtocol": 0,
        "bMaxPacketSize0": 32,
        "idVendor": 5824,
        "idProduct": 1155,
        "bcdDevice": 256,
        "iManufacturer": 1,
        "iProduct": 2,
        "iSerialNumber": 3,
        "bNumConfigurations": 1,
    },
)


__all__ = ["DESCRIPTOR_FIELDS", "UsbDevice", "VIRTUAL_DEVICE", "parse_usb_id"]
