"""
PCI configuration space header.

Decodes the first 16 bytes of a device's sysfs "config" file. Only the
header type decides anything here: it tells endpoints from bridges.
"""

import logging
import struct
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

HEADER_FORMAT = "<HHHHBBHBBBB"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 16 bytes

MULTI_FUNCTION_BIT = 1 << 7
TYPE_MASK = MULTI_FUNCTION_BIT ^ 0xFF

HEADER_TYPE_ENDPOINT = 0x00
HEADER_TYPE_BRIDGE = 0x01
HEADER_TYPE_CARDBUS = 0x02
# What a faulted or powered-off device reads back (all ones)
HEADER_TYPE_UNINITIALIZED = 0xFF & TYPE_MASK


def is_endpoint(header_type: int) -> bool:
    """
    Check whether a header type describes an endpoint device.

    Layout 0 is a normal endpoint. The all-ones sentinel also counts as
    one so that a device left broken by a kernel fault still gets restored.
    Bridges (layout 1) and CardBus bridges (layout 2) do not.
    """
    layout = header_type & TYPE_MASK
    return layout in (HEADER_TYPE_ENDPOINT, HEADER_TYPE_UNINITIALIZED)


@dataclass(frozen=True)
class PCIDeviceConfig:
    """Standard PCI configuration header (offsets 0x00-0x0f)."""

    vendor_id: int
    device_id: int
    command: int
    status: int
    revision_id: int
    prog_if: int
    class_code: int        # base class << 8 | subclass
    cache_line_size: int
    latency_timer: int
    header_type: int
    bist: int

    @property
    def base_class(self) -> int:
        return self.class_code >> 8

    @property
    def subclass(self) -> int:
        return self.class_code & 0xFF

    @property
    def is_multi_function(self) -> bool:
        return bool(self.header_type & MULTI_FUNCTION_BIT)

    @property
    def layout(self) -> int:
        return self.header_type & TYPE_MASK

    @property
    def is_endpoint(self) -> bool:
        return is_endpoint(self.header_type)

    @property
    def is_bridge(self) -> bool:
        return self.layout == HEADER_TYPE_BRIDGE

    @classmethod
    def from_bytes(cls, data: bytes) -> "PCIDeviceConfig":
        """
        Decode a raw header.

        Raises:
            ValueError: If fewer than 16 bytes are given
        """
        if len(data) < HEADER_SIZE:
            raise ValueError(f"PCI config header needs {HEADER_SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack_from(HEADER_FORMAT, data))

    @classmethod
    def uninitialized(cls) -> "PCIDeviceConfig":
        """Header as read from a device that no longer answers."""
        return cls.from_bytes(b"\xff" * HEADER_SIZE)


def read_config(config_path: Path) -> PCIDeviceConfig:
    """
    Read a device's config header from sysfs.

    An unreadable or truncated file is reported and decoded as the
    uninitialized sentinel rather than raising.
    """
    try:
        with open(config_path, "rb") as f:
            data = f.read(HEADER_SIZE)
        return PCIDeviceConfig.from_bytes(data)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read PCI config {config_path}: {e}")
        return PCIDeviceConfig.uninitialized()
