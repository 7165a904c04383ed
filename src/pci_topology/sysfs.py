"""
sysfs layout.

Every kernel-facing path the handoff touches, rooted at a configurable
directory so tests can point it at a fake tree.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Union

from .address import DeviceAddress

AddressLike = Union[str, DeviceAddress]


class SysfsLayout:
    """Paths under /sys (and /dev) used by the passthrough engine."""

    def __init__(self, root: Union[str, Path] = "/sys", dev_root: Union[str, Path] = "/dev"):
        self.root = Path(root)
        self.dev_root = Path(dev_root)

    # -- PCI bus -------------------------------------------------------------

    @property
    def pci_bus(self) -> Path:
        return self.root / "bus" / "pci"

    @property
    def pci_devices(self) -> Path:
        return self.pci_bus / "devices"

    @property
    def drivers_probe(self) -> Path:
        return self.pci_bus / "drivers_probe"

    @property
    def rescan(self) -> Path:
        return self.pci_bus / "rescan"

    def device(self, address: AddressLike) -> Path:
        return self.pci_devices / str(address)

    def driver_override(self, address: AddressLike) -> Path:
        return self.device(address) / "driver_override"

    def driver_link(self, address: AddressLike) -> Path:
        return self.device(address) / "driver"

    def driver_unbind(self, address: AddressLike) -> Path:
        return self.driver_link(address) / "unbind"

    def config(self, address: AddressLike) -> Path:
        return self.device(address) / "config"

    def iommu_group_link(self, address: AddressLike) -> Path:
        return self.device(address) / "iommu_group"

    # -- Console and framebuffer ----------------------------------------------

    @property
    def vtconsoles(self) -> Path:
        return self.root / "class" / "vtconsole"

    def platform_driver(self, name: str) -> Path:
        return self.root / "bus" / "platform" / "drivers" / name

    # -- Device nodes ---------------------------------------------------------

    def vfio_node(self, group_id: str) -> Path:
        return self.dev_root / "vfio" / str(group_id)

    # -- Readers --------------------------------------------------------------

    def current_driver(self, address: AddressLike) -> str:
        """Name of the bound driver, or "" if the device is unbound."""
        link = self.driver_link(address)
        if not link.is_symlink():
            return ""
        return os.path.basename(os.readlink(link))

    def iommu_group_id(self, address: AddressLike) -> Optional[str]:
        """IOMMU group id of a device, or None without IOMMU."""
        link = self.iommu_group_link(address)
        if link.is_symlink():
            return os.path.basename(os.readlink(link))
        if link.is_dir():
            return link.resolve().name
        return None

    def iommu_group_members(self, address: AddressLike) -> List[str]:
        """Address strings of every device sharing the IOMMU group."""
        devices_dir = self.iommu_group_link(address) / "devices"
        if not devices_dir.is_dir():
            return []
        return sorted(entry.name for entry in devices_dir.iterdir() if entry.is_symlink())
