"""vm-handoff PCI topology module.

This module provides:
- PCI device addresses and configuration headers
- The sysfs layout used by the passthrough engine
- IOMMU group resolution of a VM's host devices
- VGA controller listing
"""

from .address import DeviceAddress
from .pci_config import PCIDeviceConfig, is_endpoint, read_config
from .sysfs import SysfsLayout
from .resolver import PCITopologyResolver, IOMMUGroup, TopologyResult
from .gpu_scanner import VGAScanner

__all__ = [
    # Values
    "DeviceAddress",
    "PCIDeviceConfig",
    "is_endpoint",
    "read_config",
    # sysfs
    "SysfsLayout",
    # Resolver
    "PCITopologyResolver",
    "IOMMUGroup",
    "TopologyResult",
    # GPUs
    "VGAScanner",
]

__version__ = "0.1.0"
