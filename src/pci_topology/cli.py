#!/usr/bin/env python3
"""
vm-handoff PCI topology - Command Line Interface

Shows which devices would be handed to a VM for a list of PCI addresses.
"""

import argparse
import logging
import sys

from handoff_common.decorators import handle_errors
from handoff_common.exceptions import ExitCode, GPUListError, HandoffError
from handoff_common.logging_config import setup_logging

from .gpu_scanner import VGAScanner
from .resolver import PCITopologyResolver
from .sysfs import SysfsLayout


@handle_errors(GPUListError, default=[], log_level=logging.WARNING,
               message="Could not list VGA controllers")
def list_gpus():
    return VGAScanner().list_vga_devices()


def cmd_resolve(args) -> int:
    """Print the IOMMU groups of the requested devices."""
    sysfs = SysfsLayout(args.sysfs_root)
    resolver = PCITopologyResolver(sysfs)

    try:
        topology = resolver.resolve(args.addresses, continue_on_error=args.lenient)
    except HandoffError as e:
        print(f"❌ {e.message}")
        return int(e.exit_code)
    except ValueError as e:
        print(f"❌ {e}")
        return int(ExitCode.INVALID_CONFIG)

    if not topology:
        print("No IOMMU groups resolved.")
        return 0

    gpus = set(list_gpus()) if args.gpus else set()

    print(f"IOMMU groups: {', '.join(topology.group_ids)}")
    for group in topology.groups:
        print(f"Group {group.group_id}:")
        for device in group.devices:
            driver = sysfs.current_driver(device) or "none"
            marker = " [VGA]" if device in gpus else ""
            print(f"  └─ {device}{marker}  driver: {driver}")
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Resolve PCI devices into their IOMMU groups",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m pci_topology 0000:01:00.0            # GPU and its group siblings
  python -m pci_topology -g 01:00.0 05:00.0      # mark VGA controllers
        """
    )
    parser.add_argument("addresses", nargs="+", help="PCI addresses (DDDD:BB:SS.F)")
    parser.add_argument("-l", "--lenient", action="store_true",
                        help="Skip devices that fail to resolve")
    parser.add_argument("-g", "--gpus", action="store_true",
                        help="Mark VGA controllers (runs lspci)")
    parser.add_argument("--sysfs-root", default="/sys", help=argparse.SUPPRESS)
    args = parser.parse_args(argv)

    setup_logging()
    sys.exit(cmd_resolve(args))


if __name__ == "__main__":
    main()
