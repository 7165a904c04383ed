#!/usr/bin/env python3
"""vm-handoff PCI topology - Module entry point."""

from pci_topology.cli import main

if __name__ == "__main__":
    main()
