#!/usr/bin/env python3
"""vm-handoff - Module entry point."""

from vm_handoff.cli import main

if __name__ == "__main__":
    main()
