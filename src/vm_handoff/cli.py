#!/usr/bin/env python3
"""
vm-handoff - Command Line Interface

Hands the host's passthrough devices to a libvirt VM for as long as it
runs, then gives them back.
"""

import argparse
import logging
import sys
from pathlib import Path

from handoff_common.decorators import require_root
from handoff_common.exceptions import ExitCode, HandoffError, VMError
from handoff_common.logging_config import setup_logging
from pci_topology.resolver import PCITopologyResolver

from .config import HandoffConfig
from .core.orchestrator import VMLifecycleOrchestrator
from .core.supervisor import Supervisor
from .core.vm_control import VMControl

logger = logging.getLogger(__name__)


def orchestrator_factory(config: HandoffConfig):
    """Factory the supervisor uses to build an orchestrator in each process."""
    def factory(cancel, state_listener):
        return VMLifecycleOrchestrator(config, cancel=cancel, state_listener=state_listener)
    return factory


@require_root
def cmd_start(args, config: HandoffConfig) -> int:
    """Engage passthrough and run the VM."""
    if args.no_supervisor:
        return int(VMLifecycleOrchestrator(config).run(attach_console=args.console))
    return int(Supervisor(config, orchestrator_factory(config)).run(attach_console=args.console))


@require_root
def cmd_stop(args, config: HandoffConfig) -> int:
    """Stop the VM and restore host drivers."""
    return int(VMLifecycleOrchestrator(config).stop())


def cmd_status(args, config: HandoffConfig) -> int:
    """Show VM state, IOMMU groups and current drivers."""
    vm = VMControl(config.libvirt_uri)

    try:
        state = vm.get_run_state(config.vm_name)
        print(f"VM {config.vm_name}: {state.name.lower()}")
    except VMError as e:
        print(f"⚠️  {e.message}")

    try:
        devices = vm.get_config(config.vm_name)
    except HandoffError as e:
        print(f"❌ {e.message}")
        return int(e.exit_code)

    sysfs = config.sysfs
    topology = PCITopologyResolver(sysfs).resolve(devices, continue_on_error=True)
    if not topology:
        print("No passthrough devices.")
        return 0

    for group in topology.groups:
        print(f"IOMMU group {group.group_id}:")
        for device in group.devices:
            driver = sysfs.current_driver(device) or "none"
            marker = "✅" if driver == config.vfio_driver else "  "
            print(f"  {marker} {device}  driver: {driver}")
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Hand PCI devices to a libvirt VM and back",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sudo vm-handoff start                  # Engage passthrough, wait for the VM to stop
  sudo vm-handoff start --console        # Same, attached to the serial console
  sudo vm-handoff stop                   # Shut the VM down and restore the host
  vm-handoff --vm Gaming status          # Show groups and drivers
        """,
    )
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument("--vm", help="libvirt domain name")
    parser.add_argument("--uri", help="libvirt connection URI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--log-file", type=Path, help="Also log to this file")
    parser.add_argument("--json-logs", action="store_true", help="JSON format for the log file")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    start_parser = subparsers.add_parser("start", help="Engage passthrough and run the VM")
    start_parser.add_argument("--console", action="store_true",
                              help="Attach to the VM console after it starts")
    start_parser.add_argument("--no-supervisor", action="store_true",
                              help="Run the engagement in this process")
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser("stop", help="Stop the VM and restore host drivers")
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser("status", help="Show VM and device state")
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, log_file=args.log_file, json_logs=args.json_logs)

    try:
        config = HandoffConfig.load(args.config, vm_name=args.vm, libvirt_uri=args.uri)
    except HandoffError as e:
        logger.error(e.message)
        sys.exit(int(e.exit_code))

    try:
        code = args.func(args, config)
    except PermissionError as e:
        print(f"❌ {e}")
        code = ExitCode.NOT_ROOT

    sys.exit(int(code))


if __name__ == "__main__":
    main()
