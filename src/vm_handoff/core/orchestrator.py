"""
VM Lifecycle Orchestrator

Engage:  resolve devices -> release host GPU -> load vfio-pci -> bind devices
         -> wait for /dev/vfio nodes -> start VM -> wait for it to stop
Restore: stop VM -> restore original drivers -> rescan bus -> reacquire GPU

Restore runs from a finally block whenever host state was touched, so a
failure or cancellation anywhere in the engage path unwinds through it.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, List, Optional

from handoff_common.decorators import timed
from handoff_common.exceptions import (
    DriverOverrideError, EngagementInterrupted, ExitCode, HandoffError,
    ModuleLoadError, VFIONotReadyError,
)
from handoff_common.logging_config import LogContext
from handoff_common.polling import RetryPolicy, poll_until
from pci_topology.gpu_scanner import VGAScanner
from pci_topology.resolver import PCITopologyResolver, TopologyResult

from ..config import HandoffConfig
from ..host.modules import KernelModuleControl
from ..host.services import ServiceControl
from ..passthrough.driver_rebind import DriverRebindEngine
from ..passthrough.gpu_subsystem import GPUSubsystemController
from ..passthrough.guarded_write import GuardedWriter
from .state_machine import EngagementState, EngagementStateMachine, StateListener
from .vm_control import VMControl

logger = logging.getLogger(__name__)

# Poll interval while waiting for a graceful guest shutdown
SHUTDOWN_POLL_INTERVAL = 1.0


class VMLifecycleOrchestrator:
    """
    Runs one engage/restore cycle for the configured VM.

    Args:
        config: Handoff configuration
        vm_control: VM control service (libvirt by default)
        modules: Kernel module control
        services: Service control
        scanner: VGA device lister
        writer: Guarded control-file writer
        cancel: Event checked at every checkpoint and wait; set it to abort
        state_listener: Function(old_state, new_state) called on every transition
        sleep: Pause used for waits that must not be cancelled
    """

    def __init__(
        self,
        config: HandoffConfig,
        vm_control: Optional[VMControl] = None,
        modules: Optional[KernelModuleControl] = None,
        services: Optional[ServiceControl] = None,
        scanner: Optional[VGAScanner] = None,
        writer: Optional[GuardedWriter] = None,
        cancel=None,
        state_listener: Optional[StateListener] = None,
        sleep: Callable[[float], object] = time.sleep,
    ):
        self.config = config
        self.sysfs = config.sysfs
        self.vm = vm_control or VMControl(config.libvirt_uri)
        self.modules = modules or KernelModuleControl()
        self.writer = writer or GuardedWriter(timeout=config.write_timeout)
        self.resolver = PCITopologyResolver(self.sysfs)
        self.rebind = DriverRebindEngine(self.writer, self.sysfs, config.vfio_driver)
        self.gpu = GPUSubsystemController(
            config, self.writer, self.rebind,
            modules=self.modules,
            services=services,
            scanner=scanner,
            sleep=sleep,
        )
        self.cancel = cancel
        self._sleep = sleep

        self.machine = EngagementStateMachine(config.vm_name)
        if state_listener is not None:
            self.machine.on_transition(state_listener)

    @property
    def state(self) -> EngagementState:
        return self.machine.state

    # =========================================================================
    # Commands
    # =========================================================================

    def run(self, attach_console: bool = False) -> ExitCode:
        """
        Engage passthrough, run the VM until it stops, then restore.

        Returns:
            ExitCode.OK, or the exit code of the failure that ended the run.
        """
        name = self.config.vm_name
        topology: Optional[TopologyResult] = None
        exit_code = ExitCode.OK

        with LogContext(vm_name=name, operation="start"):
            try:
                topology = self.resolve(strict=True)
                self.machine.transition(EngagementState.DEVICES_RESOLVED)

                if self.vm.is_running(name):
                    logger.warning(f"VM {name} is already running! Waiting for it to stop...")
                    self._wait_for_vm_stop()
                    self.machine.transition(EngagementState.RESTORING)
                else:
                    self._engage(topology, attach_console)

            except HandoffError as e:
                logger.error(str(e))
                exit_code = e.exit_code
            except KeyboardInterrupt:
                logger.warning("Interrupted, restoring host...")
                exit_code = ExitCode.INTERRUPTED
            finally:
                if topology is not None and self.machine.needs_restore:
                    self.restore(topology)
                elif self.state == EngagementState.DEVICES_RESOLVED:
                    # Nothing on the host was changed
                    self.machine.transition(EngagementState.IDLE)

        return exit_code

    def stop(self) -> ExitCode:
        """Shut the VM down and give every device back to the host."""
        with LogContext(vm_name=self.config.vm_name, operation="stop"):
            try:
                topology = self.resolve(strict=False)
            except HandoffError as e:
                logger.error(str(e))
                return e.exit_code

            self.machine.transition(EngagementState.DEVICES_RESOLVED)
            self.restore(topology)
        return ExitCode.OK

    def recover(self) -> List[str]:
        """
        Restore the host after the engaging process died or was killed.

        Returns:
            Restore warnings.
        """
        with LogContext(vm_name=self.config.vm_name, operation="recover"):
            try:
                topology = self.resolve(strict=False)
            except HandoffError as e:
                logger.error(f"Cannot recover: {e}")
                return [e.message]

            self.machine.transition(EngagementState.DEVICES_RESOLVED)
            return self.restore(topology)

    def resolve(self, strict: bool = True) -> TopologyResult:
        """
        Resolve the VM's hostdevs into IOMMU groups.

        Raises:
            ConfigUnavailableError: The VM definition can't be read
            DeviceNotFoundError, IOMMUUnsupportedError: strict mode only
        """
        addresses = self.vm.get_config(self.config.vm_name)
        if not addresses:
            logger.warning(f"VM {self.config.vm_name} has no PCI devices assigned")
        return self.resolver.resolve(addresses, continue_on_error=not strict)

    # =========================================================================
    # Engage
    # =========================================================================

    def _engage(self, topology: TopologyResult, attach_console: bool) -> None:
        name = self.config.vm_name
        devices = topology.devices

        self._checkpoint()
        self.machine.transition(EngagementState.ENGAGING)

        self.gpu.release(devices)
        self._checkpoint()

        module = self.config.vfio_module
        result = self.modules.load(module)
        if not result.success:
            raise ModuleLoadError(module, result.output)

        for address in devices:
            self._checkpoint()
            bound = self.rebind.bind_passthrough(address)
            if not bound.success:
                raise DriverOverrideError(str(address), bound.message, kind=bound.kind)

        self.machine.transition(EngagementState.PASSTHROUGH_ENGAGED)

        if self.config.wait_for_vfio_nodes:
            self._wait_for_vfio_nodes(topology)
        self._checkpoint()

        self.vm.start(name, attach_console=attach_console)
        self.machine.transition(EngagementState.VM_RUNNING)

        self._wait_for_vm_stop()
        logger.info(f"VM {name} has stopped")
        self.machine.transition(EngagementState.VM_EXITED)

    def _wait_for_vfio_nodes(self, topology: TopologyResult) -> None:
        """
        Wait until /dev/vfio/<group> exists for every group.

        Raises:
            VFIONotReadyError: Nodes still missing after vfio_ready_timeout
        """
        def missing() -> List[str]:
            return [
                group.group_id for group in topology.groups
                if not self.sysfs.vfio_node(group.group_id).exists()
            ]

        interval = self.config.vfio_ready_interval
        timeout = self.config.vfio_ready_timeout
        attempts = math.ceil(timeout / interval) if interval > 0 else 1
        policy = RetryPolicy(interval=interval, max_attempts=max(1, attempts))

        if not poll_until(lambda: not missing(), policy, check_first=True, sleep=self._wait):
            raise VFIONotReadyError(missing(), timeout)
        logger.debug("VFIO device nodes ready")

    def _wait_for_vm_stop(self) -> None:
        """Poll the run state until the VM is no longer running."""
        name = self.config.vm_name
        poll_until(
            lambda: not self.vm.is_running(name),
            RetryPolicy(interval=self.config.vm_poll_interval),
            check_first=True,
            sleep=self._wait,
        )

    def _wait(self, seconds: float) -> None:
        """Cancellable pause."""
        if self.cancel is None:
            self._sleep(seconds)
            return
        if self.cancel.wait(seconds):
            raise EngagementInterrupted()

    def _checkpoint(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise EngagementInterrupted()

    # =========================================================================
    # Restore
    # =========================================================================

    @timed
    def restore(self, topology: TopologyResult) -> List[str]:
        """
        Undo an engagement, however far it got. Never raises.

        Operates on the full resolved device set; every step runs even when
        an earlier one failed.

        Returns:
            Warnings for every step that did not fully succeed.
        """
        self._enter_restoring()
        devices = topology.devices
        warnings: List[str] = []

        try:
            self._restore_step("vm", self._stop_vm_if_running, warnings)
            self._restore_step("rebind", lambda: self._restore_drivers(devices), warnings)
            self._restore_step("rescan", self._rescan_bus, warnings)
            self._restore_step("reacquire", lambda: self.gpu.reacquire(devices), warnings)
        finally:
            self.machine.transition(EngagementState.IDLE)

        if warnings:
            logger.warning(f"Restore finished with {len(warnings)} warning(s)")
        else:
            logger.info("Host restored")
        return warnings

    @staticmethod
    def _restore_step(name: str, step: Callable[[], List[str]], warnings: List[str]) -> None:
        """Run one restore step; an unexpected error becomes a warning."""
        with LogContext(step=name):
            try:
                warnings.extend(step())
            except Exception as e:
                logger.exception(f"Restore step '{name}' failed: {e}")
                warnings.append(f"restore step '{name}' failed: {e}")

    def _stop_vm_if_running(self) -> List[str]:
        if self.vm.is_running(self.config.vm_name):
            return self._stop_vm()
        return []

    def _restore_drivers(self, devices) -> List[str]:
        warnings: List[str] = []
        for result in self.rebind.restore_all(devices):
            warnings.extend(result.warnings)
        return warnings

    def _rescan_bus(self) -> List[str]:
        rescan = self.writer.write(self.sysfs.rescan, "1")
        if rescan.success:
            return []
        message = f"PCI bus rescan failed: {rescan.message}"
        logger.warning(message)
        return [message]

    def _enter_restoring(self) -> None:
        state = self.state
        if state == EngagementState.RESTORING:
            return
        if state == EngagementState.IDLE:
            self.machine.transition(EngagementState.DEVICES_RESOLVED)
        elif state in (
            EngagementState.ENGAGING,
            EngagementState.PASSTHROUGH_ENGAGED,
            EngagementState.VM_RUNNING,
        ):
            self.machine.transition(EngagementState.ABORTED)
        self.machine.transition(EngagementState.RESTORING)

    def _stop_vm(self) -> List[str]:
        """Graceful shutdown, then force stop after vm_shutdown_timeout."""
        name = self.config.vm_name
        timeout = self.config.vm_shutdown_timeout

        if self.vm.shutdown(name):
            policy = RetryPolicy(
                interval=SHUTDOWN_POLL_INTERVAL,
                max_attempts=max(1, math.ceil(timeout / SHUTDOWN_POLL_INTERVAL)),
            )
            if poll_until(lambda: not self.vm.is_running(name), policy, sleep=self._sleep):
                return []

        logger.warning(f"VM {name} did not shut down within {timeout}s, forcing it off")
        self.vm.force_stop(name)
        if self.vm.is_running(name):
            message = f"VM {name} is still running, devices may not restore"
            logger.warning(message)
            return [message]
        return []
