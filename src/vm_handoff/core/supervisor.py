"""
Supervisor - runs an engagement in a child process it can always kill.

The child ignores SIGINT and reports every state change through a shared
integer. The supervisor owns the only SIGINT/SIGTERM handler: the first
signal asks the child to cancel, later ones are ignored until the run is
over. If the child hangs past its grace period it is SIGKILLed, and when
the last reported state says the host was left engaged the supervisor
runs the restore itself.
"""

from __future__ import annotations

import logging
import multiprocessing
import signal
import sys
import time
from typing import Callable, Dict, Optional

from handoff_common.exceptions import ExitCode

from ..config import HandoffConfig
from .state_machine import EngagementState, needs_restore
from .vm_control import VMControl

logger = logging.getLogger(__name__)

# States where the child is changing host state and must not sit for long
ENGAGE_WINDOW = frozenset({
    EngagementState.ENGAGING,
    EngagementState.PASSTHROUGH_ENGAGED,
})

OrchestratorFactory = Callable[..., object]


def _engage_child(factory: OrchestratorFactory, cancel, shared_state) -> None:
    """Child side: run the orchestrator, mirroring its state to the parent."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)

    def mirror(old_state: EngagementState, new_state: EngagementState) -> None:
        shared_state.value = new_state.value

    try:
        exit_code = factory(cancel, mirror).run(attach_console=False)
    except Exception as e:
        logger.exception(f"Engagement crashed: {e}")
        exit_code = ExitCode.FAILED
    sys.exit(int(exit_code))


class Supervisor:
    """
    Supervises one engagement.

    Args:
        config: Handoff configuration (timeouts, VM name)
        orchestrator_factory: Function(cancel_event, state_listener) returning
            a VMLifecycleOrchestrator; called with (None, None) for recovery
        console: Function(vm_name) attaching an interactive console
        poll_interval: How often the child's state is checked (seconds)
    """

    def __init__(
        self,
        config: HandoffConfig,
        orchestrator_factory: OrchestratorFactory,
        console: Optional[Callable[[str], object]] = None,
        poll_interval: float = 0.5,
    ):
        self.config = config
        self.factory = orchestrator_factory
        self.console = console or VMControl(config.libvirt_uri).attach_console
        self.poll_interval = poll_interval

        self._ctx = multiprocessing.get_context("fork")
        self._cancel = self._ctx.Event()
        self._shared_state = self._ctx.Value("i", EngagementState.IDLE.value)
        self._timed_out = False

    @property
    def state(self) -> EngagementState:
        """Last state reported by the child."""
        return EngagementState(self._shared_state.value)

    def cancel(self) -> None:
        self._cancel.set()

    def run(self, attach_console: bool = False) -> int:
        """
        Run the engagement to completion.

        Returns:
            Process exit code.
        """
        previous = self._install_handlers()
        try:
            process = self._ctx.Process(
                target=_engage_child,
                args=(self.factory, self._cancel, self._shared_state),
                name="vm-handoff-engage",
            )
            process.start()
            logger.debug(f"Engagement running in process {process.pid}")

            exit_code = self._watch(process, attach_console)

            state = self.state
            if needs_restore(state):
                logger.warning(f"Engagement stopped in state {state.name}, restoring host")
                self.factory(None, None).recover()
            return exit_code
        finally:
            self._restore_handlers(previous)

    def _watch(self, process, attach_console: bool) -> int:
        engage_started: Optional[float] = None
        console_attached = False

        while process.is_alive():
            process.join(self.poll_interval)
            state = self.state

            if state in ENGAGE_WINDOW:
                now = time.monotonic()
                if engage_started is None:
                    engage_started = now
                elif now - engage_started > self.config.engage_timeout and not self._cancel.is_set():
                    logger.error(
                        f"Engagement stuck in {state.name} for more than "
                        f"{self.config.engage_timeout}s, cancelling"
                    )
                    self._timed_out = True
                    self._cancel.set()
            else:
                engage_started = None

            if attach_console and not console_attached and state == EngagementState.VM_RUNNING:
                console_attached = True
                self.console(self.config.vm_name)

            if self._cancel.is_set():
                return self._wait_after_cancel(process)

        return self._exit_code(process.exitcode)

    def _wait_after_cancel(self, process) -> int:
        """Give the child its grace period, then SIGKILL it."""
        grace = self.config.supervisor_grace_timeout
        process.join(grace)

        if process.is_alive():
            logger.error(
                f"Engagement did not finish {grace}s after cancellation, killing process {process.pid}"
            )
            try:
                process.kill()
            except OSError as e:
                logger.error(f"Could not kill engagement process {process.pid}: {e}")
            return ExitCode.TIMEOUT if self._timed_out else ExitCode.INTERRUPTED

        return self._exit_code(process.exitcode)

    def _exit_code(self, exitcode: Optional[int]) -> int:
        if exitcode is None or exitcode < 0:
            # Killed by a signal
            return ExitCode.FAILED
        if self._timed_out and exitcode == ExitCode.INTERRUPTED:
            return ExitCode.TIMEOUT
        return exitcode

    # =========================================================================
    # Signals
    # =========================================================================

    def _handle_signal(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        if self._cancel.is_set():
            logger.warning(f"Received {name} again, already restoring; ignoring")
            return
        logger.warning(f"Received {name}, cancelling engagement and restoring host...")
        self._cancel.set()

    def _install_handlers(self) -> Dict[int, object]:
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_handlers(previous: Dict[int, object]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
