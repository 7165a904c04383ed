"""
Engagement State Machine

Tracks how far a passthrough engagement got, so the restore path knows
whether host state was touched.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, List, Set

logger = logging.getLogger(__name__)


class EngagementState(Enum):
    """Engagement states. Values are stable so they can cross process boundaries."""
    IDLE = 0
    DEVICES_RESOLVED = 1
    ENGAGING = 2
    PASSTHROUGH_ENGAGED = 3
    VM_RUNNING = 4
    VM_EXITED = 5
    ABORTED = 6
    RESTORING = 7


# Format: {current_state: {allowed next states}}
VALID_TRANSITIONS: Dict[EngagementState, Set[EngagementState]] = {
    EngagementState.IDLE: {
        EngagementState.DEVICES_RESOLVED,
    },
    EngagementState.DEVICES_RESOLVED: {
        EngagementState.ENGAGING,
        EngagementState.RESTORING,
        EngagementState.IDLE,
    },
    EngagementState.ENGAGING: {
        EngagementState.PASSTHROUGH_ENGAGED,
        EngagementState.ABORTED,
    },
    EngagementState.PASSTHROUGH_ENGAGED: {
        EngagementState.VM_RUNNING,
        EngagementState.ABORTED,
    },
    EngagementState.VM_RUNNING: {
        EngagementState.VM_EXITED,
        EngagementState.ABORTED,
    },
    EngagementState.VM_EXITED: {
        EngagementState.RESTORING,
    },
    EngagementState.ABORTED: {
        EngagementState.RESTORING,
    },
    EngagementState.RESTORING: {
        EngagementState.IDLE,
    },
}

# States in which the host may be partially reconfigured
RESTORE_STATES = frozenset({
    EngagementState.ENGAGING,
    EngagementState.PASSTHROUGH_ENGAGED,
    EngagementState.VM_RUNNING,
    EngagementState.VM_EXITED,
    EngagementState.ABORTED,
    EngagementState.RESTORING,
})


def needs_restore(state: EngagementState) -> bool:
    """True if a run that stopped in this state must still be restored."""
    return state in RESTORE_STATES


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


StateListener = Callable[[EngagementState, EngagementState], None]


class EngagementStateMachine:
    """
    Validated engagement state with listeners for every transition.
    """

    def __init__(self, vm_name: str, initial_state: EngagementState = EngagementState.IDLE):
        self.vm_name = vm_name
        self._state = initial_state
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> EngagementState:
        return self._state

    @property
    def needs_restore(self) -> bool:
        return needs_restore(self._state)

    def can_transition(self, target: EngagementState) -> bool:
        return target in VALID_TRANSITIONS.get(self._state, set())

    def transition(self, target: EngagementState) -> EngagementState:
        """
        Move to a new state.

        Raises:
            StateTransitionError: If target is not reachable from the current state
        """
        if not self.can_transition(target):
            raise StateTransitionError(
                f"Cannot move from {self._state.name} to {target.name} "
                f"for VM {self.vm_name}"
            )

        old_state = self._state
        self._state = target
        logger.info(f"VM {self.vm_name}: {old_state.name} -> {target.name}")

        for listener in self._listeners:
            try:
                listener(old_state, target)
            except Exception as e:
                logger.warning(f"State listener error: {e}")

        return target

    def on_transition(self, listener: StateListener) -> None:
        """
        Register a listener.

        Args:
            listener: Function(old_state, new_state)
        """
        self._listeners.append(listener)
