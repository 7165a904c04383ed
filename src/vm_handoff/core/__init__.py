"""
VM Handoff Core - engagement state, libvirt control, orchestration.
"""

from .state_machine import EngagementState, EngagementStateMachine, StateTransitionError
from .vm_control import VMControl, VMState
from .orchestrator import VMLifecycleOrchestrator
from .supervisor import Supervisor

__all__ = [
    "EngagementState",
    "EngagementStateMachine",
    "StateTransitionError",
    "VMControl",
    "VMState",
    "VMLifecycleOrchestrator",
    "Supervisor",
]
