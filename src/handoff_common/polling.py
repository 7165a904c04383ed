"""
Bounded polling.

One retry policy shared by every "act, pause, check" loop: the console
bind retry, the VFIO device node wait and the VM run-state wait.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How long to keep polling.

    Attributes:
        interval: Pause between an attempt and its check (seconds)
        max_attempts: Give up after this many checks (None = unbounded)
        deadline: Give up after this many seconds (None = unbounded)

    With neither bound set the loop runs until the condition holds or the
    condition itself raises.
    """
    interval: float = 1.0
    max_attempts: Optional[int] = None
    deadline: Optional[float] = None

    def __post_init__(self):
        if self.interval < 0:
            raise ValueError("interval must not be negative")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def is_bounded(self) -> bool:
        return self.max_attempts is not None or self.deadline is not None


def poll_until(
    condition: Callable[[], bool],
    policy: RetryPolicy,
    attempt: Optional[Callable[[], None]] = None,
    check_first: bool = False,
    sleep: Callable[[float], object] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Repeat attempt -> pause -> check until condition() holds.

    Args:
        condition: Returns True once the awaited state is reached
        policy: Bounds for the loop
        attempt: Action run before every pause (optional)
        check_first: Return immediately if condition() already holds
        sleep: Pause function (swap for Event.wait to make it cancellable)
        clock: Monotonic clock used for the deadline

    Returns:
        True if the condition was met, False when the policy ran out.
    """
    if check_first and condition():
        return True

    started = clock()
    checks = 0

    while True:
        if attempt is not None:
            attempt()
        sleep(policy.interval)
        checks += 1

        if condition():
            return True

        if policy.max_attempts is not None and checks >= policy.max_attempts:
            logger.debug(f"Gave up after {checks} attempts")
            return False
        if policy.deadline is not None and clock() - started >= policy.deadline:
            logger.debug(f"Gave up after {policy.deadline}s")
            return False
