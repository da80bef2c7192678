import time
from typing import Callable, Optional

from gcprunner.core.errors import RemoteTimeoutError
from gcprunner.core.logger import setup_logger
from gcprunner.runner.models import LifecycleState

logger = setup_logger(__name__, include_location=True)


def await_terminal(
    get_state: Callable[[], LifecycleState],
    poll_interval: float,
    deadline: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> LifecycleState:
    """
    Poll get_state every poll_interval seconds until it reports a terminal state.

    Args:
        get_state: Returns the job's current LifecycleState
        poll_interval: Seconds between polls, must be > 0
        deadline: Seconds to wait overall, must be > 0
        clock: Monotonic clock, injectable for tests
        sleep: Sleep function, injectable for tests

    Returns:
        The first terminal state observed

    Raises:
        RemoteTimeoutError: once elapsed time reaches the deadline without a
            terminal state (elapsed == deadline is a timeout)
    """
    if poll_interval <= 0:
        raise ValueError(f"poll_interval must be > 0, got {poll_interval}")
    if deadline <= 0:
        raise ValueError(f"deadline must be > 0, got {deadline}")

    start = clock()
    polls = 0
    last_state: Optional[LifecycleState] = None

    while True:
        elapsed = clock() - start
        if elapsed >= deadline:
            logger.warning(f"No terminal state after {elapsed:.1f}s ({polls} polls)")
            raise RemoteTimeoutError(deadline, last_state.value if last_state else None)

        state = get_state()
        polls += 1
        if state != last_state:
            logger.debug(f"Job state: {state.value} after {elapsed:.1f}s")
        last_state = state

        if state.is_terminal:
            return state

        sleep(poll_interval)
